"""Autoscaling Reconciliation Controller (ARC).

Standalone control loop for replicated workloads:
 - samples a utilization signal per workload
 - computes a stabilized desired replica count
 - drives health-gated rolling updates (surge / unavailable limits,
   pause on trouble, automatic rollback)
 - applies idempotent create/terminate intents through a pluggable
   instance-lifecycle backend (Docker or an in-process simulation)

Every decision is reported on a structured event stream.
"""
