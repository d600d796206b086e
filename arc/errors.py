from __future__ import annotations


class ArcError(Exception):
    pass


class SourceUnavailable(ArcError):
    """The metrics source could not produce a value (transient, tolerated)."""


class ProbeTimeout(ArcError):
    """A probe or lifecycle call did not answer in time (transient, retried)."""


class LifecycleError(ArcError):
    """The instance-lifecycle backend rejected or failed an intent (transient)."""


class InvariantViolation(ArcError):
    """A computed value fell outside its bounds. Reported and clamped, never raised out of a tick."""


class PlanConflict(ArcError):
    """A new rollout plan superseded one that was still in flight."""


class UnknownWorkload(ArcError, KeyError):
    pass
