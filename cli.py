from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="ARC status CLI (read-only)")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("workloads", help="List workloads with rollout state and conditions")

    s_show = sub.add_parser("show", help="Show one workload")
    s_show.add_argument("workload")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--workload", default=None)
    s_ev.add_argument("--kind", default=None, help="Filter by event kind, e.g. rollout_paused")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "workloads":
        rows = requests.get(f"{base}/workloads", timeout=10).json()
        _print(
            [
                {
                    "id": w["id"],
                    "revision": w["revision"],
                    "replicas": f"{w['current_replicas']}/{w['target_replicas']}",
                    "rollout": w["rollout"]["state"],
                    "conditions": [c["type"] for c in w["conditions"]],
                }
                for w in rows
            ]
        )
        return 0

    if args.cmd == "show":
        r = requests.get(f"{base}/workloads/{args.workload}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.workload:
            params["workload"] = args.workload
        if args.kind:
            params["kind"] = args.kind
        r = requests.get(f"{base}/events", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
