import json

import cli


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def test_workloads_summary(monkeypatch, capsys):
    calls = []

    def fake_get(url, params=None, timeout=10):
        calls.append(url)
        return _Resp(
            [
                {
                    "id": "web",
                    "revision": "v2",
                    "current_replicas": 3,
                    "target_replicas": 4,
                    "rollout": {"state": "RollingOut"},
                    "conditions": [{"type": "MetricsStale", "reason": "3 misses", "since": "x"}],
                }
            ]
        )

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["--api", "http://arc:8000/", "workloads"]) == 0
    assert calls == ["http://arc:8000/workloads"]
    out = json.loads(capsys.readouterr().out)
    assert out == [
        {"id": "web", "revision": "v2", "replicas": "3/4", "rollout": "RollingOut", "conditions": ["MetricsStale"]}
    ]


def test_events_passes_filters(monkeypatch, capsys):
    seen = {}

    def fake_get(url, params=None, timeout=10):
        seen["url"] = url
        seen["params"] = params
        return _Resp([])

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["events", "--workload", "web", "--kind", "rollout_paused", "--limit", "5"]) == 0
    assert seen["url"] == "http://localhost:8000/events"
    assert seen["params"] == {"limit": 5, "workload": "web", "kind": "rollout_paused"}


def test_show_unknown_workload_fails(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "get", lambda url, timeout=10: _Resp({"detail": "unknown workload"}, ok=False))
    assert cli.main(["show", "nope"]) == 1
