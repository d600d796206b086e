from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

import httpx

from .errors import SourceUnavailable
from .models import UtilizationSample

logger = logging.getLogger(__name__)


class MetricsSource(Protocol):
    def query(self, workload_id: str, metric_name: str) -> float: ...


class HttpMetricsSource:
    """Read a scalar metric from an HTTP endpoint.

    ``url_template`` may use ``{workload}`` and ``{metric}``.
    Expected JSON: {"value": 42.0}.
    """

    def __init__(
        self,
        url_template: str,
        timeout_s: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url_template = url_template
        self.timeout_s = timeout_s
        self._transport = transport

    def query(self, workload_id: str, metric_name: str) -> float:
        url = self.url_template.format(workload=workload_id, metric=metric_name)
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport) as client:
                resp = client.get(url)
        except httpx.TimeoutException as e:
            raise SourceUnavailable(f"metrics query timed out: {url}") from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"metrics query failed: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise SourceUnavailable(f"metrics source returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise SourceUnavailable("metrics source returned invalid JSON") from e
        if not isinstance(data, dict) or "value" not in data:
            raise SourceUnavailable(f"unexpected metrics payload: {data!r}")
        try:
            value = float(data["value"])
        except (TypeError, ValueError) as e:
            raise SourceUnavailable(f"non-numeric metric value: {data['value']!r}") from e
        if value < 0:
            raise SourceUnavailable(f"negative metric value: {value}")
        return value


class SampleWindow:
    """Sliding window bounded by sample count and by age."""

    def __init__(self, max_samples: int = 20, max_age_s: float = 300.0) -> None:
        self.max_age_s = max_age_s
        self._samples: deque[UtilizationSample] = deque(maxlen=max(1, max_samples))

    def add(self, sample: UtilizationSample) -> None:
        self._samples.append(sample)
        self.evict(sample.timestamp)

    def evict(self, now: float) -> None:
        cutoff = now - self.max_age_s
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()

    def values(self) -> list[float]:
        return [s.value for s in self._samples]

    def snapshot(self) -> list[UtilizationSample]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


class MetricsSampler:
    """Per-workload sampler: owns the sample window and the staleness counter."""

    def __init__(
        self,
        workload_id: str,
        source: MetricsSource,
        metric_name: str = "cpu",
        interval_s: float = 15.0,
        stale_threshold: int = 3,
        window: SampleWindow | None = None,
    ) -> None:
        self.workload_id = workload_id
        self.source = source
        self.metric_name = metric_name
        self.interval_s = interval_s
        self.stale_threshold = max(1, int(stale_threshold))
        self.window = window or SampleWindow()
        self.consecutive_failures = 0
        self.last_attempt: float | None = None

    @property
    def stale(self) -> bool:
        return self.consecutive_failures >= self.stale_threshold

    def due(self, now: float) -> bool:
        return self.last_attempt is None or now - self.last_attempt >= self.interval_s

    def sample(self, instance_count: int, now: float) -> UtilizationSample:
        """Query the source once and append the result to the window.

        On SourceUnavailable the tick is simply skipped: nothing is appended
        and the consecutive-failure counter grows.
        """
        self.last_attempt = now
        try:
            value = self.source.query(self.workload_id, self.metric_name)
        except SourceUnavailable:
            self.consecutive_failures += 1
            self.window.evict(now)
            raise
        self.consecutive_failures = 0
        sample = UtilizationSample(
            workload_id=self.workload_id,
            timestamp=now,
            value=value,
            instance_count=instance_count,
        )
        self.window.add(sample)
        return sample
