from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_opt_int(name: str) -> int | None:
    # Unset or <= 0 means "no limit".
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("ARC_DB_PATH", "arc.db")
    tick_interval_s: float = _env_float("ARC_TICK_INTERVAL_S", 15.0)
    worker_pool_size: int = _env_int("ARC_WORKER_POOL_SIZE", 32)
    max_concurrent_ticks: int = _env_int("ARC_MAX_CONCURRENT_TICKS", 64)
    event_buffer_size: int = _env_int("ARC_EVENT_BUFFER_SIZE", 1000)

    # Metrics sampling
    metrics_url: str = os.getenv("ARC_METRICS_URL", "http://localhost:9090/workloads/{workload}/metrics/{metric}")
    metric_name: str = os.getenv("ARC_METRIC_NAME", "cpu")
    metrics_timeout_s: float = _env_float("ARC_METRICS_TIMEOUT_S", 2.0)
    sample_interval_s: float = _env_float("ARC_SAMPLE_INTERVAL_S", 15.0)
    window_max_samples: int = _env_int("ARC_WINDOW_MAX_SAMPLES", 20)
    window_max_age_s: float = _env_float("ARC_WINDOW_MAX_AGE_S", 300.0)
    stale_threshold: int = _env_int("ARC_STALE_THRESHOLD", 3)

    # Autoscaling
    stabilization_window_s: float = _env_float("ARC_STABILIZATION_WINDOW_S", 300.0)
    cooldown_s: float = _env_float("ARC_COOLDOWN_S", 60.0)

    # Health gate
    probe_timeout_s: float = _env_float("ARC_PROBE_TIMEOUT_S", 2.0)
    liveness_path: str = os.getenv("ARC_LIVENESS_PATH", "/healthz")
    readiness_path: str = os.getenv("ARC_READINESS_PATH", "/ready")
    failure_threshold: int = _env_int("ARC_FAILURE_THRESHOLD", 3)
    success_threshold: int = _env_int("ARC_SUCCESS_THRESHOLD", 1)

    # Rollouts
    pause_unhealthy_threshold: int = _env_int("ARC_PAUSE_UNHEALTHY_THRESHOLD", 0)
    step_timeout_s: float = _env_float("ARC_STEP_TIMEOUT_S", 300.0)
    pause_timeout_s: float = _env_float("ARC_PAUSE_TIMEOUT_S", 600.0)

    # Applying intents
    backoff_base_s: float = _env_float("ARC_BACKOFF_BASE_S", 1.0)
    backoff_cap_s: float = _env_float("ARC_BACKOFF_CAP_S", 30.0)
    backoff_jitter: float = _env_float("ARC_BACKOFF_JITTER", 0.2)
    apply_attempts: int = _env_int("ARC_APPLY_ATTEMPTS", 3)
    max_apply_failures: int | None = _env_opt_int("ARC_MAX_APPLY_FAILURES")

    # Docker backend
    use_docker: bool = _env_bool("ARC_USE_DOCKER", False)
    docker_network: str = os.getenv("ARC_DOCKER_NETWORK", "arc")
    image_template: str = os.getenv("ARC_IMAGE_TEMPLATE", "{workload}:{revision}")
    instance_port: int = _env_int("ARC_INSTANCE_PORT", 8000)

    # Email alerting (optional)
    enable_email: bool = _env_bool("ARC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("ARC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("ARC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("ARC_SMTP_USER")
    smtp_password: str | None = os.getenv("ARC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("ARC_EMAIL_FROM")
    email_to: str | None = os.getenv("ARC_EMAIL_TO")


settings = Settings()
