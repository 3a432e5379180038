"""Operator configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OperatorConfig:
    """Runtime settings for the reconcilers.

    Durations are expressed in seconds.
    """

    cluster_id: str = ""
    management_namespace: str = "service-manager-operator"
    release_namespace: str = "service-manager-operator"
    poll_interval: float = 10.0
    long_poll_interval: float = 300.0
    sync_period: float = 60.0
    enable_namespace_secrets: bool = True
    ignore_non_transient_timeout: float = 0.0
    retry_base_delay: float = 10.0
    retry_max_delay: float = 10800.0
    sm_request_timeout: float = 30.0
    metrics_port: int = 8080

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Build the configuration from the process environment."""
        management_namespace = os.getenv("MANAGEMENT_NAMESPACE", "service-manager-operator")
        return cls(
            cluster_id=os.getenv("CLUSTER_ID", ""),
            management_namespace=management_namespace,
            release_namespace=os.getenv("RELEASE_NAMESPACE", management_namespace),
            poll_interval=float(os.getenv("POLL_INTERVAL_SECONDS", "10")),
            long_poll_interval=float(os.getenv("LONG_POLL_INTERVAL_SECONDS", "300")),
            sync_period=float(os.getenv("SYNC_PERIOD_SECONDS", "60")),
            enable_namespace_secrets=_env_bool("ENABLE_NAMESPACE_SECRETS", True),
            ignore_non_transient_timeout=float(os.getenv("IGNORE_NON_TRANSIENT_TIMEOUT_SECONDS", "0")),
            retry_base_delay=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "10")),
            retry_max_delay=float(os.getenv("RETRY_MAX_DELAY_SECONDS", "10800")),
            sm_request_timeout=float(os.getenv("SM_REQUEST_TIMEOUT_SECONDS", "30")),
            metrics_port=int(os.getenv("METRICS_PORT", "8080")),
        )


@lru_cache(maxsize=1)
def get_config() -> OperatorConfig:
    """Return the process-wide configuration."""
    return OperatorConfig.from_env()
