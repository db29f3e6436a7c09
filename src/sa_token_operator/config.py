"""Operator configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import LEASE_DURATION_SECONDS, LEASE_HOLDER_IDENTITY


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OperatorConfig:
    """Runtime settings for the operator."""

    metrics_port: int = 8080
    log_level: str = "INFO"
    lease_holder_identity: str = LEASE_HOLDER_IDENTITY
    lease_duration_seconds: int = LEASE_DURATION_SECONDS
    lease_reclaim_expired: bool = True
    use_secret_cache: bool = True

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Build the configuration from environment variables."""
        return cls(
            metrics_port=int(os.getenv("METRICS_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            lease_holder_identity=os.getenv("LEASE_HOLDER_IDENTITY", LEASE_HOLDER_IDENTITY),
            lease_duration_seconds=int(os.getenv("LEASE_DURATION_SECONDS", str(LEASE_DURATION_SECONDS))),
            lease_reclaim_expired=_env_bool("LEASE_RECLAIM_EXPIRED", True),
            use_secret_cache=_env_bool("USE_SECRET_CACHE", True),
        )
