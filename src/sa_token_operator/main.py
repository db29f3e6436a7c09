"""Main entry point for the ServiceAccount Token Operator."""

from __future__ import annotations

import logging
from typing import Any

import kopf

from . import health
from . import logging as structured_logging
from .config import OperatorConfig
from .handlers import service_account  # noqa: F401
from .handlers.shared import get_reconciler, shutdown_event
from .tracing import initialize_tracing

logger = logging.getLogger(__name__)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    config = OperatorConfig.from_env()

    # Set up structured JSON logging
    structured_logging.setup_structured_logging(config.log_level)
    initialize_tracing()

    # Use annotations so ServiceAccounts, which have no status, can carry progress
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    settings.posting.level = logging.WARNING
    settings.networking.request_timeout = 30.0
    settings.execution.max_workers = 4

    health.start_metrics_server(config.metrics_port)

    # Fail startup early if credentials are missing
    get_reconciler()
    health.set_ready()
    logger.info("ServiceAccount token operator started")


@kopf.on.cleanup()
def shutdown(**_: Any) -> None:
    """Abort in-flight waits so leases are released before exit."""
    health.set_ready(False)
    shutdown_event.set()
