"""Main entry point for the Service Manager Operator.

Run with ``kopf run -m service_manager_operator.main``.
"""

from __future__ import annotations

import logging
from typing import Any

import kopf

from . import health
from . import logging as structured_logging
from . import tracing
from .config import get_config

# Import handlers to register them with kopf
from . import handlers  # noqa: F401

logger = logging.getLogger(__name__)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    # Set up structured JSON logging
    structured_logging.setup_structured_logging()
    tracing.initialize_tracing()

    config = get_config()

    # Use AnnotationsProgressStorage to avoid conflicts with status updates
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    # Only warnings from kopf itself become Kubernetes events
    settings.posting.level = logging.WARNING
    settings.networking.request_timeout = config.sm_request_timeout
    settings.execution.max_workers = 4

    # Start metrics HTTP server with health check endpoints
    health.start_health_server(config.metrics_port)
    health.mark_ready()

    logger.info(
        "Operator configured: cluster_id=%s management_namespace=%s metrics_port=%d",
        config.cluster_id or "<unset>",
        config.management_namespace,
        config.metrics_port,
    )
