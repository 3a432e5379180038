"""Tests for structured resource logging."""

from __future__ import annotations

import json
import logging
from unittest.mock import Mock, patch

from service_manager_operator.logging import log_resource_event
from service_manager_operator.utils.context import with_correlation_id


def _logged(mock_logger: Mock) -> dict:
    level, message = mock_logger.log.call_args[0]
    return json.loads(message)


class TestLogResourceEvent:
    """Test cases for log_resource_event."""

    def _log(self, logger, **kwargs):
        log_resource_event(
            logger,
            controller="service-manager-operator",
            resource_kind="ServiceInstance",
            resource_name="my-instance",
            namespace="default",
            uid="uid-1",
            event="create",
            reason="Creating",
            message="Creating instance",
            **kwargs,
        )

    def test_record_fields(self):
        """Test the record carries the resource identity as JSON."""
        logger = Mock()

        self._log(logger, level=logging.WARNING)

        assert logger.log.call_args[0][0] == logging.WARNING
        data = _logged(logger)
        assert data["resource"] == "ServiceInstance"
        assert data["name"] == "my-instance"
        assert data["reason"] == "Creating"
        assert "correlation_id" not in data

    def test_correlation_id_is_included(self):
        """Test the active correlation ID is attached."""
        logger = Mock()

        with with_correlation_id("corr-1"):
            self._log(logger)

        assert _logged(logger)["correlation_id"] == "corr-1"

    @patch("service_manager_operator.logging.propagate_trace_context")
    def test_trace_ids_are_included(self, mock_trace):
        """Test trace and span IDs of the current span are attached."""
        mock_trace.return_value = {"trace_id": "a" * 32, "span_id": "b" * 16}
        logger = Mock()

        self._log(logger)

        data = _logged(logger)
        assert data["trace_id"] == "a" * 32
        assert data["span_id"] == "b" * 16

    def test_secrets_are_redacted(self):
        """Test secret fields passed as extra data are not logged."""
        logger = Mock()

        self._log(logger, client_secret="s3cr3t", instance_id="i-1")

        data = _logged(logger)
        assert data["client_secret"] == "***REDACTED***"
        assert data["instance_id"] == "i-1"
