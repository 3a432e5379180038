"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_BLOCKED,
    EVENT_REASON_CREATED,
    EVENT_REASON_CREDENTIALS_ROTATED,
    EVENT_REASON_DELETED,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
    EVENT_REASON_SECRET_CREATED,
    EVENT_REASON_UPDATED,
)


def emit_event(
    body: Any,
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Args:
        body: Resource body (or any object reference kopf accepts)
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=message,
        type=type_,
    )


def emit_reconcile_started(body: Any) -> None:
    """Emit reconcile started event."""
    emit_event(body, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(body: Any, message: str) -> None:
    """Emit reconcile failed event."""
    emit_event(body, EVENT_REASON_RECONCILE_FAILED, message, type_="Warning")


def emit_created(body: Any, kind: str, remote_id: str) -> None:
    emit_event(body, EVENT_REASON_CREATED, f"{kind} {remote_id} created")


def emit_updated(body: Any, kind: str, remote_id: str) -> None:
    emit_event(body, EVENT_REASON_UPDATED, f"{kind} {remote_id} updated")


def emit_deleted(body: Any, kind: str, remote_id: str) -> None:
    emit_event(body, EVENT_REASON_DELETED, f"{kind} {remote_id} deleted")


def emit_blocked(body: Any, message: str) -> None:
    emit_event(body, EVENT_REASON_BLOCKED, message, type_="Warning")


def emit_secret_created(body: Any, secret_name: str) -> None:
    emit_event(body, EVENT_REASON_SECRET_CREATED, f"Secret {secret_name} created")


def emit_credentials_rotated(body: Any, stale_name: str) -> None:
    emit_event(body, EVENT_REASON_CREDENTIALS_ROTATED, f"Credentials rotated, previous binding kept as {stale_name}")
