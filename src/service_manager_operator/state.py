"""Explicit states derived from a resource's status.

The reconciler keeps its state in status conditions. These helpers name the
state those conditions describe, and drive the multi-step deletion protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from .constants import COND_FAILED, COND_SUCCEEDED, REASON_BLOCKED, REASON_PENDING
from .utils.conditions import find_condition, is_condition_true

if TYPE_CHECKING:
    from .resources import ReconcilableResource


class ResourceState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    PENDING = "Pending"
    BLOCKED = "Blocked"
    IN_PROGRESS = "InProgress"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"


def derive_state(resource: ReconcilableResource) -> ResourceState:
    """Name the state a resource is in according to its conditions."""
    if resource.is_deleting:
        return ResourceState.DELETING

    conditions = resource.conditions
    succeeded = find_condition(conditions, COND_SUCCEEDED)
    if succeeded is None:
        return ResourceState.UNINITIALIZED
    if is_condition_true(conditions, COND_FAILED):
        return ResourceState.FAILED
    if succeeded.get("status") == "True":
        return ResourceState.READY if resource.ready else ResourceState.IN_PROGRESS

    reason = succeeded.get("reason")
    if reason == REASON_BLOCKED:
        return ResourceState.BLOCKED
    if reason == REASON_PENDING:
        return ResourceState.PENDING
    return ResourceState.IN_PROGRESS


class DeleteStep(str, Enum):
    DELETE_PENDING = "DeletePending"
    RECOVERY_CHECK = "RecoveryCheck"
    REMOTE_DELETE_REQUESTED = "RemoteDeleteRequested"
    CLEANUP_SECRET = "CleanupSecret"
    FINALIZER_REMOVED = "FinalizerRemoved"


@dataclass
class DeleteProgress:
    """What is known about a deletion within one reconcile."""

    remote_id: str = ""
    recovery_checked: bool = False
    remote_gone: bool = False
    secret_cleaned: bool = False


def next_delete_step(step: DeleteStep, progress: DeleteProgress) -> DeleteStep:
    """Return the step that follows ``step`` given what has been done so far.

    A resource without a remote ID must pass a recovery check before its
    finalizer may go: the remote object can exist even though the local
    status lost track of it.
    """
    if step is DeleteStep.FINALIZER_REMOVED:
        return step
    if step is DeleteStep.CLEANUP_SECRET:
        return DeleteStep.FINALIZER_REMOVED if progress.secret_cleaned else step

    if progress.remote_gone:
        return DeleteStep.CLEANUP_SECRET
    if progress.remote_id:
        return DeleteStep.REMOTE_DELETE_REQUESTED
    if not progress.recovery_checked:
        return DeleteStep.RECOVERY_CHECK
    # Recovery found nothing, there is no remote object to delete
    return DeleteStep.CLEANUP_SECRET


@dataclass(frozen=True)
class RotationRecord:
    """Correlates a stale binding with the binding it was rotated out of."""

    original_name: str
    stale_name: str
    stale_binding_id: str
    ttl: timedelta
    stale_created_at: datetime | None
    original_ready: bool

    @property
    def is_orphaned(self) -> bool:
        return not self.original_name

    def expired(self, now: datetime) -> bool:
        if self.stale_created_at is None:
            return True
        return now - self.stale_created_at > self.ttl

    def can_delete_stale(self, now: datetime) -> bool:
        """A stale binding goes only after its TTL and once its replacement works."""
        if self.is_orphaned:
            return True
        return self.expired(now) and self.original_ready
