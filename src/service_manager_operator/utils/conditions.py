"""Condition model for ServiceInstance and ServiceBinding status.

Setters rewrite the condition list of a resource in place, keyed by condition
type, and always recompute the Ready condition. They never perform I/O.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..constants import (
    COND_CRED_ROTATION_IN_PROGRESS,
    COND_FAILED,
    COND_PENDING_TERMINATION,
    COND_READY,
    COND_SHARED,
    COND_SUCCEEDED,
    OP_CREATE,
    OP_DELETE,
    OP_UPDATE,
    REASON_BLOCKED,
    REASON_CREATE_FAILED,
    REASON_CREATE_IN_PROGRESS,
    REASON_CREATED,
    REASON_DELETE_FAILED,
    REASON_DELETE_IN_PROGRESS,
    REASON_DELETED,
    REASON_FINISHED,
    REASON_IN_PROGRESS,
    REASON_NOT_PROVISIONED,
    REASON_OPERATION_FAILED,
    REASON_PENDING,
    REASON_PENDING_TERMINATION,
    REASON_PROVISIONED,
    REASON_UPDATE_FAILED,
    REASON_UPDATE_IN_PROGRESS,
    REASON_UPDATED,
    STATE_FAILED,
    STATE_IN_PROGRESS,
    STATE_PENDING,
    STATE_SUCCEEDED,
)

if TYPE_CHECKING:
    from ..resources import ReconcilableResource

_REASONS = {
    OP_CREATE: {STATE_SUCCEEDED: REASON_CREATED, STATE_IN_PROGRESS: REASON_CREATE_IN_PROGRESS, STATE_FAILED: REASON_CREATE_FAILED},
    OP_UPDATE: {STATE_SUCCEEDED: REASON_UPDATED, STATE_IN_PROGRESS: REASON_UPDATE_IN_PROGRESS, STATE_FAILED: REASON_UPDATE_FAILED},
    OP_DELETE: {STATE_SUCCEEDED: REASON_DELETED, STATE_IN_PROGRESS: REASON_DELETE_IN_PROGRESS, STATE_FAILED: REASON_DELETE_FAILED},
}
_UNKNOWN_REASONS = {STATE_SUCCEEDED: REASON_FINISHED, STATE_IN_PROGRESS: REASON_IN_PROGRESS, STATE_FAILED: REASON_OPERATION_FAILED}


def update_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Update or add a condition to the conditions list.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: Reason for the condition
        message: Human-readable message
        observed_generation: Generation when condition was observed

    Returns:
        Updated list of conditions
    """
    now = datetime.now(timezone.utc).isoformat()

    existing_idx = None
    for idx, cond in enumerate(conditions):
        if cond.get("type") == condition_type:
            existing_idx = idx
            break

    new_condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": now,
    }

    if observed_generation is not None:
        new_condition["observedGeneration"] = observed_generation

    if existing_idx is not None:
        existing = conditions[existing_idx]
        # Only update lastTransitionTime if status changed
        if existing.get("status") == status:
            new_condition["lastTransitionTime"] = existing.get("lastTransitionTime", now)
        conditions[existing_idx] = new_condition
    else:
        conditions.append(new_condition)

    return conditions


def find_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    for cond in conditions:
        if cond.get("type") == condition_type:
            return cond
    return None


def remove_condition(conditions: list[dict[str, Any]], condition_type: str) -> list[dict[str, Any]]:
    conditions[:] = [c for c in conditions if c.get("type") != condition_type]
    return conditions


def is_condition_true(conditions: list[dict[str, Any]], condition_type: str) -> bool:
    cond = find_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == "True"


def is_condition_false(conditions: list[dict[str, Any]], condition_type: str) -> bool:
    cond = find_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == "False"


def get_condition_reason(op_type: str, state: str) -> str:
    """Map an operation type and outcome to a condition reason.

    Pending is reported with the in-progress reason.
    """
    if state == STATE_PENDING:
        state = STATE_IN_PROGRESS
    return _REASONS.get(op_type, _UNKNOWN_REASONS)[state]


def refresh_ready_condition(resource: ReconcilableResource) -> None:
    """Recompute Ready from the ready flag and the Succeeded condition."""
    conditions = resource.conditions
    ready = resource.ready and is_condition_true(conditions, COND_SUCCEEDED)
    if ready:
        reason, message = REASON_PROVISIONED, f"{resource.controller_name} is ready"
    else:
        reason, message = REASON_NOT_PROVISIONED, f"{resource.controller_name} is not ready"
    update_condition(conditions, COND_READY, "True" if ready else "False", reason, message, resource.generation)


def init_conditions(resource: ReconcilableResource) -> None:
    """Put a freshly observed resource into the Pending state."""
    resource.ready = False
    conditions = resource.conditions
    remove_condition(conditions, COND_FAILED)
    update_condition(conditions, COND_SUCCEEDED, "False", REASON_PENDING, REASON_PENDING, resource.generation)
    refresh_ready_condition(resource)


def set_in_progress(resource: ReconcilableResource, op_type: str, message: str = "") -> None:
    """Mark an operation as running."""
    if not message:
        if op_type == OP_CREATE:
            message = f"{resource.controller_name} is being created"
        elif op_type == OP_UPDATE:
            message = f"{resource.controller_name} is being updated"
        elif op_type == OP_DELETE:
            message = f"{resource.controller_name} is being deleted"
        else:
            message = f"{resource.controller_name} is in progress"

    conditions = resource.conditions
    remove_condition(conditions, COND_FAILED)
    update_condition(
        conditions,
        COND_SUCCEEDED,
        "False",
        get_condition_reason(op_type, STATE_IN_PROGRESS),
        message,
        resource.generation,
    )
    refresh_ready_condition(resource)


def set_success(resource: ReconcilableResource, op_type: str, message: str = "") -> None:
    """Mark an operation as completed successfully."""
    if not message:
        if op_type == OP_CREATE:
            message = f"{resource.controller_name} provisioned successfully"
        elif op_type == OP_UPDATE:
            message = f"{resource.controller_name} updated successfully"
        elif op_type == OP_DELETE:
            message = f"{resource.controller_name} deleted successfully"
        else:
            message = f"{resource.controller_name} finished successfully"

    conditions = resource.conditions
    remove_condition(conditions, COND_FAILED)
    update_condition(
        conditions,
        COND_SUCCEEDED,
        "True",
        get_condition_reason(op_type, STATE_SUCCEEDED),
        message,
        resource.generation,
    )
    resource.ready = op_type != OP_DELETE
    refresh_ready_condition(resource)


def set_failure(resource: ReconcilableResource, op_type: str, error_message: str) -> None:
    """Record a terminal failure of an operation."""
    if op_type == OP_CREATE:
        message = f"{resource.controller_name} create failed: {error_message}"
    elif op_type == OP_UPDATE:
        message = f"{resource.controller_name} update failed: {error_message}"
    elif op_type == OP_DELETE:
        message = f"{resource.controller_name} deletion failed: {error_message}"
    else:
        message = error_message

    reason = get_condition_reason(op_type, STATE_FAILED)
    conditions = resource.conditions
    update_condition(conditions, COND_SUCCEEDED, "False", reason, message, resource.generation)
    update_condition(conditions, COND_FAILED, "True", reason, message, resource.generation)
    refresh_ready_condition(resource)


def set_blocked(resource: ReconcilableResource, message: str) -> None:
    """In-progress variant telling the user that action on their side is needed."""
    set_in_progress(resource, "", message)
    cond = find_condition(resource.conditions, COND_SUCCEEDED)
    cond["reason"] = REASON_BLOCKED


def set_cred_rotation_in_progress(resource: ReconcilableResource, reason: str, message: str = "") -> None:
    update_condition(
        resource.conditions,
        COND_CRED_ROTATION_IN_PROGRESS,
        "True",
        reason,
        message or reason,
        resource.generation,
    )


def clear_cred_rotation(resource: ReconcilableResource) -> None:
    remove_condition(resource.conditions, COND_CRED_ROTATION_IN_PROGRESS)


def set_pending_termination(resource: ReconcilableResource, message: str) -> None:
    update_condition(
        resource.conditions,
        COND_PENDING_TERMINATION,
        "True",
        REASON_PENDING_TERMINATION,
        message,
        resource.generation,
    )


def set_shared_condition(resource: ReconcilableResource, shared: bool, reason: str, message: str) -> None:
    update_condition(
        resource.conditions,
        COND_SHARED,
        "True" if shared else "False",
        reason,
        message,
        resource.generation,
    )


def is_in_progress(conditions: list[dict[str, Any]]) -> bool:
    """Succeeded is False and no terminal failure is recorded."""
    return is_condition_false(conditions, COND_SUCCEEDED) and not is_condition_true(conditions, COND_FAILED)


def is_failed(conditions: list[dict[str, Any]]) -> bool:
    """Failed is True, or the resource is blocked on user action."""
    if is_condition_true(conditions, COND_FAILED):
        return True
    succeeded = find_condition(conditions, COND_SUCCEEDED)
    return (
        succeeded is not None
        and succeeded.get("status") == "False"
        and succeeded.get("reason") == REASON_BLOCKED
    )


def succeeded_reason(conditions: list[dict[str, Any]]) -> str:
    cond = find_condition(conditions, COND_SUCCEEDED)
    return cond.get("reason", "") if cond else ""
