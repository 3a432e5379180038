"""Base handler class with the reconciliation engine shared by all CRD handlers."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, NoReturn

import kopf

from .. import metrics
from ..config import get_config
from ..constants import (
    ANNOTATION_IGNORE_NON_TRANSIENT,
    ANNOTATION_IGNORE_NON_TRANSIENT_TIMESTAMP,
    CONTROLLER_NAME,
    COND_SUCCEEDED,
    FINALIZER,
    OP_CREATE,
    OP_DELETE,
    OP_UNKNOWN,
    SM_LABEL_K8S_NAME,
    STATE_FAILED,
    STATE_IN_PROGRESS,
    STATE_PENDING,
    STATE_SUCCEEDED,
)
from ..logging import log_resource_event
from ..resources import ReconcilableResource, parse_timestamp
from ..services.sm.base import ServiceManager
from ..services.sm.client import build_operation_url
from ..services.sm.errors import ServiceManagerError
from ..services.sm.models import Operation, QueryParams
from ..state import DeleteProgress, DeleteStep, derive_state, next_delete_step
from ..tracing import trace_span
from ..utils.conditions import (
    find_condition,
    init_conditions,
    is_in_progress,
    set_failure,
    set_in_progress,
    set_success,
)
from ..utils.context import with_correlation_id
from ..utils.errors import (
    is_transient_error,
    is_transient_k8s_error,
    sanitize_exception,
)
from ..utils.events import emit_deleted, emit_reconcile_failed, emit_reconcile_started
from ..utils.secrets import SecretNotFoundError
from . import shared


class RequeueRequested(kopf.TemporaryError):
    """An expected wait, retried after a fixed delay rather than with backoff."""


class BaseHandler:
    """Base class for all CRD handlers with common functionality.

    Subclasses provide the kind specific steps: what to do with a resource
    that is not in its final state, how to list and delete remote objects,
    and what completes a successful create or update operation.
    """

    resource_class: type[ReconcilableResource] = ReconcilableResource
    resource_url = ""

    def __init__(self, kind: str):
        """Initialize base handler.

        Args:
            kind: The Kubernetes resource kind (e.g., "ServiceInstance")
        """
        self.kind = kind
        self.logger = logging.getLogger(__name__)
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._failures: dict[str, int] = {}

    # Logging

    def _log(self, level: int, resource: ReconcilableResource, message: str, event: str, reason: str, **kwargs: Any) -> None:
        log_resource_event(
            self.logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=resource.name or "unknown",
            namespace=resource.namespace or "default",
            uid=resource.uid or "unknown",
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(
        self,
        resource: ReconcilableResource,
        message: str,
        event: str = "info",
        reason: str = "Info",
        **kwargs: Any,
    ) -> None:
        """Log an info-level structured log message."""
        self._log(logging.INFO, resource, message, event, reason, **kwargs)

    def log_warning(
        self,
        resource: ReconcilableResource,
        message: str,
        event: str = "warning",
        reason: str = "Warning",
        **kwargs: Any,
    ) -> None:
        """Log a warning-level structured log message."""
        self._log(logging.WARNING, resource, message, event, reason, **kwargs)

    def log_error(
        self,
        resource: ReconcilableResource,
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            resource: Resource being reconciled
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        log_data = kwargs.copy()
        if error is not None:
            log_data["error"] = sanitize_exception(error)
            log_data["error_type"] = type(error).__name__
        self._log(logging.ERROR, resource, message, event, reason, **log_data)

    # Collaborators

    def get_sm_client(self, resource: ReconcilableResource) -> ServiceManager:
        return shared.get_sm_client(resource.namespace)

    def core_api(self) -> Any:
        return shared.get_core_client()

    def custom_api(self) -> Any:
        return shared.get_custom_client()

    # Finalizers

    def ensure_finalizer(self, resource: ReconcilableResource, patch: kopf.Patch) -> None:
        """Ensure finalizer is present in metadata."""
        finalizers = resource.finalizers
        if FINALIZER not in finalizers:
            finalizers.append(FINALIZER)
            patch.metadata["finalizers"] = finalizers
            resource.meta["finalizers"] = finalizers

    def remove_finalizer(self, resource: ReconcilableResource, patch: kopf.Patch) -> None:
        """Remove finalizer from metadata."""
        finalizers = resource.finalizers
        if FINALIZER in finalizers:
            finalizers.remove(FINALIZER)
            patch.metadata["finalizers"] = finalizers if finalizers else None
            resource.meta["finalizers"] = finalizers

    # Retry policy

    def requeue(self, message: str, delay: float | None = None) -> NoReturn:
        """Ask kopf to call the handler again after a fixed delay."""
        raise RequeueRequested(message, delay=get_config().poll_interval if delay is None else delay)

    def retry_delay(self, resource: ReconcilableResource) -> float:
        """Exponential backoff per resource, reset by the next clean reconcile."""
        config = get_config()
        with self._guard:
            failures = self._failures.get(resource.uid, 0)
            self._failures[resource.uid] = failures + 1
        return min(config.retry_base_delay * (2 ** failures), config.retry_max_delay)

    def _forget_failures(self, resource: ReconcilableResource) -> None:
        with self._guard:
            self._failures.pop(resource.uid, None)

    def _lock_for(self, uid: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(uid, threading.Lock())

    # Entry point

    def handle(self, body: Mapping[str, Any], patch: kopf.Patch, **_: Any) -> None:
        """Reconcile one observed resource and write its status into ``patch``.

        Event handlers and timers of the same resource can fire at the same
        time, so reconciles of one resource are serialized here.
        """
        resource = self.resource_class(body)
        with self._lock_for(resource.uid), with_correlation_id():
            try:
                self.reconcile_with_metrics(resource, lambda: self.reconcile(resource, patch))
            finally:
                if resource.has_finalizer or not resource.is_deleting:
                    resource.persist(patch)
                metrics.resource_status_total.labels(kind=self.kind, status=derive_state(resource).value).inc()

        if resource.is_deleting and not resource.has_finalizer:
            with self._guard:
                self._locks.pop(resource.uid, None)
                self._failures.pop(resource.uid, None)

    def reconcile_with_metrics(
        self,
        resource: ReconcilableResource,
        reconcile_fn: Callable[[], None],
    ) -> None:
        """Execute reconciliation with metrics and error handling.

        Args:
            resource: Resource being reconciled
            reconcile_fn: Function to execute for reconciliation
        """
        if resource.observed_generation != resource.generation:
            emit_reconcile_started(resource.raw)
        metrics.reconcile_total.labels(kind=self.kind, result="started").inc()

        start_time = time.time()
        try:
            reconcile_fn()
            self._forget_failures(resource)
            metrics.reconcile_total.labels(kind=self.kind, result="success").inc()
        except RequeueRequested:
            self._forget_failures(resource)
            metrics.reconcile_total.labels(kind=self.kind, result="requeued").inc()
            raise
        except kopf.TemporaryError:
            metrics.reconcile_total.labels(kind=self.kind, result="retry").inc()
            raise
        except Exception as e:
            metrics.error_total.labels(kind=self.kind, error_type=type(e).__name__).inc()
            self.log_error(resource, "Reconciliation failed", error=e, reason="ReconciliationFailed")
            emit_reconcile_failed(resource.raw, f"Reconciliation failed: {sanitize_exception(e)}")
            metrics.reconcile_total.labels(kind=self.kind, result="error").inc()
            raise
        finally:
            duration = time.time() - start_time
            metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(duration)

    def reconcile(self, resource: ReconcilableResource, patch: kopf.Patch) -> None:
        """Drive a resource one step closer to its desired state."""
        with trace_span(
            f"reconcile_{self.kind.lower()}",
            kind=self.kind,
            attributes={"resource.name": resource.name, "resource.namespace": resource.namespace},
        ):
            if resource.is_deleting and not resource.has_finalizer:
                return

            if find_condition(resource.conditions, COND_SUCCEEDED) is None and not resource.is_deleting:
                init_conditions(resource)
                self.ensure_finalizer(resource, patch)
                self.log_info(resource, "Initialized conditions", reason="Pending")
                self.requeue("conditions initialized", delay=1)

            if not resource.is_deleting:
                self.ensure_finalizer(resource, patch)
                if not resource.operation_url and self.settled(resource, patch):
                    return

            try:
                sm_client = self.get_sm_client(resource)
            except SecretNotFoundError as e:
                self.mark_transient(resource, OP_UNKNOWN, e)

            if resource.operation_url:
                self.poll(resource, patch, sm_client)
                if resource.is_deleting and resource.has_finalizer:
                    self.requeue("deletion continues after the running operation")
                return

            if resource.is_deleting:
                resource.observed_generation = resource.generation
                self.delete(resource, patch, sm_client)
                return

            self.reconcile_resource(resource, patch, sm_client)

    # Kind specific steps

    def settled(self, resource: ReconcilableResource, patch: kopf.Patch) -> bool:
        """Whether the resource needs no remote call at all in this pass."""
        return False

    def reconcile_resource(self, resource: ReconcilableResource, patch: kopf.Patch, sm_client: ServiceManager) -> None:
        raise NotImplementedError

    def list_remote(self, sm_client: ServiceManager, params: QueryParams) -> list[dict[str, Any]]:
        raise NotImplementedError

    def delete_remote(self, resource: ReconcilableResource, sm_client: ServiceManager) -> str:
        """Delete the remote object, returning an operation URL when asynchronous."""
        raise NotImplementedError

    def complete_operation(
        self,
        resource: ReconcilableResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        op_type: str,
    ) -> None:
        """Finish a create or update operation that succeeded remotely."""
        set_success(resource, op_type)

    def cleanup_on_delete(self, resource: ReconcilableResource) -> None:
        """Remove local artifacts of a resource whose remote object is gone."""

    # Error handling

    def is_transient(self, error: Exception) -> bool:
        return (
            is_transient_error(error)
            or is_transient_k8s_error(error)
            or isinstance(error, SecretNotFoundError)
        )

    def ignore_non_transient(self, resource: ReconcilableResource, patch: kopf.Patch) -> bool:
        """Whether a non-transient error should be retried because of the ignore annotation."""
        if ANNOTATION_IGNORE_NON_TRANSIENT not in resource.annotations:
            return False

        now = datetime.now(timezone.utc)
        since = parse_timestamp(resource.annotations.get(ANNOTATION_IGNORE_NON_TRANSIENT_TIMESTAMP))
        if since is None:
            patch.metadata.annotations[ANNOTATION_IGNORE_NON_TRANSIENT_TIMESTAMP] = now.isoformat()
            return True

        timeout = get_config().ignore_non_transient_timeout
        if (now - since).total_seconds() > timeout:
            self.log_info(resource, "Timeout for ignoring non transient errors elapsed", reason="IgnoreTimeout")
            return False
        return True

    def handle_error(
        self,
        resource: ReconcilableResource,
        patch: kopf.Patch,
        op_type: str,
        error: Exception,
    ) -> None:
        """Record a failed step and decide whether kopf retries it.

        Transient errors leave the resource in progress and are raised again
        as ``kopf.TemporaryError``. Non-transient errors become a terminal
        failure and are absorbed, except on the delete path which must
        eventually make progress.
        """
        if isinstance(error, (kopf.TemporaryError, kopf.PermanentError)):
            raise error

        message = sanitize_exception(error)
        metrics.error_total.labels(kind=self.kind, error_type=type(error).__name__).inc()

        if isinstance(error, ServiceManagerError) and error.status_code == 401:
            # The credentials secret may have been replaced since it was cached
            shared.forget_sm_credentials(resource.namespace)

        transient = self.is_transient(error)
        if not transient and self.ignore_non_transient(resource, patch):
            self.log_warning(resource, f"Ignoring non transient error: {message}", reason="IgnoreNonTransientError")
            transient = True

        if transient:
            self.log_warning(resource, f"Transient error during {op_type or 'reconcile'}: {message}", reason="TransientError")
            set_in_progress(resource, op_type, message)
            raise kopf.TemporaryError(message, delay=self.retry_delay(resource)) from error

        self.log_error(resource, f"Non transient error during {op_type or 'reconcile'}", error=error, reason="NonTransientError")
        set_failure(resource, op_type, message)
        emit_reconcile_failed(resource.raw, message)
        if op_type == OP_DELETE:
            raise kopf.TemporaryError(message, delay=self.retry_delay(resource)) from error
        resource.observed_generation = resource.generation

    def mark_transient(self, resource: ReconcilableResource, op_type: str, error: Exception) -> NoReturn:
        """Retry a step with backoff whatever the error is."""
        message = sanitize_exception(error)
        self.log_warning(resource, f"Retrying after error: {message}", reason="TransientError")
        set_in_progress(resource, op_type, message)
        raise kopf.TemporaryError(message, delay=self.retry_delay(resource)) from error

    # Operation polling

    def poll(self, resource: ReconcilableResource, patch: kopf.Patch, sm_client: ServiceManager) -> None:
        """Follow the remote operation recorded in the resource status."""
        op_type = resource.operation_type
        self.log_info(resource, f"Polling operation {resource.operation_url}", reason="Polling")

        try:
            operation = sm_client.status(resource.operation_url)
        except Exception as e:
            # The remote ID is kept, so the next pass re-resolves the resource
            self.log_warning(resource, f"Failed to fetch operation: {sanitize_exception(e)}", reason="PollFailed")
            resource.clear_operation()
            set_in_progress(resource, op_type, sanitize_exception(e))
            raise kopf.TemporaryError(sanitize_exception(e), delay=self.retry_delay(resource)) from e

        state = operation.state
        if state in (STATE_PENDING, STATE_IN_PROGRESS):
            set_in_progress(resource, op_type, operation.description)
            self.requeue(f"{op_type} operation is {state}")

        metrics.sm_operations_total.labels(operation=op_type, result=state or "unknown").inc()

        if state == STATE_FAILED:
            message = operation.error_description()
            set_failure(resource, op_type, message)
            resource.clear_operation()
            emit_reconcile_failed(resource.raw, message)
            if op_type == OP_DELETE:
                raise kopf.TemporaryError(message, delay=self.retry_delay(resource))
            resource.observed_generation = resource.generation
            return

        if state != STATE_SUCCEEDED:
            self.log_warning(resource, f"Unexpected operation state '{state}'", reason="Polling")
            self.requeue(f"{op_type} operation state is unknown")

        if op_type == OP_DELETE:
            resource.clear_operation()
            self.run_delete(resource, patch, sm_client, DeleteProgress(remote_id=resource.remote_id, remote_gone=True))
            return
        # Kept until completion succeeds, so a failed completion polls again
        self.complete_operation(resource, patch, sm_client, op_type)
        resource.clear_operation()

    # Recovery

    def recovery_query(self, resource: ReconcilableResource) -> QueryParams:
        return QueryParams(
            field_query=[
                f"name eq '{resource.external_name}'",
                f"context/clusterid eq '{get_config().cluster_id}'",
                f"context/namespace eq '{resource.namespace}'",
            ],
            label_query=[f"{SM_LABEL_K8S_NAME} eq '{resource.name}'"],
            general_params=["attach_last_operations=true"],
        )

    def find_remote(self, resource: ReconcilableResource, sm_client: ServiceManager) -> dict[str, Any] | None:
        """Look up the remote object created for this resource earlier.

        Only an unambiguous match counts.
        """
        matches = self.list_remote(sm_client, self.recovery_query(resource))
        if len(matches) == 1:
            return matches[0]
        if matches:
            self.log_warning(
                resource,
                f"Found {len(matches)} remote objects matching the resource, not recovering",
                reason="AmbiguousRecovery",
            )
        return None

    def replay_last_operation(self, resource: ReconcilableResource, remote: dict[str, Any]) -> None:
        """Adopt a remote object and mirror the outcome of its last operation."""
        resource.remote_id = remote.get("id", "")
        resource.clear_operation()
        if remote.get("ready"):
            resource.ready = True

        last_operation = Operation.from_dict(remote.get("last_operation"))
        if last_operation is None:
            state = STATE_SUCCEEDED if remote.get("ready") else STATE_FAILED
            op_type, description = OP_CREATE, ""
        else:
            state = last_operation.state
            op_type = last_operation.type or OP_CREATE
            description = last_operation.description

        if state in (STATE_PENDING, STATE_IN_PROGRESS):
            resource.set_operation(build_operation_url(last_operation.id, resource.remote_id, self.resource_url), op_type)
            set_in_progress(resource, op_type, description)
            self.requeue(f"recovered {op_type} operation is {state}")
        elif state == STATE_SUCCEEDED:
            set_success(resource, op_type)
        else:
            set_failure(resource, op_type, description or "async operation error")

    # Deletion

    def delete(self, resource: ReconcilableResource, patch: kopf.Patch, sm_client: ServiceManager) -> None:
        self.run_delete(resource, patch, sm_client, DeleteProgress(remote_id=resource.remote_id))

    def run_delete(
        self,
        resource: ReconcilableResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        progress: DeleteProgress,
    ) -> None:
        """Run the deletion steps until the finalizer is gone or a step has to wait."""
        step = DeleteStep.DELETE_PENDING
        while step is not DeleteStep.FINALIZER_REMOVED:
            step = next_delete_step(step, progress)
            self.log_info(resource, f"Deletion step {step.value}", event="delete", reason=step.value)

            if step is DeleteStep.RECOVERY_CHECK:
                progress.recovery_checked = True
                try:
                    remote = self.find_remote(resource, sm_client)
                except Exception as e:
                    self.handle_error(resource, patch, OP_DELETE, e)
                if remote is not None:
                    self.log_info(resource, f"Remote object {remote.get('id')} exists, deleting it", reason="DeleteAfterRecovery")
                    resource.remote_id = remote.get("id", "")
                    progress.remote_id = resource.remote_id
                    last_operation = Operation.from_dict(remote.get("last_operation"))
                    if (
                        last_operation is not None
                        and last_operation.type == OP_DELETE
                        and last_operation.state in (STATE_PENDING, STATE_IN_PROGRESS)
                    ):
                        resource.set_operation(
                            build_operation_url(last_operation.id, resource.remote_id, self.resource_url),
                            OP_DELETE,
                        )
                        set_in_progress(resource, OP_DELETE, "delete after recovery")
                        self.requeue("recovered delete operation is in progress")

            elif step is DeleteStep.REMOTE_DELETE_REQUESTED:
                try:
                    operation_url = self.delete_remote(resource, sm_client)
                except Exception as e:
                    self.handle_error(resource, patch, OP_DELETE, e)
                if operation_url:
                    resource.set_operation(operation_url, OP_DELETE)
                    set_in_progress(resource, OP_DELETE)
                    metrics.sm_operations_total.labels(operation=OP_DELETE, result="accepted").inc()
                    self.requeue("delete operation accepted")
                metrics.sm_operations_total.labels(operation=OP_DELETE, result=STATE_SUCCEEDED).inc()
                progress.remote_gone = True

            elif step is DeleteStep.CLEANUP_SECRET:
                self.cleanup_on_delete(resource)
                progress.secret_cleaned = True

            elif step is DeleteStep.FINALIZER_REMOVED:
                set_success(resource, OP_DELETE)
                self.remove_finalizer(resource, patch)
                if progress.remote_id:
                    emit_deleted(resource.raw, self.kind, progress.remote_id)
                self.log_info(resource, "Resource deleted, finalizer removed", event="delete", reason="Deleted")

    # Shared predicates

    def in_final_state(self, resource: ReconcilableResource) -> bool:
        """Nothing left to do until the spec changes."""
        return (
            resource.observed_generation == resource.generation
            and not resource.operation_url
            and not resource.is_deleting
            and not is_in_progress(resource.conditions)
        )
