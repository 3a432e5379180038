"""Handler for ServiceBinding resources.

A binding depends on a ready ServiceInstance. Its credentials are written to
a Secret owned by the binding. Bindings are never updated remotely: a spec
change only re-renders the secret, and credential rotation replaces the
remote binding while the previous one lives on as a stale binding until its
TTL elapses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import kopf
from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..config import get_config
from ..constants import (
    ANNOTATION_FORCE_ROTATE,
    ANNOTATION_USE_INSTANCE_METADATA_NAME,
    API_GROUP_VERSION,
    COND_CRED_ROTATION_IN_PROGRESS,
    KIND_SERVICE_BINDING,
    KIND_SERVICE_INSTANCE,
    LABEL_BINDING,
    LABEL_STALE_ROTATION_OF,
    OP_CREATE,
    OP_UNKNOWN,
    REASON_BLOCKED,
    REASON_CREATE_FAILED,
    REASON_CRED_PREPARING,
    REASON_CRED_ROTATING,
    SM_LABEL_CLUSTER_ID,
    SM_LABEL_K8S_NAME,
    SM_LABEL_NAMESPACE,
    STATE_SUCCEEDED,
)
from ..resources import ServiceBindingResource, ServiceInstanceResource
from ..services.sm.base import ServiceManager
from ..services.sm.client import extract_binding_id
from ..services.sm.errors import ServiceManagerError
from ..services.sm.models import SERVICE_BINDINGS_URL, Operation, QueryParams
from ..tracing import trace_span
from ..utils.conditions import (
    clear_cred_rotation,
    find_condition,
    is_condition_true,
    is_failed,
    is_in_progress,
    set_blocked,
    set_cred_rotation_in_progress,
    set_in_progress,
    set_pending_termination,
    set_success,
    succeeded_reason,
)
from ..utils.credentials import build_instance_info, build_secret_payload
from ..utils.errors import sanitize_exception
from ..utils.events import (
    emit_blocked,
    emit_created,
    emit_credentials_rotated,
    emit_event,
    emit_secret_created,
)
from ..utils.parameters import build_parameters
from ..utils.rotation import (
    build_stale_binding,
    force_rotate_requested,
    is_rotation_due,
    is_stale,
    random_suffix,
    rotation_record,
)
from ..utils.secrets import (
    create_secret,
    delete_secret,
    get_secret_value,
    read_secret,
    replace_secret_data,
)
from .base import BaseHandler
from .shared import (
    create_service_binding,
    delete_service_binding,
    get_service_binding,
    get_service_instance,
)


def binding_settled(binding: ServiceBindingResource) -> bool:
    """Nothing but maintenance left to do for this binding.

    A failed binding leaves this state when its spec changes. A blocked
    one never settles, so every resync checks its blocker again.
    """
    if succeeded_reason(binding.conditions) == REASON_BLOCKED:
        return False
    if is_failed(binding.conditions) and binding.observed_generation != binding.generation:
        return False
    return (
        binding.observed_generation > 0
        and not binding.operation_url
        and not binding.is_deleting
        and not is_in_progress(binding.conditions)
    )


def instance_not_usable(instance: ServiceInstanceResource) -> bool:
    if instance.is_deleting:
        return True
    return succeeded_reason(instance.conditions) == REASON_CREATE_FAILED


class ServiceBindingHandler(BaseHandler):
    """Handler for ServiceBinding resources."""

    resource_class = ServiceBindingResource
    resource_url = SERVICE_BINDINGS_URL

    def __init__(self) -> None:
        """Initialize ServiceBinding handler."""
        super().__init__(KIND_SERVICE_BINDING)

    # Engine hooks

    def list_remote(self, sm_client: ServiceManager, params: QueryParams) -> list[dict[str, Any]]:
        return sm_client.list_bindings(params)

    def delete_remote(self, binding: ServiceBindingResource, sm_client: ServiceManager) -> str:
        self.log_info(binding, f"Deleting binding {binding.remote_id}", event="delete", reason="Deleting")
        return sm_client.unbind(binding.remote_id, user=binding.user_info)

    def cleanup_on_delete(self, binding: ServiceBindingResource) -> None:
        core_api = self.core_api()
        secret = read_secret(core_api, binding.namespace, binding.secret_name)
        if secret is None:
            return
        owner = (secret.metadata.labels or {}).get(LABEL_BINDING)
        if owner != binding.name:
            self.log_info(binding, f"Secret {binding.secret_name} belongs to {owner or 'nobody'}, keeping it")
            return
        delete_secret(core_api, binding.namespace, binding.secret_name)
        self.log_info(binding, f"Deleted secret {binding.secret_name}", event="delete", reason="SecretDeleted")

    def complete_operation(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        op_type: str,
    ) -> None:
        if op_type != OP_CREATE:
            set_success(binding, op_type)
            return

        try:
            remote = sm_client.get_binding_by_id(binding.remote_id)
        except Exception as e:
            self.log_error(binding, f"Binding {binding.remote_id} succeeded but could not be fetched", error=e)
            self.handle_error(binding, patch, OP_CREATE, e)
            return

        instance = self.get_instance(binding) or {}
        if not self.store_secret(binding, patch, remote, instance, OP_CREATE):
            return
        set_success(binding, OP_CREATE)
        emit_created(binding.raw, self.kind, binding.remote_id)

    # Reconcile

    def reconcile_resource(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
    ) -> None:
        now = datetime.now(timezone.utc)

        if binding.ready:
            if is_stale(binding) and self.reconcile_stale(binding, now):
                return
            if self.rotation_due(binding, now):
                self.log_info(binding, "Credentials rotation is due", event="rotate", reason=REASON_CRED_PREPARING)
                set_cred_rotation_in_progress(binding, REASON_CRED_PREPARING)

        if is_condition_true(binding.conditions, COND_CRED_ROTATION_IN_PROGRESS):
            self.rotate_credentials(binding, patch, sm_client, now)

        if binding_settled(binding):
            self.maintain(binding, patch, sm_client)
            return

        self.log_info(
            binding,
            f"Binding is not in final state (generation: {binding.generation}, "
            f"observedGeneration: {binding.observed_generation})",
        )
        binding.observed_generation = binding.generation

        instance = self.check_instance(binding, patch)
        if instance is None:
            return

        if binding.remote_id:
            remote = self.fetch_remote(binding, patch, sm_client)
            if remote is not None:
                self.recover(binding, patch, remote, instance)
                return
            if binding.remote_id:
                return

        if not self.secret_name_available(binding):
            return

        try:
            remote = self.find_remote(binding, sm_client)
        except Exception as e:
            self.mark_transient(binding, OP_CREATE, e)
        if remote is not None:
            self.recover(binding, patch, remote, instance)
            return

        if not binding.ready:
            self.create(binding, patch, sm_client, instance)

    # Dependency gate

    def get_instance(self, binding: ServiceBindingResource) -> dict[str, Any] | None:
        try:
            return get_service_instance(self.custom_api(), binding.instance_namespace, binding.instance_name)
        except ApiException as e:
            self.mark_transient(binding, OP_CREATE, e)

    def check_instance(self, binding: ServiceBindingResource, patch: kopf.Patch) -> dict[str, Any] | None:
        """Resolve the instance a binding belongs to.

        Returns:
            The ServiceInstance object, or None when the binding is blocked
        """
        body = self.get_instance(binding)
        if body is None:
            self.block(binding, f"couldn't find the service instance '{binding.instance_name}'")
            return None

        instance = ServiceInstanceResource(body)
        if instance_not_usable(instance):
            self.block(binding, f"service instance '{binding.instance_name}' is not usable")
            return None

        if is_in_progress(instance.conditions) or not instance.ready:
            set_in_progress(
                binding,
                OP_CREATE,
                f"creation in progress, waiting for service instance '{binding.instance_name}' to be ready",
            )
            self.requeue(f"waiting for service instance {binding.instance_name}")

        self.set_owner(binding, instance, patch)
        return body

    def block(self, binding: ServiceBindingResource, message: str) -> None:
        self.log_warning(binding, message, reason="Blocked")
        set_blocked(binding, message)
        emit_blocked(binding.raw, message)

    def set_owner(self, binding: ServiceBindingResource, instance: ServiceInstanceResource, patch: kopf.Patch) -> None:
        """Make the instance the controlling owner of the binding, once."""
        if instance.namespace != binding.namespace:
            return
        if any(ref.get("controller") for ref in binding.owner_references):
            return
        self.log_info(binding, f"Setting service instance {instance.name} as owner of the binding")
        owner_references = binding.owner_references + [
            {
                "apiVersion": API_GROUP_VERSION,
                "kind": KIND_SERVICE_INSTANCE,
                "name": instance.name,
                "uid": instance.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
        patch.metadata["ownerReferences"] = owner_references
        binding.meta["ownerReferences"] = owner_references

    # Create and recover

    def create(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        instance: dict[str, Any],
    ) -> None:
        self.log_info(binding, "Creating binding", event="create", reason="Creating")
        instance_id = (instance.get("status") or {}).get("instanceID", "")
        binding.instance_id = instance_id

        with trace_span("bind", kind=self.kind, attributes={"instance.id": instance_id}):
            try:
                core_api = self.core_api()
                body: dict[str, Any] = {
                    "name": binding.external_name,
                    "service_instance_id": instance_id,
                    "labels": {
                        SM_LABEL_NAMESPACE: [binding.instance_namespace],
                        SM_LABEL_K8S_NAME: [binding.name],
                        SM_LABEL_CLUSTER_ID: [get_config().cluster_id],
                    },
                }
                parameters = build_parameters(
                    binding.namespace,
                    binding.parameters_from,
                    binding.parameters,
                    lambda namespace, name, key: get_secret_value(core_api, namespace, name, key),
                )
                if parameters is not None:
                    body["parameters"] = parameters
                created, location = sm_client.bind(body, user=binding.user_info)
            except Exception as e:
                self.log_error(binding, f"Failed to create binding for instance {instance_id}", error=e)
                self.handle_error(binding, patch, OP_CREATE, e)
                return

        if location:
            binding_id = extract_binding_id(location)
            if not binding_id:
                self.handle_error(
                    binding,
                    patch,
                    OP_CREATE,
                    ValueError(f"failed to extract the binding ID from the operation URL {location}"),
                )
                return
            self.log_info(binding, f"Bind request is in progress, operation {location}")
            binding.remote_id = binding_id
            binding.set_operation(location, OP_CREATE)
            set_in_progress(binding, OP_CREATE)
            metrics.sm_operations_total.labels(operation=OP_CREATE, result="accepted").inc()
            self.requeue("bind request accepted")

        created = created or {}
        if not self.store_secret(binding, patch, created, instance, OP_CREATE):
            return

        binding.remote_id = created.get("id", "")
        self.log_info(binding, f"Binding {binding.remote_id} created", event="create", reason="Created")
        metrics.sm_operations_total.labels(operation=OP_CREATE, result=STATE_SUCCEEDED).inc()
        set_success(binding, OP_CREATE)
        emit_created(binding.raw, self.kind, binding.remote_id)

    def fetch_remote(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
    ) -> dict[str, Any] | None:
        """Re-read a known binding, clearing its ID if it no longer exists."""
        try:
            return sm_client.get_binding_by_id(
                binding.remote_id,
                QueryParams(general_params=["attach_last_operations=true"]),
            )
        except ServiceManagerError as e:
            if e.status_code != 404:
                self.handle_error(binding, patch, OP_UNKNOWN, e)
                return None
            self.log_warning(binding, f"Binding {binding.remote_id} no longer exists", reason="NotFound")
            binding.remote_id = ""
            binding.ready = False
            return None
        except Exception as e:
            self.handle_error(binding, patch, OP_UNKNOWN, e)
            return None

    def recover(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        remote: dict[str, Any],
        instance: dict[str, Any],
    ) -> None:
        """Adopt an existing remote binding and write its secret."""
        self.log_info(binding, f"Found existing binding {remote.get('id')}, recovering its status", reason="Recovered")
        last_operation = Operation.from_dict(remote.get("last_operation"))

        # No credentials exist while a create is still running or has failed
        creating = (
            last_operation is not None
            and last_operation.type == OP_CREATE
            and last_operation.state != STATE_SUCCEEDED
        )
        if not creating:
            op_type = last_operation.type if last_operation is not None else OP_CREATE
            if not self.store_secret(binding, patch, remote, instance, op_type):
                return

        binding.instance_id = (instance.get("status") or {}).get("instanceID", "")
        binding.observed_generation = binding.generation
        self.replay_last_operation(binding, remote)

    # Secret

    def secret_name_available(self, binding: ServiceBindingResource) -> bool:
        """Block the binding when its secret name is used by something else."""
        try:
            secret = read_secret(self.core_api(), binding.namespace, binding.secret_name)
        except ApiException as e:
            self.mark_transient(binding, OP_CREATE, e)
        if secret is None:
            return True

        other = (secret.metadata.labels or {}).get(LABEL_BINDING)
        if other == binding.name:
            return True
        if other:
            message = f"secret {binding.secret_name} belongs to another binding {other}, choose a different name"
        else:
            message = (
                f"the specified secret name '{binding.secret_name}' is already taken. "
                "Choose another name and try again"
            )
        self.block(binding, message)
        return False

    def store_secret(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        remote: dict[str, Any],
        instance: dict[str, Any],
        op_type: str,
    ) -> bool:
        """Write the binding secret, recording a failure on the binding.

        Returns:
            True if the secret was written
        """
        try:
            self.write_secret(binding, remote.get("credentials"), instance)
        except ApiException as e:
            self.log_error(binding, f"Failed to store secret {binding.secret_name}", error=e)
            self.mark_transient(binding, op_type, e)
        except Exception as e:
            self.log_error(binding, f"Failed to build secret {binding.secret_name}", error=e)
            self.handle_error(binding, patch, op_type, e)
            return False
        return True

    def write_secret(
        self,
        binding: ServiceBindingResource,
        credentials: dict[str, Any] | None,
        instance: dict[str, Any],
    ) -> None:
        if ANNOTATION_USE_INSTANCE_METADATA_NAME in binding.annotations:
            instance_name = binding.instance_name
        else:
            instance_name = (instance.get("spec") or {}).get("externalName") or binding.instance_name
        instance_info, instance_properties = build_instance_info(instance_name, instance)
        payload = build_secret_payload(
            binding.name,
            binding.spec,
            credentials,
            instance_info,
            instance_properties,
        )
        owner_references = [
            {
                "apiVersion": API_GROUP_VERSION,
                "kind": KIND_SERVICE_BINDING,
                "name": binding.name,
                "uid": binding.uid,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]

        core_api = self.core_api()
        existing = read_secret(core_api, binding.namespace, binding.secret_name)
        if existing is not None:
            self.log_info(binding, f"Updating secret {binding.secret_name}")
            replace_secret_data(
                core_api,
                existing,
                payload.data,
                labels=payload.labels,
                annotations=payload.annotations,
                owner_references=owner_references,
            )
            return

        try:
            create_secret(
                core_api,
                binding.namespace,
                binding.secret_name,
                payload.data,
                labels=payload.labels,
                annotations=payload.annotations,
                owner_references=owner_references,
            )
        except ApiException as e:
            if e.status != 409:
                raise
            self.log_info(binding, f"Secret {binding.secret_name} already exists")
            return
        emit_secret_created(binding.raw, binding.secret_name)
        self.log_info(binding, f"Created secret {binding.secret_name}", reason="SecretCreated")

    # Maintenance

    def maintain(self, binding: ServiceBindingResource, patch: kopf.Patch, sm_client: ServiceManager) -> None:
        """Keep a settled binding's secret in place and up to date."""
        if is_failed(binding.conditions):
            return

        try:
            secret = read_secret(self.core_api(), binding.namespace, binding.secret_name)
        except ApiException as e:
            self.mark_transient(binding, OP_UNKNOWN, e)

        if secret is None:
            self.log_warning(binding, f"Secret {binding.secret_name} not found, recreating it", reason="SecretDeleted")
            binding.remote_id = ""
            set_in_progress(binding, OP_CREATE, "recreating deleted secret")
            emit_event(binding.raw, "SecretDeleted", f"Secret {binding.secret_name} was deleted", type_="Warning")
            return

        if binding.observed_generation == binding.generation:
            return

        if binding.ready:
            self.log_info(binding, "Binding spec changed, regenerating its secret")
            try:
                remote = sm_client.get_binding_by_id(binding.remote_id)
            except Exception as e:
                self.handle_error(binding, patch, OP_UNKNOWN, e)
                return
            instance = self.get_instance(binding) or {}
            if not self.store_secret(binding, patch, remote, instance, OP_UNKNOWN):
                return
        binding.observed_generation = binding.generation

    # Credential rotation

    def rotation_due(self, binding: ServiceBindingResource, now: datetime) -> bool:
        try:
            return is_rotation_due(binding, now)
        except ValueError as e:
            self.log_warning(binding, f"Invalid credentials rotation policy: {e}", reason="InvalidRotationPolicy")
            return False

    def rotate_credentials(
        self,
        binding: ServiceBindingResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        now: datetime,
    ) -> None:
        """Advance a credentials rotation.

        Preparing renames the remote binding and keeps it as a stale
        ServiceBinding, then creation of a new remote binding starts.
        Rotating waits for the new binding to become ready.
        """
        if force_rotate_requested(binding):
            self.log_info(binding, "Removing force rotate annotation", event="rotate")
            patch.metadata.annotations[ANNOTATION_FORCE_ROTATE] = None
            binding.annotations.pop(ANNOTATION_FORCE_ROTATE, None)

        condition = find_condition(binding.conditions, COND_CRED_ROTATION_IN_PROGRESS)
        if condition is not None and condition.get("reason") == REASON_CRED_ROTATING:
            if binding.remote_id and binding.ready:
                self.log_info(binding, "Credentials rotation finished", event="rotate", reason="Rotated")
                binding.last_rotation_time = now
                clear_cred_rotation(binding)
                metrics.credential_rotations_total.labels(result="success").inc()
            elif is_failed(binding.conditions):
                self.log_warning(binding, "Binding failed, stopping credentials rotation", event="rotate")
                clear_cred_rotation(binding)
                metrics.credential_rotations_total.labels(result="failed").inc()
            return

        if not binding.remote_id:
            self.log_info(binding, "No binding ID, nothing to rotate", event="rotate")
            clear_cred_rotation(binding)
            return

        suffix = "-" + random_suffix()
        self.log_info(binding, f"Renaming binding {binding.remote_id} to {binding.external_name}{suffix}", event="rotate")
        try:
            sm_client.rename_binding(binding.remote_id, binding.external_name + suffix, binding.name + suffix)
        except Exception as e:
            self.rotation_failed(binding, "Failed to rename binding", e)

        stale = build_stale_binding(binding, suffix)
        try:
            create_service_binding(self.custom_api(), stale)
        except Exception as e:
            try:
                sm_client.rename_binding(binding.remote_id, binding.external_name, binding.name)
            except Exception as rename_error:
                self.log_error(
                    binding,
                    f"Failed to rename binding {binding.remote_id} back, it is orphaned remotely",
                    error=rename_error,
                )
            self.rotation_failed(binding, "Failed to back up the old binding", e)

        emit_credentials_rotated(binding.raw, stale["metadata"]["name"])
        binding.remote_id = ""
        binding.ready = False
        set_in_progress(binding, OP_CREATE, "rotating binding credentials")
        set_cred_rotation_in_progress(binding, REASON_CRED_ROTATING)

    def rotation_failed(self, binding: ServiceBindingResource, message: str, error: Exception) -> None:
        self.log_error(binding, message, error=error, event="rotate")
        metrics.credential_rotations_total.labels(result="failed").inc()
        set_cred_rotation_in_progress(binding, REASON_CRED_PREPARING, sanitize_exception(error))
        raise kopf.TemporaryError(sanitize_exception(error), delay=self.retry_delay(binding)) from error

    def reconcile_stale(self, binding: ServiceBindingResource, now: datetime) -> bool:
        """Delete a stale binding once it is safe.

        Returns:
            True if the binding was deleted
        """
        record = rotation_record(binding, None)
        if not record.is_orphaned and not record.expired(now):
            return False

        original = None
        if not record.is_orphaned:
            try:
                original = get_service_binding(self.custom_api(), binding.namespace, record.original_name)
            except ApiException as e:
                self.mark_transient(binding, OP_UNKNOWN, e)
            record = rotation_record(binding, original)

        if original is None or record.can_delete_stale(now):
            reason = "orphaned" if record.is_orphaned else "expired"
            self.log_info(binding, f"Deleting {reason} stale binding", event="delete", reason="StaleBinding")
            delete_service_binding(self.custom_api(), binding.namespace, binding.name)
            return True

        self.log_info(
            binding,
            f"Not deleting stale binding, binding {binding.labels.get(LABEL_STALE_ROTATION_OF)} is not ready",
            reason="PendingTermination",
        )
        set_pending_termination(binding, "not deleting stale binding since original binding is not ready")
        self.requeue("stale binding pending termination", delay=get_config().long_poll_interval)


# Global handler instance
_handler = ServiceBindingHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_SERVICE_BINDING)
@kopf.on.update(API_GROUP_VERSION, KIND_SERVICE_BINDING)
@kopf.on.resume(API_GROUP_VERSION, KIND_SERVICE_BINDING)
def handle_service_binding(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Handle ServiceBinding resource reconciliation."""
    _handler.handle(body, patch)


@kopf.timer(API_GROUP_VERSION, KIND_SERVICE_BINDING, interval=get_config().sync_period)
def resync_service_binding(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Periodically resync ServiceBinding resources."""
    _handler.handle(body, patch)


@kopf.on.delete(API_GROUP_VERSION, KIND_SERVICE_BINDING, optional=True)
def handle_service_binding_delete(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Handle ServiceBinding resource deletion."""
    _handler.handle(body, patch)
