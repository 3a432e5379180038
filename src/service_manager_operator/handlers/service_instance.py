"""Handler for ServiceInstance resources."""

from __future__ import annotations

from typing import Any

import kopf

from .. import metrics
from ..config import get_config
from ..constants import (
    API_GROUP_VERSION,
    COND_SHARED,
    KIND_SERVICE_INSTANCE,
    OP_CREATE,
    OP_UNKNOWN,
    OP_UPDATE,
    REASON_IN_PROGRESS,
    REASON_SHARE_FAILED,
    REASON_SHARE_NOT_SUPPORTED,
    REASON_SHARE_SUCCEEDED,
    REASON_UNSHARE_FAILED,
    REASON_UNSHARE_SUCCEEDED,
    REASON_UPDATE_IN_PROGRESS,
    SM_LABEL_CLUSTER_ID,
    SM_LABEL_K8S_NAME,
    SM_LABEL_NAMESPACE,
    STATE_SUCCEEDED,
)
from ..resources import ServiceInstanceResource
from ..services.sm.base import ServiceManager
from ..services.sm.errors import ServiceManagerError
from ..services.sm.models import SERVICE_INSTANCES_URL, QueryParams
from ..tracing import add_span_attribute, trace_span
from ..utils.conditions import (
    find_condition,
    is_in_progress,
    remove_condition,
    set_in_progress,
    set_shared_condition,
    set_success,
    succeeded_reason,
)
from ..utils.errors import sanitize_exception
from ..utils.events import emit_created, emit_updated
from ..utils.parameters import build_parameters
from ..utils.secrets import get_secret_value
from .base import BaseHandler
from .shared import get_offering_tags


def update_required(instance: ServiceInstanceResource) -> bool:
    """A ready instance whose spec changed, or whose update was interrupted."""
    if not instance.ready:
        return False
    if succeeded_reason(instance.conditions) == REASON_UPDATE_IN_PROGRESS:
        return True
    return instance.compute_spec_hash() != instance.hashed_spec


def sharing_update_required(instance: ServiceInstanceResource) -> bool:
    """Whether spec.shared and the Shared condition disagree.

    Sharing is only attempted for ready instances. A plan that does not
    support sharing is not retried.
    """
    if not instance.ready:
        return False

    should_be_shared = bool(instance.shared)
    condition = find_condition(instance.conditions, COND_SHARED)
    if condition is None:
        return should_be_shared

    reason = condition.get("reason")
    if reason == REASON_SHARE_NOT_SUPPORTED:
        return False
    if reason in (REASON_IN_PROGRESS, REASON_SHARE_FAILED, REASON_UNSHARE_FAILED):
        return True

    if should_be_shared:
        return condition.get("status") == "False"
    return condition.get("status") == "True"


class ServiceInstanceHandler(BaseHandler):
    """Handler for ServiceInstance resources."""

    resource_class = ServiceInstanceResource
    resource_url = SERVICE_INSTANCES_URL

    def __init__(self) -> None:
        """Initialize ServiceInstance handler."""
        super().__init__(KIND_SERVICE_INSTANCE)

    def settled(self, instance: ServiceInstanceResource, patch: kopf.Patch) -> bool:
        if not self.in_final_state(instance):
            return False
        if not instance.hashed_spec:
            instance.update_spec_hash()
        return not sharing_update_required(instance)

    def list_remote(self, sm_client: ServiceManager, params: QueryParams) -> list[dict[str, Any]]:
        return sm_client.list_instances(params)

    def delete_remote(self, instance: ServiceInstanceResource, sm_client: ServiceManager) -> str:
        self.log_info(instance, f"Deleting instance {instance.remote_id}", event="delete", reason="Deleting")
        return sm_client.deprovision(instance.remote_id, user=instance.user_info)

    def complete_operation(
        self,
        instance: ServiceInstanceResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
        op_type: str,
    ) -> None:
        if op_type == OP_CREATE:
            try:
                sm_client.get_instance_by_id(instance.remote_id)
            except Exception as e:
                self.log_error(instance, f"Instance {instance.remote_id} succeeded but could not be fetched", error=e)
                if isinstance(e, ServiceManagerError) and e.status_code == 404:
                    # Lost remotely, the next pass looks the instance up by ID again
                    instance.clear_operation()
                    self.mark_transient(instance, OP_CREATE, e)
                self.handle_error(instance, patch, OP_CREATE, e)
                return

        set_success(instance, op_type)
        if op_type == OP_CREATE:
            emit_created(instance.raw, self.kind, instance.remote_id)
        elif op_type == OP_UPDATE:
            emit_updated(instance.raw, self.kind, instance.remote_id)

    def build_parameters(self, instance: ServiceInstanceResource) -> dict[str, Any] | None:
        core_api = self.core_api()
        return build_parameters(
            instance.namespace,
            instance.parameters_from,
            instance.parameters,
            lambda namespace, name, key: get_secret_value(core_api, namespace, name, key),
        )

    def reconcile_resource(
        self,
        instance: ServiceInstanceResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
    ) -> None:
        """Create, recover, update or share an instance that is not settled."""
        if self.in_final_state(instance):
            self.reconcile_sharing(instance, sm_client)
            return

        self.log_info(
            instance,
            f"Instance is not in final state (generation: {instance.generation}, "
            f"observedGeneration: {instance.observed_generation})",
        )
        instance.observed_generation = instance.generation

        if instance.remote_id and not instance.ready:
            remote = self.fetch_remote(instance, patch, sm_client)
            if remote is not None:
                self.replay_last_operation(instance, remote)
                return
            if instance.remote_id:
                return

        if not instance.remote_id:
            try:
                remote = self.find_remote(instance, sm_client)
            except Exception as e:
                self.mark_transient(instance, OP_UNKNOWN, e)
            if remote is not None:
                self.recover(instance, sm_client, remote)
            else:
                self.create(instance, patch, sm_client)
            return

        if update_required(instance) and not self.update(instance, patch, sm_client):
            return

        if sharing_update_required(instance):
            self.reconcile_sharing(instance, sm_client)
        elif is_in_progress(instance.conditions):
            # A retried error left the condition behind, nothing is pending remotely
            set_success(instance, OP_UNKNOWN)

    def fetch_remote(
        self,
        instance: ServiceInstanceResource,
        patch: kopf.Patch,
        sm_client: ServiceManager,
    ) -> dict[str, Any] | None:
        """Re-read an instance whose last operation was lost.

        A remote 404 clears the instance ID so the instance is recovered or
        created again.
        """
        try:
            return sm_client.get_instance_by_id(
                instance.remote_id,
                QueryParams(general_params=["attach_last_operations=true"]),
            )
        except ServiceManagerError as e:
            if e.status_code != 404:
                self.handle_error(instance, patch, OP_UNKNOWN, e)
                return None
            self.log_warning(instance, f"Instance {instance.remote_id} no longer exists", reason="NotFound")
            instance.remote_id = ""
            return None
        except Exception as e:
            self.handle_error(instance, patch, OP_UNKNOWN, e)
            return None

    def recover(self, instance: ServiceInstanceResource, sm_client: ServiceManager, remote: dict[str, Any]) -> None:
        self.log_info(instance, f"Found existing instance {remote.get('id')}, recovering its status", reason="Recovered")
        instance.update_spec_hash()
        # The spec generation the remote state represents is unknown
        instance.observed_generation = 1 if instance.generation == 1 else 0

        if remote.get("shared"):
            set_shared_condition(instance, True, REASON_SHARE_SUCCEEDED, "instance shared successfully")

        try:
            tags = get_offering_tags(sm_client, remote.get("service_plan_id", ""))
        except Exception as e:
            self.log_warning(instance, f"Could not recover offering tags: {sanitize_exception(e)}")
        else:
            if tags:
                instance.tags = tags

        self.replay_last_operation(instance, remote)

    def create(self, instance: ServiceInstanceResource, patch: kopf.Patch, sm_client: ServiceManager) -> None:
        self.log_info(instance, "Creating instance", event="create", reason="Creating")
        instance.update_spec_hash()

        with trace_span("provision_instance", kind=self.kind, attributes={"offering": instance.offering_name}):
            try:
                body: dict[str, Any] = {
                    "name": instance.external_name,
                    "service_plan_id": instance.plan_id,
                    "labels": {
                        SM_LABEL_NAMESPACE: [instance.namespace],
                        SM_LABEL_K8S_NAME: [instance.name],
                        SM_LABEL_CLUSTER_ID: [get_config().cluster_id],
                    },
                }
                parameters = self.build_parameters(instance)
                if parameters is not None:
                    body["parameters"] = parameters
                response = sm_client.provision(
                    body,
                    instance.offering_name,
                    instance.plan_name,
                    user=instance.user_info,
                )
                add_span_attribute("instance.id", response.instance_id)
            except Exception as e:
                self.log_error(
                    instance,
                    f"Failed to create instance of offering '{instance.offering_name}' "
                    f"plan '{instance.plan_name}'",
                    error=e,
                )
                self.handle_error(instance, patch, OP_CREATE, e)
                return

        instance.remote_id = response.instance_id
        if response.tags:
            instance.tags = response.tags

        if response.location:
            self.log_info(instance, f"Provision request is in progress, operation {response.location}")
            instance.set_operation(response.location, OP_CREATE)
            set_in_progress(instance, OP_CREATE)
            metrics.sm_operations_total.labels(operation=OP_CREATE, result="accepted").inc()
            self.requeue("provision request accepted")

        self.log_info(instance, f"Instance {instance.remote_id} provisioned", event="create", reason="Created")
        metrics.sm_operations_total.labels(operation=OP_CREATE, result=STATE_SUCCEEDED).inc()
        set_success(instance, OP_CREATE)
        emit_created(instance.raw, self.kind, instance.remote_id)

    def update(self, instance: ServiceInstanceResource, patch: kopf.Patch, sm_client: ServiceManager) -> bool:
        """Send the current spec to the remote instance.

        Returns:
            True if the update completed synchronously
        """
        self.log_info(instance, f"Updating instance {instance.remote_id}", event="update", reason="Updating")
        instance.update_spec_hash()

        with trace_span("update_instance", kind=self.kind, attributes={"instance.id": instance.remote_id}):
            try:
                body: dict[str, Any] = {
                    "name": instance.external_name,
                    "service_plan_id": instance.plan_id,
                }
                parameters = self.build_parameters(instance)
                if parameters is not None:
                    body["parameters"] = parameters
                _, location = sm_client.update_instance(
                    instance.remote_id,
                    body,
                    instance.offering_name,
                    instance.plan_name,
                    user=instance.user_info,
                )
            except Exception as e:
                self.log_error(instance, f"Failed to update instance {instance.remote_id}", error=e)
                self.handle_error(instance, patch, OP_UPDATE, e)
                return False

        if location:
            self.log_info(instance, f"Update request accepted, operation {location}")
            instance.set_operation(location, OP_UPDATE)
            set_in_progress(instance, OP_UPDATE)
            metrics.sm_operations_total.labels(operation=OP_UPDATE, result="accepted").inc()
            self.requeue("update request accepted")

        self.log_info(instance, "Instance updated", event="update", reason="Updated")
        metrics.sm_operations_total.labels(operation=OP_UPDATE, result=STATE_SUCCEEDED).inc()
        set_success(instance, OP_UPDATE)
        emit_updated(instance.raw, self.kind, instance.remote_id)
        return True

    def reconcile_sharing(self, instance: ServiceInstanceResource, sm_client: ServiceManager) -> None:
        """Share or unshare the remote instance according to spec.shared."""
        if instance.shared:
            self.log_info(instance, "Sharing instance", reason="Sharing")
            try:
                sm_client.share_instance(instance.remote_id, user=instance.user_info)
            except Exception as e:
                self.handle_sharing_error(instance, False, REASON_SHARE_FAILED, e)
                return
            set_shared_condition(instance, True, REASON_SHARE_SUCCEEDED, "instance shared successfully")
            return

        self.log_info(instance, "Unsharing instance", reason="Unsharing")
        try:
            sm_client.unshare_instance(instance.remote_id, user=instance.user_info)
        except Exception as e:
            self.handle_sharing_error(instance, True, REASON_UNSHARE_FAILED, e)
            return
        if instance.shared is None:
            remove_condition(instance.conditions, COND_SHARED)
        else:
            set_shared_condition(instance, False, REASON_UNSHARE_SUCCEEDED, "instance un-shared successfully")

    def handle_sharing_error(
        self,
        instance: ServiceInstanceResource,
        shared: bool,
        reason: str,
        error: Exception,
    ) -> None:
        message = sanitize_exception(error)
        self.log_warning(instance, f"Sharing update failed: {message}", reason=reason)
        if isinstance(error, ServiceManagerError):
            if error.status_code == 429:
                reason, message = REASON_IN_PROGRESS, "in progress"
            elif reason == REASON_SHARE_FAILED and error.get_status_code() == 400:
                reason = REASON_SHARE_NOT_SUPPORTED

        set_shared_condition(instance, shared, reason, message)
        if self.is_transient(error):
            raise kopf.TemporaryError(message, delay=self.retry_delay(instance)) from error


# Global handler instance
_handler = ServiceInstanceHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_SERVICE_INSTANCE)
@kopf.on.update(API_GROUP_VERSION, KIND_SERVICE_INSTANCE)
@kopf.on.resume(API_GROUP_VERSION, KIND_SERVICE_INSTANCE)
def handle_service_instance(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Handle ServiceInstance resource reconciliation."""
    _handler.handle(body, patch)


@kopf.timer(API_GROUP_VERSION, KIND_SERVICE_INSTANCE, interval=get_config().sync_period)
def resync_service_instance(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Periodically resync ServiceInstance resources."""
    _handler.handle(body, patch)


@kopf.on.delete(API_GROUP_VERSION, KIND_SERVICE_INSTANCE, optional=True)
def handle_service_instance_delete(body: kopf.Body, patch: kopf.Patch, **kwargs: Any) -> None:
    """Handle ServiceInstance resource deletion."""
    _handler.handle(body, patch)
