"""Tests for ServiceInstance reconciliation."""

from __future__ import annotations

import copy

import kopf
import pytest
from conftest import make_instance, pending_conditions, ready_conditions, ready_instance_status

from service_manager_operator.constants import (
    COND_FAILED,
    COND_READY,
    COND_SHARED,
    COND_SUCCEEDED,
    OP_CREATE,
    REASON_SHARE_NOT_SUPPORTED,
    SM_LABEL_K8S_NAME,
)
from service_manager_operator.handlers.base import RequeueRequested
from service_manager_operator.handlers.service_instance import sharing_update_required, update_required
from service_manager_operator.resources import ServiceInstanceResource
from service_manager_operator.services.sm.errors import BrokerError, PlanResolutionError, ServiceManagerError
from service_manager_operator.services.sm.models import Operation, ProvisionResponse
from service_manager_operator.utils.conditions import find_condition

LOCATION = "/v1/service_instances/instance-id/operations/op1"


def _pending(**kwargs) -> dict:
    return make_instance(status={"conditions": pending_conditions()}, **kwargs)


def _condition(patch: kopf.Patch, condition_type: str) -> dict | None:
    return find_condition(patch.status["conditions"], condition_type)


def _ready(generation: int = 1, spec: dict | None = None, **status) -> dict:
    body = make_instance(spec=spec, status=ready_instance_status(), generation=generation)
    body["status"].update(status)
    return body


def _next_pass(body: dict, patch: kopf.Patch) -> dict:
    """The body as the next delivery sees it, after the patch was applied."""
    body = copy.deepcopy(body)
    body["status"] = copy.deepcopy(dict(patch.status))
    return body


class TestCreate:
    """Test cases for instance creation."""

    def test_sync_create(self, instance_handler, sm_client):
        """Test a synchronous provision makes the instance ready."""
        patch = kopf.Patch()

        instance_handler.handle(_pending(), patch)

        (body, offering, plan), = sm_client.called("provision")
        assert offering == "mongo"
        assert plan == "small"
        assert body["name"] == "my-instance"
        assert body["labels"][SM_LABEL_K8S_NAME] == ["my-instance"]
        assert "parameters" not in body

        assert patch.status["instanceID"] == "instance-id"
        assert patch.status["ready"] == "True"
        assert patch.status["observedGeneration"] == 1
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "Created"
        assert _condition(patch, COND_READY)["status"] == "True"
        kopf.event.assert_called()

    def test_async_create_then_poll(self, instance_handler, sm_client):
        """Test an accepted provision is followed until it succeeds."""
        sm_client.provision_response = ProvisionResponse(instance_id="instance-id", plan_id="plan-id", location=LOCATION)
        patch = kopf.Patch()

        with pytest.raises(RequeueRequested):
            instance_handler.handle(_pending(), patch)

        assert patch.status["operationURL"] == LOCATION
        assert patch.status["operationType"] == OP_CREATE
        assert patch.status["instanceID"] == "instance-id"
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "CreateInProgress"

        sm_client.operations[LOCATION] = Operation(id="op1", type=OP_CREATE, state="succeeded")
        sm_client.by_id["instance-id"] = {"id": "instance-id", "ready": True}
        second = kopf.Patch()

        instance_handler.handle(make_instance(status=dict(patch.status)), second)

        assert second.status["operationURL"] is None
        assert second.status["ready"] == "True"
        assert find_condition(second.status["conditions"], COND_SUCCEEDED)["reason"] == "Created"
        assert len(sm_client.called("provision")) == 1
        assert sm_client.called("get_instance_by_id") == [("instance-id",)]

    def test_created_instance_missing_after_poll(self, instance_handler, sm_client):
        """Test an instance that cannot be found after its create succeeded is looked up again."""
        sm_client.operations[LOCATION] = Operation(id="op1", type=OP_CREATE, state="succeeded")
        body = make_instance(status={
            "instanceID": "instance-id",
            "operationURL": LOCATION,
            "operationType": OP_CREATE,
            "conditions": pending_conditions(),
        })
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(body, patch)

        assert patch.status["operationURL"] is None
        assert patch.status["instanceID"] == "instance-id"
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "CreateInProgress"
        assert patch.status.get("ready") != "True"

    def test_parameters_are_sent(self, instance_handler, sm_client, core_api):
        """Test inline and secret parameters are merged into the request."""
        core_api.add_secret("default", "params", {"json": '{"region": "eu"}'})
        spec = {
            "serviceOfferingName": "mongo",
            "servicePlanName": "small",
            "parameters": {"size": 1},
            "parametersFrom": [{"secretKeyRef": {"name": "params", "key": "json"}}],
        }

        instance_handler.handle(_pending(spec=spec), kopf.Patch())

        (body, _, _), = sm_client.called("provision")
        assert body["parameters"] == {"region": "eu", "size": 1}

    def test_plan_error_is_terminal(self, instance_handler, sm_client):
        """Test an unresolvable plan fails the instance without retrying."""
        sm_client.errors["provision"] = PlanResolutionError("couldn't find the service offering 'mongo'")
        patch = kopf.Patch()

        instance_handler.handle(_pending(), patch)

        assert _condition(patch, COND_FAILED)["status"] == "True"
        assert "couldn't find the service offering" in _condition(patch, COND_SUCCEEDED)["message"]

    def test_transient_error_is_retried(self, instance_handler, sm_client):
        """Test a broker rate limit behind a gateway error is retried."""
        sm_client.errors["provision"] = ServiceManagerError(502, broker_error=BrokerError(status_code=429))
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(_pending(), patch)

        assert _condition(patch, COND_FAILED) is None

    def test_rate_limited_create_after_failure_is_retried(self, instance_handler, sm_client):
        """Test a throttled create of a corrected spec is sent again on the next pass."""
        failed = make_instance(
            generation=2,
            status={
                "observedGeneration": 1,
                "conditions": [
                    {"type": COND_SUCCEEDED, "status": "False", "reason": "CreateFailed", "message": "bad plan"},
                    {"type": COND_FAILED, "status": "True", "reason": "CreateFailed", "message": "bad plan"},
                    {"type": COND_READY, "status": "False", "reason": "NotProvisioned", "message": ""},
                ],
            },
        )
        sm_client.errors["provision"] = ServiceManagerError(429, description="too many requests")
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(failed, patch)

        assert _condition(patch, COND_FAILED) is None
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "CreateInProgress"

        del sm_client.errors["provision"]
        retry = kopf.Patch()
        instance_handler.handle(_next_pass(failed, patch), retry)

        assert len(sm_client.called("provision")) == 2
        assert retry.status["instanceID"] == "instance-id"
        assert _condition(retry, COND_SUCCEEDED)["reason"] == "Created"


class TestRecovery:
    """Test cases for adopting existing remote instances."""

    def test_recover_instead_of_create(self, instance_handler, sm_client):
        """Test an existing remote instance is adopted rather than created."""
        sm_client.instances = [{
            "id": "existing-id",
            "ready": True,
            "service_plan_id": "plan-id",
            "last_operation": {"id": "op", "type": "create", "state": "succeeded"},
        }]
        sm_client.offering_tags = ["db"]
        patch = kopf.Patch()

        instance_handler.handle(_pending(), patch)

        assert sm_client.called("provision") == []
        assert patch.status["instanceID"] == "existing-id"
        assert patch.status["ready"] == "True"
        assert patch.status["tags"] == ["db"]

    def test_recover_running_operation(self, instance_handler, sm_client):
        """Test a recovered instance with a running operation is polled."""
        sm_client.instances = [{
            "id": "existing-id",
            "last_operation": {"id": "op9", "type": "create", "state": "in progress"},
        }]
        patch = kopf.Patch()

        with pytest.raises(RequeueRequested):
            instance_handler.handle(_pending(), patch)

        assert patch.status["operationURL"] == "/v1/service_instances/existing-id/operations/op9"

    def test_ambiguous_recovery_creates(self, instance_handler, sm_client):
        """Test several matches are not adopted."""
        sm_client.instances = [{"id": "a"}, {"id": "b"}]

        instance_handler.handle(_pending(), kopf.Patch())

        assert len(sm_client.called("provision")) == 1

    def test_lost_instance_is_recreated(self, instance_handler, sm_client):
        """Test a remote 404 for a known ID leads to a new instance."""
        body = make_instance(status={"instanceID": "gone-id", "conditions": pending_conditions()})
        patch = kopf.Patch()

        instance_handler.handle(body, patch)

        assert sm_client.called("get_instance_by_id") == [("gone-id",)]
        assert len(sm_client.called("provision")) == 1
        assert patch.status["instanceID"] == "instance-id"


class TestUpdate:
    """Test cases for spec changes on ready instances."""

    def test_settled_instance_makes_no_calls(self, instance_handler, sm_client):
        """Test a ready instance with an unchanged spec is left alone."""
        instance_handler.handle(_ready(), kopf.Patch())

        assert sm_client.calls == []

    def test_update_on_spec_change(self, instance_handler, sm_client):
        """Test a changed spec hash triggers an update."""
        patch = kopf.Patch()

        instance_handler.handle(_ready(generation=2, hashedSpec="stale"), patch)

        (instance_id, body), = sm_client.called("update_instance")
        assert instance_id == "instance-id"
        assert body["name"] == "my-instance"
        assert patch.status["observedGeneration"] == 2
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "Updated"
        assert patch.status["hashedSpec"] != "stale"

    def test_rate_limited_update_is_retried(self, instance_handler, sm_client):
        """Test a throttled update is sent again on the next pass."""
        body = _ready(generation=2, hashedSpec="stale")
        sm_client.errors["update_instance"] = ServiceManagerError(429, description="too many requests")
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(body, patch)

        assert _condition(patch, COND_SUCCEEDED)["reason"] == "UpdateInProgress"

        del sm_client.errors["update_instance"]
        retry = kopf.Patch()
        instance_handler.handle(_next_pass(body, patch), retry)

        assert len(sm_client.called("update_instance")) == 2
        assert _condition(retry, COND_SUCCEEDED)["reason"] == "Updated"
        assert retry.status["observedGeneration"] == 2

    def test_async_update(self, instance_handler, sm_client):
        """Test an accepted update records the operation."""
        sm_client.update_response = (None, "/v1/service_instances/instance-id/operations/up1")
        patch = kopf.Patch()

        with pytest.raises(RequeueRequested):
            instance_handler.handle(_ready(generation=2, hashedSpec="stale"), patch)

        assert patch.status["operationType"] == "update"
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "UpdateInProgress"

    def test_update_required(self):
        """Test update detection for ready instances only."""
        instance = ServiceInstanceResource(_ready())
        instance.update_spec_hash()
        assert update_required(instance) is False

        instance.spec["servicePlanName"] = "large"
        assert update_required(instance) is True

        instance.ready = False
        assert update_required(instance) is False

    def test_shared_flag_is_not_part_of_the_hash(self):
        """Test toggling spec.shared does not require an update."""
        instance = ServiceInstanceResource(_ready())
        before = instance.compute_spec_hash()
        instance.spec["shared"] = True
        assert instance.compute_spec_hash() == before


class TestSharing:
    """Test cases for instance sharing."""

    def _shared_spec(self, shared):
        return {"serviceOfferingName": "mongo", "servicePlanName": "small", "shared": shared}

    def test_share(self, instance_handler, sm_client):
        """Test spec.shared shares a ready instance."""
        patch = kopf.Patch()

        instance_handler.handle(_ready(spec=self._shared_spec(True)), patch)

        assert sm_client.called("share_instance") == [("instance-id",)]
        assert _condition(patch, COND_SHARED)["status"] == "True"

    def test_unshare(self, instance_handler, sm_client):
        """Test a shared instance is unshared when the flag goes false."""
        body = _ready(spec=self._shared_spec(False))
        body["status"]["conditions"] = ready_conditions() + [
            {"type": COND_SHARED, "status": "True", "reason": "ShareSucceeded", "message": ""}
        ]
        patch = kopf.Patch()

        instance_handler.handle(body, patch)

        assert sm_client.called("unshare_instance") == [("instance-id",)]
        assert _condition(patch, COND_SHARED)["status"] == "False"

    def test_share_not_supported(self, instance_handler, sm_client):
        """Test a broker 400 marks sharing unsupported and stops retrying."""
        sm_client.errors["share_instance"] = ServiceManagerError(
            502, broker_error=BrokerError(status_code=400, error_message="BadRequest")
        )
        patch = kopf.Patch()

        instance_handler.handle(_ready(spec=self._shared_spec(True)), patch)

        condition = _condition(patch, COND_SHARED)
        assert condition["reason"] == REASON_SHARE_NOT_SUPPORTED
        retried = _ready(spec=self._shared_spec(True), conditions=ready_conditions() + [condition])
        assert sharing_update_required(ServiceInstanceResource(retried)) is False

    def test_share_rate_limited(self, instance_handler, sm_client):
        """Test a 429 while sharing is retried and reported in progress."""
        sm_client.errors["share_instance"] = ServiceManagerError(429)
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(_ready(spec=self._shared_spec(True)), patch)

        assert _condition(patch, COND_SHARED)["reason"] == "InProgress"


class TestDelete:
    """Test cases for instance deletion."""

    def test_delete(self, instance_handler, sm_client):
        """Test a known instance is deprovisioned and the finalizer removed."""
        patch = kopf.Patch()

        instance_handler.handle(make_instance(status=ready_instance_status(), deleting=True), patch)

        assert sm_client.called("deprovision") == [("instance-id",)]
        assert patch.metadata["finalizers"] is None

    def test_async_delete(self, instance_handler, sm_client):
        """Test an accepted deprovision keeps the finalizer."""
        sm_client.deprovision_response = "/v1/service_instances/instance-id/operations/del1"
        patch = kopf.Patch()

        with pytest.raises(RequeueRequested):
            instance_handler.handle(make_instance(status=ready_instance_status(), deleting=True), patch)

        assert patch.status["operationType"] == "delete"
        assert "finalizers" not in patch.metadata

    def test_delete_without_id_recovers_first(self, instance_handler, sm_client):
        """Test a remote instance the status lost track of is still deleted."""
        sm_client.instances = [{"id": "found-id", "ready": True}]
        patch = kopf.Patch()

        instance_handler.handle(make_instance(status={"conditions": pending_conditions()}, deleting=True), patch)

        assert sm_client.called("deprovision") == [("found-id",)]
        assert patch.metadata["finalizers"] is None

    def test_delete_without_remote(self, instance_handler, sm_client):
        """Test nothing is deprovisioned when no remote instance exists."""
        patch = kopf.Patch()

        instance_handler.handle(make_instance(status={"conditions": pending_conditions()}, deleting=True), patch)

        assert sm_client.called("deprovision") == []
        assert patch.metadata["finalizers"] is None

    def test_delete_error_keeps_finalizer(self, instance_handler, sm_client):
        """Test a failed deprovision is retried."""
        sm_client.errors["deprovision"] = ServiceManagerError(400, description="instance has bindings")
        patch = kopf.Patch()

        with pytest.raises(kopf.TemporaryError):
            instance_handler.handle(make_instance(status=ready_instance_status(), deleting=True), patch)

        assert "finalizers" not in patch.metadata
        assert _condition(patch, COND_SUCCEEDED)["reason"] == "DeleteFailed"

    def test_already_removed_finalizer(self, instance_handler, sm_client):
        """Test a deleting resource without our finalizer is ignored."""
        patch = kopf.Patch()

        instance_handler.handle(make_instance(status=ready_instance_status(), deleting=True, finalizers=[]), patch)

        assert sm_client.calls == []
        assert "status" not in patch
