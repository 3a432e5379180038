"""Shared fixtures: in-memory stand-ins for the cluster and Service Manager."""

from __future__ import annotations

import base64
import copy
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from service_manager_operator.constants import (
    API_GROUP_VERSION,
    COND_READY,
    COND_SUCCEEDED,
    FINALIZER,
    KIND_SERVICE_BINDING,
    KIND_SERVICE_INSTANCE,
    PLURAL_SERVICE_INSTANCES,
)
from service_manager_operator.handlers.service_binding import ServiceBindingHandler
from service_manager_operator.handlers.service_instance import ServiceInstanceHandler
from service_manager_operator.services.sm.errors import ServiceManagerError
from service_manager_operator.services.sm.models import Operation, ProvisionResponse
from service_manager_operator.utils.cache import invalidate_cache


class FakeCoreApi:
    """Secrets kept in a dict, with the error behaviour of CoreV1Api."""

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], client.V1Secret] = {}

    def add_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
    ) -> None:
        encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        self.secrets[(namespace, name)] = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            data=encoded,
        )

    def decoded(self, namespace: str, name: str) -> dict[str, str]:
        secret = self.secrets[(namespace, name)]
        return {k: base64.b64decode(v).decode() for k, v in (secret.data or {}).items()}

    def read_namespaced_secret(self, name: str, namespace: str) -> client.V1Secret:
        try:
            return copy.deepcopy(self.secrets[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_secret(self, namespace: str, body: client.V1Secret, **_: Any) -> client.V1Secret:
        key = (namespace, body.metadata.name)
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = body
        return body

    def replace_namespaced_secret(self, name: str, namespace: str, body: client.V1Secret, **_: Any) -> client.V1Secret:
        self.secrets[(namespace, name)] = body
        return body

    def delete_namespaced_secret(self, name: str, namespace: str) -> None:
        if self.secrets.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")


class FakeCustomApi:
    """Custom objects kept in a dict, keyed by plural, namespace and name."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}

    def add(self, plural: str, body: dict[str, Any]) -> None:
        meta = body["metadata"]
        self.objects[(plural, meta["namespace"], meta["name"])] = body

    def get_namespaced_custom_object(self, group: str, version: str, namespace: str, plural: str, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.objects[(plural, namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any], **_: Any
    ) -> dict[str, Any]:
        key = (plural, namespace, body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[key] = body
        return body

    def delete_namespaced_custom_object(self, group: str, version: str, namespace: str, plural: str, name: str) -> None:
        if self.objects.pop((plural, namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")


class FakeServiceManager:
    """Scriptable Service Manager.

    Responses are set as attributes before a reconcile. Setting an
    exception in ``errors[method]`` makes that method raise it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.errors: dict[str, Exception] = {}
        self.provision_response = ProvisionResponse(instance_id="instance-id", plan_id="plan-id")
        self.update_response: tuple[dict[str, Any] | None, str] = ({}, "")
        self.bind_response: tuple[dict[str, Any] | None, str] = (
            {"id": "binding-id", "credentials": {"user": "admin", "password": "s3cr3t"}},
            "",
        )
        self.deprovision_response = ""
        self.unbind_response = ""
        self.instances: list[dict[str, Any]] = []
        self.bindings: list[dict[str, Any]] = []
        self.by_id: dict[str, dict[str, Any]] = {}
        self.operations: dict[str, Operation] = {}
        self.offering_tags: list[str] = []

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if method in self.errors:
            raise self.errors[method]

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def provision(self, instance, offering_name, plan_name, params=None, user="", data_center=""):
        self._record("provision", instance, offering_name, plan_name)
        return self.provision_response

    def update_instance(self, instance_id, instance, offering_name, plan_name, params=None, user="", data_center=""):
        self._record("update_instance", instance_id, instance)
        return self.update_response

    def deprovision(self, instance_id, params=None, user=""):
        self._record("deprovision", instance_id)
        return self.deprovision_response

    def get_instance_by_id(self, instance_id, params=None):
        self._record("get_instance_by_id", instance_id)
        return self._get(instance_id)

    def list_instances(self, params=None):
        self._record("list_instances", params)
        return list(self.instances)

    def share_instance(self, instance_id, user=""):
        self._record("share_instance", instance_id)

    def unshare_instance(self, instance_id, user=""):
        self._record("unshare_instance", instance_id)

    def get_offering_tags(self, plan_id):
        self._record("get_offering_tags", plan_id)
        return list(self.offering_tags)

    def bind(self, binding, params=None, user=""):
        self._record("bind", binding)
        return self.bind_response

    def unbind(self, binding_id, params=None, user=""):
        self._record("unbind", binding_id)
        return self.unbind_response

    def get_binding_by_id(self, binding_id, params=None):
        self._record("get_binding_by_id", binding_id)
        return self._get(binding_id)

    def list_bindings(self, params=None):
        self._record("list_bindings", params)
        return list(self.bindings)

    def rename_binding(self, binding_id, new_name, new_k8s_name):
        self._record("rename_binding", binding_id, new_name, new_k8s_name)
        return {}

    def status(self, operation_url, params=None):
        self._record("status", operation_url)
        return self.operations[operation_url]

    def _get(self, remote_id: str) -> dict[str, Any]:
        if remote_id not in self.by_id:
            raise ServiceManagerError(404, description="not found")
        return self.by_id[remote_id]


def ready_conditions() -> list[dict[str, Any]]:
    return [
        {"type": COND_SUCCEEDED, "status": "True", "reason": "Created", "message": ""},
        {"type": COND_READY, "status": "True", "reason": "Provisioned", "message": ""},
    ]


def pending_conditions() -> list[dict[str, Any]]:
    return [
        {"type": COND_SUCCEEDED, "status": "False", "reason": "Pending", "message": "Pending"},
        {"type": COND_READY, "status": "False", "reason": "NotProvisioned", "message": ""},
    ]


def make_instance(
    name: str = "my-instance",
    namespace: str = "default",
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    generation: int = 1,
    finalizers: list[str] | None = None,
    deleting: bool = False,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "uid": f"uid-{name}",
        "generation": generation,
        "creationTimestamp": "2024-01-01T00:00:00Z",
        "finalizers": [FINALIZER] if finalizers is None else finalizers,
    }
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-02T00:00:00Z"
    if annotations:
        metadata["annotations"] = annotations
    return {
        "apiVersion": API_GROUP_VERSION,
        "kind": KIND_SERVICE_INSTANCE,
        "metadata": metadata,
        "spec": spec if spec is not None else {"serviceOfferingName": "mongo", "servicePlanName": "small"},
        "status": status or {},
    }


def make_binding(
    name: str = "my-binding",
    namespace: str = "default",
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    generation: int = 1,
    finalizers: list[str] | None = None,
    deleting: bool = False,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    creation_timestamp: str = "2024-01-01T00:00:00Z",
) -> dict[str, Any]:
    body = make_instance(
        name=name,
        namespace=namespace,
        spec=spec if spec is not None else {"serviceInstanceName": "my-instance"},
        status=status,
        generation=generation,
        finalizers=finalizers,
        deleting=deleting,
        annotations=annotations,
    )
    body["kind"] = KIND_SERVICE_BINDING
    body["metadata"]["creationTimestamp"] = creation_timestamp
    if labels:
        body["metadata"]["labels"] = labels
    return body


def ready_instance_status(instance_id: str = "instance-id") -> dict[str, Any]:
    return {
        "instanceID": instance_id,
        "ready": "True",
        "observedGeneration": 1,
        "conditions": ready_conditions(),
    }


@pytest.fixture(autouse=True)
def _isolate(monkeypatch):
    """No events are posted, calls are not throttled and no cached lookups leak between tests."""
    monkeypatch.setattr("kopf.event", MagicMock())
    monkeypatch.setattr("service_manager_operator.utils.rate_limit._k8s_throttle.min_interval", 0.0)
    monkeypatch.setattr("service_manager_operator.utils.rate_limit._sm_throttle.min_interval", 0.0)
    invalidate_cache()
    yield
    invalidate_cache()


@pytest.fixture
def sm_client() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def custom_api() -> FakeCustomApi:
    return FakeCustomApi()


def _wire(handler, sm_client, core_api, custom_api):
    handler.get_sm_client = lambda resource: sm_client
    handler.core_api = lambda: core_api
    handler.custom_api = lambda: custom_api
    return handler


@pytest.fixture
def instance_handler(sm_client, core_api, custom_api) -> ServiceInstanceHandler:
    return _wire(ServiceInstanceHandler(), sm_client, core_api, custom_api)


@pytest.fixture
def binding_handler(sm_client, core_api, custom_api) -> ServiceBindingHandler:
    return _wire(ServiceBindingHandler(), sm_client, core_api, custom_api)


@pytest.fixture
def ready_instance(custom_api) -> dict[str, Any]:
    """A ready ServiceInstance stored in the fake cluster."""
    body = make_instance(status=ready_instance_status())
    custom_api.add(PLURAL_SERVICE_INSTANCES, body)
    return body

