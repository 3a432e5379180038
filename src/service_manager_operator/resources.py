"""Resource wrappers exposing the status fields the reconciler works on.

A wrapper takes a snapshot of the observed object. Handlers mutate the
snapshot and :meth:`ReconcilableResource.persist` writes the difference
into the handler's ``kopf.Patch`` at the end of a reconcile.
"""

from __future__ import annotations

import copy
import hashlib
import json
from datetime import datetime
from typing import Any, Mapping

import kopf

from .constants import (
    FINALIZER,
    KIND_SERVICE_BINDING,
    KIND_SERVICE_INSTANCE,
)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ReconcilableResource:
    """Common capability shared by ServiceInstance and ServiceBinding."""

    kind = ""
    controller_name = ""
    id_field = ""

    def __init__(self, body: Mapping[str, Any]):
        self.raw: dict[str, Any] = copy.deepcopy(dict(body))
        self.meta: dict[str, Any] = self.raw.setdefault("metadata", {})
        self.spec: dict[str, Any] = self.raw.get("spec") or {}
        self.status: dict[str, Any] = self.raw.get("status") or {}
        self.status.setdefault("conditions", [])
        self._observed_status = copy.deepcopy(self.status)

    # Metadata

    @property
    def name(self) -> str:
        return self.meta.get("name", "")

    @property
    def namespace(self) -> str:
        return self.meta.get("namespace", "")

    @property
    def uid(self) -> str:
        return self.meta.get("uid", "")

    @property
    def generation(self) -> int:
        return int(self.meta.get("generation") or 0)

    @property
    def labels(self) -> dict[str, str]:
        return self.meta.get("labels") or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.meta.get("annotations") or {}

    @property
    def finalizers(self) -> list[str]:
        return list(self.meta.get("finalizers") or [])

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.finalizers

    @property
    def is_deleting(self) -> bool:
        return bool(self.meta.get("deletionTimestamp"))

    @property
    def creation_timestamp(self) -> datetime | None:
        return parse_timestamp(self.meta.get("creationTimestamp"))

    # Spec

    @property
    def external_name(self) -> str:
        return self.spec.get("externalName") or self.name

    @property
    def parameters(self) -> dict[str, Any] | None:
        return self.spec.get("parameters")

    @property
    def parameters_from(self) -> list[dict[str, Any]]:
        return self.spec.get("parametersFrom") or []

    @property
    def user_info(self) -> str:
        user_info = self.spec.get("userInfo")
        if not user_info:
            return ""
        return user_info if isinstance(user_info, str) else json.dumps(user_info)

    # Status

    @property
    def conditions(self) -> list[dict[str, Any]]:
        return self.status["conditions"]

    @property
    def ready(self) -> bool:
        return self.status.get("ready") == "True"

    @ready.setter
    def ready(self, value: bool) -> None:
        self.status["ready"] = "True" if value else "False"

    @property
    def observed_generation(self) -> int:
        return int(self.status.get("observedGeneration") or 0)

    @observed_generation.setter
    def observed_generation(self, value: int) -> None:
        self.status["observedGeneration"] = value

    @property
    def operation_url(self) -> str:
        return self.status.get("operationURL") or ""

    @property
    def operation_type(self) -> str:
        return self.status.get("operationType") or ""

    def set_operation(self, url: str, op_type: str) -> None:
        self.status["operationURL"] = url
        self.status["operationType"] = op_type

    def clear_operation(self) -> None:
        # None removes the field with a merge patch
        self.status["operationURL"] = None
        self.status["operationType"] = None

    @property
    def remote_id(self) -> str:
        return self.status.get(self.id_field) or ""

    @remote_id.setter
    def remote_id(self, value: str) -> None:
        self.status[self.id_field] = value or None

    @property
    def instance_id(self) -> str:
        return self.status.get("instanceID") or ""

    @instance_id.setter
    def instance_id(self, value: str) -> None:
        self.status["instanceID"] = value or None

    # Persistence

    def status_changed(self) -> bool:
        current = {k: v for k, v in self.status.items() if v is not None}
        observed = {k: v for k, v in self._observed_status.items() if v is not None}
        return current != observed

    def persist(self, patch: kopf.Patch) -> None:
        """Write the status snapshot into the handler patch if it changed."""
        if self.status_changed():
            patch.status.update(copy.deepcopy(self.status))


class ServiceInstanceResource(ReconcilableResource):
    kind = KIND_SERVICE_INSTANCE
    controller_name = KIND_SERVICE_INSTANCE
    id_field = "instanceID"

    @property
    def offering_name(self) -> str:
        return self.spec.get("serviceOfferingName", "")

    @property
    def plan_name(self) -> str:
        return self.spec.get("servicePlanName", "")

    @property
    def plan_id(self) -> str:
        return self.spec.get("servicePlanID", "")

    @property
    def shared(self) -> bool | None:
        return self.spec.get("shared")

    @property
    def tags(self) -> list[str]:
        return self.status.get("tags") or []

    @tags.setter
    def tags(self, value: list[str]) -> None:
        self.status["tags"] = value

    @property
    def hashed_spec(self) -> str:
        return self.status.get("hashedSpec") or ""

    def compute_spec_hash(self) -> str:
        """Hash the spec, ignoring the shared flag which is reconciled separately."""
        spec = dict(self.spec)
        spec["shared"] = False
        encoded = json.dumps(spec, sort_keys=True, separators=(",", ":"))
        return hashlib.md5(encoded.encode("utf-8")).hexdigest()

    def update_spec_hash(self) -> None:
        self.status["hashedSpec"] = self.compute_spec_hash()


class ServiceBindingResource(ReconcilableResource):
    kind = KIND_SERVICE_BINDING
    controller_name = KIND_SERVICE_BINDING
    id_field = "bindingID"

    @property
    def instance_name(self) -> str:
        return self.spec.get("serviceInstanceName", "")

    @property
    def instance_namespace(self) -> str:
        return self.spec.get("serviceInstanceNamespace") or self.namespace

    @property
    def secret_name(self) -> str:
        return self.spec.get("secretName") or self.name

    @property
    def rotation_policy(self) -> dict[str, Any]:
        return self.spec.get("credRotationPolicy") or {}

    @property
    def rotation_enabled(self) -> bool:
        return bool(self.rotation_policy.get("enabled"))

    @property
    def last_rotation_time(self) -> datetime | None:
        return parse_timestamp(self.status.get("lastCredentialsRotationTime"))

    @last_rotation_time.setter
    def last_rotation_time(self, value: datetime) -> None:
        self.status["lastCredentialsRotationTime"] = value.isoformat()

    @property
    def owner_references(self) -> list[dict[str, Any]]:
        return self.meta.get("ownerReferences") or []
