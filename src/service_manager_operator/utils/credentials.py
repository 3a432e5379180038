"""Turning remote binding credentials into Kubernetes secret payloads."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

from ..constants import (
    LABEL_BINDING,
    SECRET_FORMAT_JSON,
    SECRET_FORMAT_TEXT,
    SECRET_METADATA_KEY,
)
from .template import SecretTemplateError, create_secret_from_template


@dataclass
class SecretPayload:
    """Everything needed to write a binding secret."""

    data: dict[str, bytes | str]
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


def _serialize(value: Any) -> tuple[str, str]:
    # Strings are stored as-is so consumers do not have to strip quotes
    if isinstance(value, str):
        return value, SECRET_FORMAT_TEXT
    return json.dumps(value), SECRET_FORMAT_JSON


def normalize_credentials(credentials: dict[str, Any]) -> tuple[dict[str, str], list[dict[str, Any]]]:
    """Flatten a credentials document into one secret key per top-level property.

    Spaces in property names are replaced by underscores. Nested values are
    stored as JSON.

    Returns:
        The flattened data and one metadata property per key
    """
    normalized: dict[str, str] = {}
    properties: list[dict[str, Any]] = []
    for name, value in credentials.items():
        key = name.replace(" ", "_")
        normalized[key], fmt = _serialize(value)
        properties.append({"name": key, "format": fmt})
    return normalized, properties


def merge_tags(*tag_lists: list[str] | None) -> list[str]:
    """Ordered union of several tag lists."""
    merged: list[str] = []
    for tags in tag_lists:
        for tag in tags or []:
            if tag not in merged:
                merged.append(tag)
    return merged


def build_instance_info(
    instance_name: str,
    instance: dict[str, Any],
) -> tuple[dict[str, str], list[dict[str, Any]]]:
    """Describe the bound instance with a fixed set of secret keys.

    Args:
        instance_name: Name exposed as ``instance_name``
        instance: The ServiceInstance object the binding belongs to
    """
    spec = instance.get("spec", {}) or {}
    status = instance.get("status", {}) or {}
    offering = spec.get("serviceOfferingName", "")

    info = {
        "instance_name": instance_name,
        "instance_guid": status.get("instanceID", ""),
        "plan": spec.get("servicePlanName", ""),
        "label": offering,
        "type": offering,
    }
    properties = [{"name": key, "format": SECRET_FORMAT_TEXT} for key in info]

    tags = merge_tags(status.get("tags"), spec.get("customTags"))
    if tags:
        info["tags"] = json.dumps(tags)
        properties.append({"name": "tags", "format": SECRET_FORMAT_JSON})

    return info, properties


def single_key_map(data: dict[str, str], key: str) -> dict[str, str]:
    """Nest every value under one key holding a JSON object."""
    return {key: json.dumps({k: str(v) for k, v in data.items()})}


def metadata_document(
    credential_properties: list[dict[str, Any]],
    metadata_properties: list[dict[str, Any]],
) -> str:
    return json.dumps({
        "credentialProperties": credential_properties,
        "metaDataProperties": metadata_properties,
    })


def _payload_from_template(
    template: str,
    credentials: dict[str, Any],
    instance_info: dict[str, str],
) -> SecretPayload:
    manifest = create_secret_from_template(
        template,
        {"instance": instance_info, "credentials": credentials},
    )
    metadata = manifest.get("metadata") or {}

    data: dict[str, bytes | str] = {}
    for key, value in (manifest.get("data") or {}).items():
        try:
            data[key] = base64.b64decode(str(value), validate=True)
        except ValueError as e:
            raise SecretTemplateError(f"the generated secret manifest is not valid: data.{key} is not base64") from e
    for key, value in (manifest.get("stringData") or {}).items():
        data[key] = str(value)

    if not data:
        data.update(normalize_credentials(credentials)[0])

    if SECRET_METADATA_KEY not in data:
        properties = [{"name": key, "format": SECRET_FORMAT_TEXT} for key in data]
        data[SECRET_METADATA_KEY] = metadata_document(properties, [])

    return SecretPayload(
        data=data,
        labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
        annotations={str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()},
    )


def build_secret_payload(
    binding_name: str,
    binding_spec: dict[str, Any],
    credentials: dict[str, Any] | None,
    instance_info: dict[str, str],
    instance_properties: list[dict[str, Any]],
) -> SecretPayload:
    """Build the secret payload of a binding.

    The layout is picked by the binding spec:

    - ``secretTemplate``: rendered template, see :mod:`.template`
    - ``secretKey``: the raw credentials document under one key
    - otherwise: one key per credential property

    Instance info keys are added next to the credentials. With
    ``secretRootKey`` all keys are nested under that single key.

    Raises:
        SecretTemplateError: If the template cannot be rendered
    """
    credentials = credentials or {}

    if binding_spec.get("secretTemplate"):
        payload = _payload_from_template(binding_spec["secretTemplate"], credentials, instance_info)
        payload.labels[LABEL_BINDING] = binding_name
        return payload

    secret_key = binding_spec.get("secretKey")
    if not credentials:
        data: dict[str, str] = {}
        credential_properties: list[dict[str, Any]] = []
    elif secret_key:
        data = {secret_key: json.dumps(credentials)}
        credential_properties = [{"name": secret_key, "format": SECRET_FORMAT_JSON, "container": True}]
    else:
        data, credential_properties = normalize_credentials(credentials)

    data.update(instance_info)
    metadata_properties = list(instance_properties)

    root_key = binding_spec.get("secretRootKey")
    if root_key:
        data = single_key_map(data, root_key)
        credential_properties = [{"name": root_key, "format": SECRET_FORMAT_JSON, "container": True}]
        metadata_properties = []

    secret_data: dict[str, bytes | str] = dict(data)
    secret_data[SECRET_METADATA_KEY] = metadata_document(credential_properties, metadata_properties)
    return SecretPayload(data=secret_data, labels={LABEL_BINDING: binding_name})
