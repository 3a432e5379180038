"""Utilities for managing Kubernetes secrets."""

from __future__ import annotations

import base64
import logging
from typing import Any

from kubernetes import client

from ..constants import FIELD_MANAGER, SM_SECRET_NAME
from ..services.sm.models import ClientConfig

logger = logging.getLogger(__name__)


class SecretNotFoundError(Exception):
    """No usable Service Manager credentials secret could be found."""


def _decode(value: str | bytes) -> str:
    # Handle both string and bytes (different versions of kubernetes client)
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return base64.b64decode(value).decode("utf-8")


def _encode(data: dict[str, bytes | str]) -> dict[str, str]:
    encoded = {}
    for key, value in data.items():
        raw = value if isinstance(value, bytes) else value.encode("utf-8")
        encoded[key] = base64.b64encode(raw).decode("utf-8")
    return encoded


def read_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
) -> client.V1Secret | None:
    """Read a secret, returning None when it does not exist."""
    try:
        return api.read_namespaced_secret(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return None
        raise


def get_secret_value(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
    key: str,
) -> str:
    """Get a value from a Kubernetes secret.

    Args:
        api: Kubernetes API client
        namespace: Namespace of the secret
        secret_name: Name of the secret
        key: Key in the secret

    Returns:
        Secret value

    Raises:
        ValueError: If secret or key not found
    """
    secret = read_secret(api, namespace, secret_name)
    if secret is None:
        raise ValueError(f"Secret '{secret_name}' not found in namespace '{namespace}'")
    if key not in (secret.data or {}):
        raise ValueError(f"Key '{key}' not found in secret '{secret_name}'")
    return _decode(secret.data[key])


def create_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
    data: dict[str, bytes | str],
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    owner_references: list[dict[str, Any]] | None = None,
) -> None:
    """Create a Kubernetes secret.

    Args:
        api: Kubernetes API client
        namespace: Namespace for the secret
        secret_name: Name of the secret
        data: Secret data (will be base64 encoded)
        labels: Labels for the secret
        annotations: Annotations for the secret
        owner_references: Owner references for the secret
    """
    secret = client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=secret_name,
            namespace=namespace,
            labels=labels or None,
            annotations=annotations or None,
            owner_references=owner_references or None,
        ),
        type="Opaque",
        data=_encode(data),
    )

    api.create_namespaced_secret(
        namespace=namespace,
        body=secret,
        field_manager=FIELD_MANAGER,
    )


def replace_secret_data(
    api: client.CoreV1Api,
    existing: client.V1Secret,
    data: dict[str, bytes | str],
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    owner_references: list[dict[str, Any]] | None = None,
) -> None:
    """Replace the payload of an existing secret.

    The read resourceVersion is sent back, so a concurrent writer makes this
    call fail with a 409 conflict instead of being overwritten.
    """
    metadata = existing.metadata
    metadata.labels = {**(metadata.labels or {}), **(labels or {})} or None
    metadata.annotations = {**(metadata.annotations or {}), **(annotations or {})} or None
    if owner_references:
        metadata.owner_references = owner_references
    existing.data = _encode(data)
    existing.string_data = None

    api.replace_namespaced_secret(
        name=metadata.name,
        namespace=metadata.namespace,
        body=existing,
        field_manager=FIELD_MANAGER,
    )


def delete_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
) -> bool:
    """Delete a Kubernetes secret.

    Returns:
        True if a secret was deleted, False if it did not exist
    """
    try:
        api.delete_namespaced_secret(name=secret_name, namespace=namespace)
        return True
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        raise


def _client_config_from_secret(secret: client.V1Secret) -> ClientConfig | None:
    data = {key: _decode(value) for key, value in (secret.data or {}).items()}
    config = ClientConfig(
        url=data.get("sm_url") or data.get("url", ""),
        token_url=data.get("tokenurl", ""),
        client_id=data.get("clientid", ""),
        client_secret=data.get("clientsecret", ""),
    )
    if data.get("tokenurlsuffix"):
        config.token_url_suffix = data["tokenurlsuffix"]
    return config if config.is_valid() else None


def resolve_sm_credentials(
    api: client.CoreV1Api,
    namespace: str,
    management_namespace: str,
    enable_namespace_secrets: bool = True,
    release_namespace: str | None = None,
) -> ClientConfig:
    """Find the Service Manager credentials that apply to a namespace.

    Lookup order:
        1. ``service-manager-operator`` in the resource namespace (if enabled)
        2. ``<namespace>-service-manager-operator`` in the management namespace
        3. ``service-manager-operator`` in the release namespace, which
           defaults to the management namespace

    Raises:
        SecretNotFoundError: If none of the candidates exists with all keys
    """
    candidates = []
    if enable_namespace_secrets:
        candidates.append((namespace, SM_SECRET_NAME))
    candidates.append((management_namespace, f"{namespace}-{SM_SECRET_NAME}"))
    candidates.append((release_namespace or management_namespace, SM_SECRET_NAME))

    for secret_ns, secret_name in candidates:
        secret = read_secret(api, secret_ns, secret_name)
        if secret is None:
            continue
        config = _client_config_from_secret(secret)
        if config is None:
            logger.warning(f"Secret {secret_ns}/{secret_name} is missing Service Manager credentials")
            continue
        return config

    raise SecretNotFoundError(
        f"cannot find Service Manager secret for namespace '{namespace}'"
    )
