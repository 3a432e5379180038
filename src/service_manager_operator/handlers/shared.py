"""Shared utilities for handlers."""

from __future__ import annotations

import threading
import time
from typing import Any

from kubernetes import client

from .. import metrics
from ..config import get_config
from ..constants import (
    API_GROUP,
    API_VERSION,
    FIELD_MANAGER,
    PLURAL_SERVICE_BINDINGS,
    PLURAL_SERVICE_INSTANCES,
)
from ..services.sm.base import ServiceManager
from ..services.sm.client import ServiceManagerClient
from ..services.sm.models import ClientConfig
from ..utils.cache import get_cached_object, invalidate_cache, make_cache_key, set_cached_object
from ..utils.rate_limit import handle_rate_limit_error, rate_limit_k8s
from ..utils.secrets import resolve_sm_credentials

_clients: dict[tuple[str, str, str], ServiceManagerClient] = {}
_clients_lock = threading.Lock()
_kube_config_loaded = False


def _load_kube_config() -> None:
    global _kube_config_loaded
    if _kube_config_loaded:
        return

    from kubernetes import config

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    _kube_config_loaded = True


def get_core_client() -> client.CoreV1Api:
    """Get Kubernetes CoreV1Api client."""
    _load_kube_config()
    return client.CoreV1Api()


def get_custom_client() -> client.CustomObjectsApi:
    """Get Kubernetes CustomObjectsApi client."""
    _load_kube_config()
    return client.CustomObjectsApi()


def _get_custom_object(
    api: Any,
    plural: str,
    namespace: str,
    name: str,
    operation: str,
    attempt: int = 0,
) -> dict[str, Any] | None:
    start_time = time.time()
    try:
        obj = rate_limit_k8s(api.get_namespaced_custom_object)(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
        )
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
        return obj
    except client.exceptions.ApiException as e:
        if e.status == 404:
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="not_found").inc()
            return None
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
        if handle_rate_limit_error(e, attempt):
            return _get_custom_object(api, plural, namespace, name, operation, attempt + 1)
        raise
    finally:
        duration = time.time() - start_time
        metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)


def get_service_instance(api: Any, namespace: str, name: str) -> dict[str, Any] | None:
    """Get a ServiceInstance, returning None when it does not exist.

    Not cached: the binding gate must see the instance's latest status.
    """
    return _get_custom_object(api, PLURAL_SERVICE_INSTANCES, namespace, name, "get_service_instance")


def get_service_binding(api: Any, namespace: str, name: str) -> dict[str, Any] | None:
    """Get a ServiceBinding, returning None when it does not exist."""
    return _get_custom_object(api, PLURAL_SERVICE_BINDINGS, namespace, name, "get_service_binding")


def create_service_binding(api: Any, body: dict[str, Any]) -> dict[str, Any]:
    namespace = body["metadata"]["namespace"]
    start_time = time.time()
    try:
        obj = rate_limit_k8s(api.create_namespaced_custom_object)(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL_SERVICE_BINDINGS,
            body=body,
            field_manager=FIELD_MANAGER,
        )
        metrics.api_call_total.labels(api_type="k8s", operation="create_service_binding", result="success").inc()
        return obj
    except Exception:
        metrics.api_call_total.labels(api_type="k8s", operation="create_service_binding", result="error").inc()
        raise
    finally:
        duration = time.time() - start_time
        metrics.api_call_duration_seconds.labels(api_type="k8s", operation="create_service_binding").observe(duration)


def delete_service_binding(api: Any, namespace: str, name: str) -> bool:
    """Delete a ServiceBinding.

    Returns:
        True if a binding was deleted, False if it did not exist
    """
    try:
        rate_limit_k8s(api.delete_namespaced_custom_object)(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL_SERVICE_BINDINGS,
            name=name,
        )
        metrics.api_call_total.labels(api_type="k8s", operation="delete_service_binding", result="success").inc()
        return True
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        metrics.api_call_total.labels(api_type="k8s", operation="delete_service_binding", result="error").inc()
        raise


def _resolve_client_config(namespace: str) -> ClientConfig:
    cache_key = make_cache_key("SMCredentials", namespace, "")
    cached = get_cached_object(cache_key)
    if cached is not None:
        metrics.api_call_total.labels(api_type="k8s", operation="resolve_sm_credentials", result="cache_hit").inc()
        return cached

    config = get_config()
    client_config = resolve_sm_credentials(
        get_core_client(),
        namespace,
        config.management_namespace,
        config.enable_namespace_secrets,
        release_namespace=config.release_namespace,
    )
    set_cached_object(cache_key, client_config)
    return client_config


def forget_sm_credentials(namespace: str) -> None:
    """Drop the cached credentials of a namespace so its secret is read again."""
    invalidate_cache(make_cache_key("SMCredentials", namespace, ""))


def get_sm_client(namespace: str) -> ServiceManager:
    """Get a Service Manager client for resources in a namespace.

    Clients are shared between namespaces resolving to the same credentials,
    so access tokens are reused.

    Raises:
        SecretNotFoundError: If no credentials secret applies to the namespace
    """
    client_config = _resolve_client_config(namespace)
    key = (client_config.url, client_config.client_id, client_config.client_secret)
    with _clients_lock:
        sm_client = _clients.get(key)
        if sm_client is None:
            sm_client = ServiceManagerClient(client_config, timeout=get_config().sm_request_timeout)
            _clients[key] = sm_client
        return sm_client


def get_offering_tags(sm_client: ServiceManager, plan_id: str) -> list[str]:
    """Tags of the offering a plan belongs to, cached per plan."""
    cache_key = make_cache_key("OfferingTags", "", plan_id)
    cached = get_cached_object(cache_key, ttl=300.0)
    if cached is not None:
        return cached
    tags = sm_client.get_offering_tags(plan_id)
    set_cached_object(cache_key, tags)
    return tags
