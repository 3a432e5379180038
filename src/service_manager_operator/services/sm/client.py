"""Service Manager REST client implementation."""

from __future__ import annotations

import logging
import re
import time
from typing import Any

import httpx

from ... import metrics
from ...utils.rate_limit import rate_limit_sm
from .errors import PlanResolutionError, ServiceManagerError
from .models import (
    OPERATIONS_URL,
    SERVICE_BINDINGS_URL,
    SERVICE_INSTANCES_URL,
    SERVICE_OFFERINGS_URL,
    SERVICE_PLANS_URL,
    ClientConfig,
    Operation,
    ProvisionResponse,
    QueryParams,
)

logger = logging.getLogger(__name__)

ORIGINATING_IDENTITY_HEADER = "X-Originating-Identity"

_INSTANCE_OPERATION_RE = re.compile(r"^/v1/service_instances/(.*)/operations/.*$")
_BINDING_OPERATION_RE = re.compile(r"^/v1/service_bindings/(.*)/operations/.*$")


def extract_instance_id(operation_url: str) -> str:
    """Extract the instance ID embedded in an operation location."""
    match = _INSTANCE_OPERATION_RE.match(operation_url or "")
    return match.group(1) if match else ""


def extract_binding_id(operation_url: str) -> str:
    """Extract the binding ID embedded in an operation location."""
    match = _BINDING_OPERATION_RE.match(operation_url or "")
    return match.group(1) if match else ""


def build_operation_url(operation_id: str, resource_id: str, resource_url: str) -> str:
    """Build the status URL of a resource operation."""
    return f"{resource_url}/{resource_id}{OPERATIONS_URL}/{operation_id}"


def _operation_label(method: str, path: str) -> str:
    parts = path.split("?")[0].split("/v1/", 1)[-1].split("/")
    if OPERATIONS_URL.strip("/") in parts:
        return f"{method.lower()}_operation"
    return f"{method.lower()}_{parts[0]}"


def _parse_tags(tags: Any) -> list[str]:
    if isinstance(tags, list):
        return [str(t) for t in tags]
    return []


class ServiceManagerClient:
    """Service Manager client authenticating with OAuth2 client credentials."""

    def __init__(
        self,
        config: ClientConfig,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Service Manager URL and OAuth credentials
            timeout: Per-request timeout in seconds
            http_client: Optional preconfigured httpx client (used in tests)
        """
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.http = http_client or httpx.Client(timeout=timeout)
        self._token: str | None = None
        self._token_expiry: float = 0.0

    # Authentication

    def _get_token(self) -> str:
        if self._token and time.time() < self._token_expiry - 30:
            return self._token

        token_url = self.config.token_url.rstrip("/") + self.config.token_url_suffix
        logger.debug(f"Requesting Service Manager access token from {token_url}")
        response = self.http.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )
        if response.status_code != 200:
            raise ServiceManagerError(
                response.status_code,
                description=f"failed to obtain access token from {token_url}",
            )
        payload = response.json()
        self._token = payload["access_token"]
        self._token_expiry = time.time() + float(payload.get("expires_in", 3600))
        return self._token

    # Transport

    @rate_limit_sm
    def _call(
        self,
        method: str,
        path: str,
        params: QueryParams | None = None,
        json_body: Any = None,
        user: str = "",
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        query = params.encode() if params else ""
        if query:
            url = f"{url}?{query}"

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._get_token()}",
        }
        if user:
            headers[ORIGINATING_IDENTITY_HEADER] = user

        operation = _operation_label(method, path)
        start_time = time.time()
        try:
            response = self.http.request(method, url, json=json_body, headers=headers)
        except httpx.TransportError:
            metrics.api_call_total.labels(api_type="sm", operation=operation, result="error").inc()
            raise
        finally:
            metrics.api_call_duration_seconds.labels(api_type="sm", operation=operation).observe(
                time.time() - start_time
            )

        result = "success" if response.status_code < 400 else "error"
        metrics.api_call_total.labels(api_type="sm", operation=operation, result=result).inc()
        if response.status_code == 429:
            metrics.rate_limit_hits_total.labels(api_type="sm").inc()
        return response

    @staticmethod
    def _error(response: httpx.Response) -> ServiceManagerError:
        try:
            body = response.json()
        except ValueError:
            body = None
        return ServiceManagerError.from_response(response.status_code, body)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any] | None:
        if not response.content:
            return None
        return response.json()

    def _register(self, path: str, body: dict[str, Any], params: QueryParams | None, user: str) -> tuple[dict[str, Any] | None, str]:
        response = self._call("POST", path, params, body, user)
        if response.status_code in (200, 201):
            return self._json(response), ""
        if response.status_code == 202:
            return None, response.headers.get("Location", "")
        raise self._error(response)

    def _update(self, path: str, body: dict[str, Any], params: QueryParams | None, user: str) -> tuple[dict[str, Any] | None, str]:
        response = self._call("PATCH", path, params, body, user)
        if response.status_code == 200:
            return self._json(response), ""
        if response.status_code == 202:
            return None, response.headers.get("Location", "")
        raise self._error(response)

    def _delete(self, path: str, params: QueryParams | None, user: str) -> str:
        response = self._call("DELETE", path, params, user=user)
        if response.status_code in (200, 404, 410):
            return ""
        if response.status_code == 202:
            return response.headers.get("Location", "")
        raise self._error(response)

    def _get(self, path: str, params: QueryParams | None = None) -> dict[str, Any]:
        response = self._call("GET", path, params)
        if response.status_code != 200:
            raise self._error(response)
        return response.json()

    def _list(self, path: str, params: QueryParams | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        base = params or QueryParams()
        next_token = ""
        while True:
            page = QueryParams(
                field_query=list(base.field_query),
                label_query=list(base.label_query),
                general_params=list(base.general_params),
            )
            if next_token:
                page.general_params.append(f"token={next_token}")
            body = self._get(path, page)
            items.extend(body.get("items") or [])
            next_token = body.get("token") or ""
            if not next_token:
                return items

    @staticmethod
    def _async_params(params: QueryParams | None) -> QueryParams:
        params = params or QueryParams()
        if "async=true" not in params.general_params:
            params.general_params.append("async=true")
        return params

    # Plans and offerings

    def _resolve_plan(
        self,
        plan_id: str,
        offering_name: str,
        plan_name: str,
        data_center: str,
    ) -> tuple[str, dict[str, Any] | None]:
        offering_query = f"catalog_name eq '{offering_name}'"
        if data_center:
            offering_query += f" and data_center eq '{data_center}'"
        offerings = self._list(SERVICE_OFFERINGS_URL, QueryParams(field_query=[offering_query]))
        if not offerings:
            raise PlanResolutionError(f"couldn't find the service offering '{offering_name}'")

        offering_ids = "'" + "', '".join(o["id"] for o in offerings) + "'"
        plans = self._list(
            SERVICE_PLANS_URL,
            QueryParams(field_query=[
                f"catalog_name eq '{plan_name}'",
                f"service_offering_id in ({offering_ids})",
            ]),
        )

        def offering_of(plan: dict[str, Any]) -> dict[str, Any] | None:
            return next((o for o in offerings if o["id"] == plan.get("service_offering_id")), None)

        if not plans:
            raise PlanResolutionError(
                f"couldn't find the service plan '{plan_name}' for the service offering '{offering_name}'"
            )
        if len(plans) == 1 and not plan_id:
            return plans[0]["id"], offering_of(plans[0])
        for plan in plans:
            if plan["id"] == plan_id:
                return plan["id"], offering_of(plan)

        if plan_id:
            raise PlanResolutionError(
                f"the provided plan ID '{plan_id}' doesn't match the provided offering name "
                f"'{offering_name}' and plan name '{plan_name}'"
            )
        raise PlanResolutionError(
            "ambiguity error: found more than one resource that matches the provided offering name "
            f"'{offering_name}' and plan name '{plan_name}'. Please provide servicePlanID"
        )

    def get_offering_tags(self, plan_id: str) -> list[str]:
        plan = self._get(f"{SERVICE_PLANS_URL}/{plan_id}")
        offering = self._get(f"{SERVICE_OFFERINGS_URL}/{plan['service_offering_id']}")
        return _parse_tags(offering.get("tags"))

    # Instances

    def provision(
        self,
        instance: dict[str, Any],
        offering_name: str,
        plan_name: str,
        params: QueryParams | None = None,
        user: str = "",
        data_center: str = "",
    ) -> ProvisionResponse:
        if not offering_name or not plan_name:
            raise PlanResolutionError(
                "missing field values. Specify service name and plan name for the instance "
                f"'{instance.get('name', '')}'"
            )
        plan_id, offering = self._resolve_plan(
            instance.get("service_plan_id", ""), offering_name, plan_name, data_center
        )
        body = dict(instance, service_plan_id=plan_id)

        created, location = self._register(SERVICE_INSTANCES_URL, body, self._async_params(params), user)
        if location:
            instance_id = extract_instance_id(location)
            if not instance_id:
                raise ValueError(
                    f"failed to extract the service instance ID from the async operation URL: {location}"
                )
        else:
            instance_id = (created or {}).get("id", "")

        return ProvisionResponse(
            instance_id=instance_id,
            plan_id=plan_id,
            location=location,
            tags=_parse_tags((offering or {}).get("tags")),
        )

    def update_instance(
        self,
        instance_id: str,
        instance: dict[str, Any],
        offering_name: str,
        plan_name: str,
        params: QueryParams | None = None,
        user: str = "",
        data_center: str = "",
    ) -> tuple[dict[str, Any] | None, str]:
        plan_id, _ = self._resolve_plan(
            instance.get("service_plan_id", ""), offering_name, plan_name, data_center
        )
        body = dict(instance, service_plan_id=plan_id)
        return self._update(f"{SERVICE_INSTANCES_URL}/{instance_id}", body, self._async_params(params), user)

    def deprovision(self, instance_id: str, params: QueryParams | None = None, user: str = "") -> str:
        return self._delete(f"{SERVICE_INSTANCES_URL}/{instance_id}", self._async_params(params), user)

    def get_instance_by_id(self, instance_id: str, params: QueryParams | None = None) -> dict[str, Any]:
        return self._get(f"{SERVICE_INSTANCES_URL}/{instance_id}", params)

    def list_instances(self, params: QueryParams | None = None) -> list[dict[str, Any]]:
        return self._list(SERVICE_INSTANCES_URL, params)

    def _set_shared(self, instance_id: str, shared: bool, user: str) -> None:
        response = self._call("PATCH", f"{SERVICE_INSTANCES_URL}/{instance_id}", None, {"shared": shared}, user)
        if response.status_code != 200:
            raise self._error(response)

    def share_instance(self, instance_id: str, user: str = "") -> None:
        self._set_shared(instance_id, True, user)

    def unshare_instance(self, instance_id: str, user: str = "") -> None:
        self._set_shared(instance_id, False, user)

    # Bindings

    def bind(
        self,
        binding: dict[str, Any],
        params: QueryParams | None = None,
        user: str = "",
    ) -> tuple[dict[str, Any] | None, str]:
        return self._register(SERVICE_BINDINGS_URL, binding, self._async_params(params), user)

    def unbind(self, binding_id: str, params: QueryParams | None = None, user: str = "") -> str:
        return self._delete(f"{SERVICE_BINDINGS_URL}/{binding_id}", self._async_params(params), user)

    def get_binding_by_id(self, binding_id: str, params: QueryParams | None = None) -> dict[str, Any]:
        return self._get(f"{SERVICE_BINDINGS_URL}/{binding_id}", params)

    def list_bindings(self, params: QueryParams | None = None) -> list[dict[str, Any]]:
        return self._list(SERVICE_BINDINGS_URL, params)

    def rename_binding(self, binding_id: str, new_name: str, new_k8s_name: str) -> dict[str, Any]:
        path = f"{SERVICE_BINDINGS_URL}/{binding_id}"
        self._update(
            path,
            {"name": new_name, "labels": [{"key": "_k8sname", "op": "remove"}]},
            None,
            "",
        )
        # Removing and adding the same label key in one request is rejected.
        result, _ = self._update(
            path,
            {"labels": [{"key": "_k8sname", "op": "add", "values": [new_k8s_name]}]},
            None,
            "",
        )
        return result or {}

    # Operations

    def status(self, operation_url: str, params: QueryParams | None = None) -> Operation:
        operation = Operation.from_dict(self._get(operation_url, params))
        if operation is None:
            raise ServiceManagerError(200, description=f"empty operation response for {operation_url}")
        return operation

    def close(self) -> None:
        self.http.close()
