"""Data models for the Service Manager API."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

SERVICE_INSTANCES_URL = "/v1/service_instances"
SERVICE_BINDINGS_URL = "/v1/service_bindings"
SERVICE_OFFERINGS_URL = "/v1/service_offerings"
SERVICE_PLANS_URL = "/v1/service_plans"
OPERATIONS_URL = "/operations"


@dataclass
class QueryParams:
    """Query parameters understood by Service Manager list endpoints.

    Field and label queries are conjunctions of expressions such as
    ``name eq 'x'`` or ``service_offering_id in ('a', 'b')``.
    """

    field_query: list[str] = field(default_factory=list)
    label_query: list[str] = field(default_factory=list)
    general_params: list[str] = field(default_factory=list)

    def encode(self) -> str:
        pairs: list[tuple[str, str]] = []
        if self.field_query:
            pairs.append(("fieldQuery", " and ".join(self.field_query)))
        if self.label_query:
            pairs.append(("labelQuery", " and ".join(self.label_query)))
        for param in self.general_params:
            key, _, value = param.partition("=")
            pairs.append((key, value))
        return urlencode(pairs)


@dataclass
class Operation:
    """An asynchronous Service Manager operation."""

    id: str = ""
    type: str = ""
    state: str = ""
    description: str = ""
    resource_id: str = ""
    resource_type: str = ""
    errors: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Operation | None:
        if not data:
            return None
        return cls(
            id=data.get("id", ""),
            type=data.get("type", ""),
            state=data.get("state", ""),
            description=data.get("description", ""),
            resource_id=data.get("resource_id", ""),
            resource_type=data.get("resource_type", ""),
            errors=data.get("errors"),
        )

    def error_description(self) -> str:
        """Return the human readable error attached to a failed operation."""
        errors = self.errors
        if isinstance(errors, (bytes, str)):
            try:
                errors = json.loads(errors)
            except ValueError:
                return str(errors) or "async operation error"
        if isinstance(errors, dict) and errors.get("description"):
            return str(errors["description"])
        return "async operation error"


@dataclass
class ProvisionResponse:
    """Result of a provision request."""

    instance_id: str
    plan_id: str
    location: str = ""
    tags: list[str] = field(default_factory=list)


@dataclass
class ClientConfig:
    """Connection settings for a Service Manager client."""

    url: str
    token_url: str
    client_id: str
    client_secret: str
    token_url_suffix: str = "/oauth/token"

    def is_valid(self) -> bool:
        return bool(self.url and self.token_url and self.client_id and self.client_secret)
