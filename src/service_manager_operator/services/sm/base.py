"""Service Manager client interface."""

from __future__ import annotations

from typing import Any, Protocol

from .models import Operation, ProvisionResponse, QueryParams


class ServiceManager(Protocol):
    """Protocol defining the Service Manager operations used by the reconcilers."""

    def provision(
        self,
        instance: dict[str, Any],
        offering_name: str,
        plan_name: str,
        params: QueryParams | None = None,
        user: str = "",
        data_center: str = "",
    ) -> ProvisionResponse:
        """Provision a service instance, synchronously or asynchronously."""
        ...

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
        """Update a service instance. Returns the instance and an operation location."""
        ...

    def deprovision(self, instance_id: str, params: QueryParams | None = None, user: str = "") -> str:
        """Delete a service instance. Returns an operation location for async deletes."""
        ...

    def get_instance_by_id(self, instance_id: str, params: QueryParams | None = None) -> dict[str, Any]:
        """Fetch a single service instance."""
        ...

    def list_instances(self, params: QueryParams | None = None) -> list[dict[str, Any]]:
        """List service instances matching the query."""
        ...

    def share_instance(self, instance_id: str, user: str = "") -> None:
        """Mark an instance as shared."""
        ...

    def unshare_instance(self, instance_id: str, user: str = "") -> None:
        """Mark an instance as not shared."""
        ...

    def get_offering_tags(self, plan_id: str) -> list[str]:
        """Return the tags of the offering owning a plan."""
        ...

    def bind(
        self,
        binding: dict[str, Any],
        params: QueryParams | None = None,
        user: str = "",
    ) -> tuple[dict[str, Any] | None, str]:
        """Create a binding. Returns the binding and an operation location."""
        ...

    def unbind(self, binding_id: str, params: QueryParams | None = None, user: str = "") -> str:
        """Delete a binding. Returns an operation location for async deletes."""
        ...

    def get_binding_by_id(self, binding_id: str, params: QueryParams | None = None) -> dict[str, Any]:
        """Fetch a single binding."""
        ...

    def list_bindings(self, params: QueryParams | None = None) -> list[dict[str, Any]]:
        """List bindings matching the query."""
        ...

    def rename_binding(self, binding_id: str, new_name: str, new_k8s_name: str) -> dict[str, Any]:
        """Rename a binding and relabel its cluster name."""
        ...

    def status(self, operation_url: str, params: QueryParams | None = None) -> Operation:
        """Fetch the state of an asynchronous operation."""
        ...
