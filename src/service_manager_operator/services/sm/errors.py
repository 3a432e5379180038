"""Errors raised by the Service Manager client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class BrokerError:
    """Error returned by a service broker and proxied through Service Manager."""

    status_code: int
    error_message: str = ""
    description: str = ""

    def __str__(self) -> str:
        return f"BrokerError:{self.error_message}, Status: {self.status_code}, Description: {self.description}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BrokerError:
        return cls(
            status_code=int(data.get("StatusCode", data.get("status_code", 0)) or 0),
            error_message=data.get("ErrorMessage", data.get("error_message")) or "",
            description=data.get("Description", data.get("description")) or "",
        )


class ServiceManagerError(Exception):
    """Non-success response from the Service Manager API."""

    def __init__(
        self,
        status_code: int,
        description: str = "",
        error_type: str = "",
        broker_error: BrokerError | None = None,
    ) -> None:
        self.status_code = status_code
        self.description = description
        self.error_type = error_type
        self.broker_error = broker_error
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.broker_error is not None:
            return str(self.broker_error)
        return self.description

    def get_status_code(self) -> int:
        """Return the effective status code, preferring a proxied broker code."""
        if self.broker_error is not None:
            return self.broker_error.status_code
        return self.status_code

    @classmethod
    def from_response(cls, status_code: int, body: Any) -> ServiceManagerError:
        """Build an error from a decoded response body.

        Bodies that are not JSON objects keep only the status code.
        """
        if not isinstance(body, dict):
            return cls(status_code)
        broker = body.get("broker_error")
        return cls(
            status_code=status_code,
            description=body.get("description", "") or "",
            error_type=body.get("error", "") or "",
            broker_error=BrokerError.from_dict(broker) if isinstance(broker, dict) else None,
        )


class PlanResolutionError(ValueError):
    """The requested offering and plan could not be resolved to one plan."""
