"""Rate limiting utilities for API calls."""

from __future__ import annotations

import os
import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

from kubernetes.client.exceptions import ApiException

from .. import metrics

_F = TypeVar("_F", bound=Callable[..., Any])

# Rate limit configuration
_K8S_RATE_LIMIT_PER_SECOND = float(os.getenv("K8S_RATE_LIMIT_PER_SECOND", "10.0"))
_SM_RATE_LIMIT_PER_SECOND = float(os.getenv("SM_RATE_LIMIT_PER_SECOND", "5.0"))


class _Throttle:
    """Minimum-interval throttle shared by all callers of one API."""

    def __init__(self, per_second: float) -> None:
        self.min_interval = 1.0 / per_second if per_second > 0 else 0.0
        self.last_call_time = 0.0
        self.lock = threading.Lock()

    def wait(self) -> None:
        with self.lock:
            time_since_last_call = time.time() - self.last_call_time
            if time_since_last_call < self.min_interval:
                time.sleep(self.min_interval - time_since_last_call)
            self.last_call_time = time.time()


_k8s_throttle = _Throttle(_K8S_RATE_LIMIT_PER_SECOND)
_sm_throttle = _Throttle(_SM_RATE_LIMIT_PER_SECOND)


def _throttled(throttle: _Throttle) -> Callable[[_F], _F]:
    def decorator(func: _F) -> _F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            throttle.wait()
            return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator


rate_limit_k8s = _throttled(_k8s_throttle)
rate_limit_k8s.__doc__ = "Decorator to rate limit Kubernetes API calls."

rate_limit_sm = _throttled(_sm_throttle)
rate_limit_sm.__doc__ = "Decorator to rate limit Service Manager API calls."


def handle_rate_limit_error(e: Exception, attempt: int = 0, max_retries: int = 3) -> bool:
    """Check if an API exception is a rate limit error and back off.

    Args:
        e: Exception raised by the Kubernetes client
        attempt: Zero-based retry attempt of the caller
        max_retries: Maximum number of retries

    Returns:
        True if the caller should retry, False otherwise
    """
    if not isinstance(e, ApiException):
        return False
    # Kubernetes API rate limit errors typically return 429 or 503
    if e.status == 429 or (e.status == 503 and "rate limit" in str(e).lower()):
        metrics.rate_limit_hits_total.labels(api_type="k8s").inc()
        if attempt < max_retries:
            # Exponential backoff: 1s, 2s, 4s
            time.sleep(2 ** attempt)
            return True
    return False
