"""Credential rotation helpers for ServiceBinding resources."""

from __future__ import annotations

import copy
import re
import secrets
import string
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..constants import (
    ANNOTATION_FORCE_ROTATE,
    API_GROUP_VERSION,
    COND_CRED_ROTATION_IN_PROGRESS,
    KIND_SERVICE_BINDING,
    LABEL_STALE_BINDING_ID,
    LABEL_STALE_ROTATION_OF,
)
from ..state import RotationRecord
from .conditions import is_condition_true, is_failed

if TYPE_CHECKING:
    from ..resources import ServiceBindingResource

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def parse_duration(value: str | None) -> timedelta:
    """Parse a Go style duration such as ``72h`` or ``1h30m``.

    Raises:
        ValueError: If the value is not a valid duration
    """
    if not value:
        return timedelta(0)
    text = value.strip()
    if text == "0":
        return timedelta(0)
    pos, seconds = 0, 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return timedelta(seconds=seconds)


def random_suffix(length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def is_stale(binding: ServiceBindingResource) -> bool:
    return LABEL_STALE_BINDING_ID in binding.labels


def force_rotate_requested(binding: ServiceBindingResource) -> bool:
    return ANNOTATION_FORCE_ROTATE in binding.annotations


def is_rotation_due(binding: ServiceBindingResource, now: datetime) -> bool:
    """Decide whether a binding should start rotating its credentials.

    Rotation starts when it is enabled, no rotation is running, the binding
    is healthy, and either the rotation frequency elapsed since the last
    rotation (or creation) or a forced rotation was requested.
    """
    if not binding.rotation_enabled or is_stale(binding):
        return False
    if is_failed(binding.conditions) or not binding.ready:
        return False
    if is_condition_true(binding.conditions, COND_CRED_ROTATION_IN_PROGRESS):
        return False
    if force_rotate_requested(binding):
        return True

    last = binding.last_rotation_time or binding.creation_timestamp
    if last is None:
        return False
    frequency = parse_duration(binding.rotation_policy.get("rotationFrequency"))
    return now - last > frequency


def build_stale_binding(binding: ServiceBindingResource, suffix: str) -> dict[str, Any]:
    """Build the ServiceBinding object that keeps the old credentials alive.

    The copy points at the renamed remote binding, writes its own secret and
    never rotates by itself.
    """
    spec = copy.deepcopy(binding.spec)
    policy = dict(spec.get("credRotationPolicy") or {})
    policy["enabled"] = False
    spec["credRotationPolicy"] = policy
    spec["secretName"] = binding.secret_name + suffix
    spec["externalName"] = binding.external_name + suffix

    return {
        "apiVersion": API_GROUP_VERSION,
        "kind": KIND_SERVICE_BINDING,
        "metadata": {
            "name": binding.name + suffix,
            "namespace": binding.namespace,
            "labels": {
                LABEL_STALE_BINDING_ID: binding.remote_id,
                LABEL_STALE_ROTATION_OF: binding.name,
            },
        },
        "spec": spec,
    }


def rotation_record(
    stale: ServiceBindingResource,
    original: dict[str, Any] | None,
) -> RotationRecord:
    """Correlate a stale binding with the binding it was rotated from.

    Args:
        stale: The stale binding
        original: The original ServiceBinding object, None if it is gone
    """
    try:
        ttl = parse_duration(stale.rotation_policy.get("rotatedBindingTTL"))
    except ValueError:
        ttl = timedelta(0)

    original_ready = False
    if original is not None:
        original_ready = (original.get("status") or {}).get("ready") == "True"
    return RotationRecord(
        original_name=stale.labels.get(LABEL_STALE_ROTATION_OF, ""),
        stale_name=stale.name,
        stale_binding_id=stale.labels.get(LABEL_STALE_BINDING_ID, ""),
        ttl=ttl,
        stale_created_at=stale.creation_timestamp,
        original_ready=original_ready,
    )
