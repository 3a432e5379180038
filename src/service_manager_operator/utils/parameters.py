"""Merging of inline parameters and parametersFrom secret references."""

from __future__ import annotations

import json
from typing import Any, Callable

SecretValueGetter = Callable[[str, str, str], str]


class ParametersError(ValueError):
    """Parameters could not be built from the resource spec."""


def _merge(target: dict[str, Any], source: dict[str, Any]) -> None:
    for key, value in source.items():
        if key in target:
            raise ParametersError(f'conflict: duplicate entry for parameter "{key}"')
        target[key] = value


def build_parameters(
    namespace: str,
    parameters_from: list[dict[str, Any]] | None,
    parameters: dict[str, Any] | None,
    get_secret_value: SecretValueGetter,
) -> dict[str, Any] | None:
    """Build the parameters document sent to Service Manager.

    Each ``parametersFrom`` entry references a secret key holding a JSON
    object. Those objects and the inline parameters are merged into one
    document; a key present in more than one source is rejected.

    Args:
        namespace: Namespace of the referenced secrets
        parameters_from: List of ``{"secretKeyRef": {"name", "key"}}`` entries
        parameters: Inline parameters
        get_secret_value: Callable ``(namespace, name, key) -> str``

    Returns:
        Merged parameters, or None when there are none
    """
    merged: dict[str, Any] = {}

    for ref in parameters_from or []:
        secret_ref = ref.get("secretKeyRef")
        if not secret_ref:
            continue
        name, key = secret_ref.get("name", ""), secret_ref.get("key", "")
        raw = get_secret_value(namespace, name, key)
        try:
            values = json.loads(raw)
        except ValueError as e:
            raise ParametersError(f"failed to unmarshal secret {name} key {key} as JSON: {e}") from e
        if not isinstance(values, dict):
            raise ParametersError(f"secret {name} key {key} does not contain a JSON object")
        # "shared" is driven by the resource spec, never by referenced secrets
        values.pop("shared", None)
        _merge(merged, values)

    if parameters:
        _merge(merged, parameters)

    return merged or None
