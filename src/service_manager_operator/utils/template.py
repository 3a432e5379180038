"""Sandboxed rendering of binding secret templates."""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timezone
from typing import Any

import yaml
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from ..constants import SECRET_TEMPLATE_MAX_BYTES

ALLOWED_METADATA_FIELDS = frozenset({"labels", "annotations"})

# Builtin jinja filters that stay available inside templates
_BUILTIN_FILTERS = (
    "default",
    "first",
    "indent",
    "join",
    "last",
    "length",
    "lower",
    "replace",
    "title",
    "trim",
    "truncate",
    "upper",
)


class SecretTemplateError(ValueError):
    """The secret template could not be rendered into a valid Secret."""


def _b64enc(value: Any) -> str:
    raw = value if isinstance(value, bytes) else str(value).encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def _b64dec(value: str) -> str:
    return base64.b64decode(value).decode("utf-8")


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _from_json(value: str) -> Any:
    return json.loads(value)


def _quote(value: Any) -> str:
    return json.dumps(str(value))


def _squote(value: Any) -> str:
    return f"'{value}'"


def _nindent(value: str, width: int = 4) -> str:
    pad = " " * width
    return "\n" + "\n".join(pad + line for line in str(value).splitlines())


def _sha256sum(value: Any) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def _date(value: datetime, fmt: str = "%Y-%m-%dT%H:%M:%SZ") -> str:
    return value.strftime(fmt)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _build_environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
    filters = {name: env.filters[name] for name in _BUILTIN_FILTERS}
    filters.update({
        "b64enc": _b64enc,
        "b64dec": _b64dec,
        "toJson": _to_json,
        "fromJson": _from_json,
        "quote": _quote,
        "squote": _squote,
        "nindent": _nindent,
        "sha256sum": _sha256sum,
        "date": _date,
    })
    env.filters = filters
    env.tests = {name: env.tests[name] for name in ("defined", "undefined", "none", "string", "mapping")}
    env.globals = {"now": _now}
    return env


_environment = _build_environment()


def render_template(template_text: str, data: dict[str, Any], max_bytes: int = SECRET_TEMPLATE_MAX_BYTES) -> str:
    """Render a template, aborting once the output exceeds ``max_bytes``.

    Raises:
        SecretTemplateError: On syntax errors, missing keys or oversized output
    """
    try:
        template = _environment.from_string(template_text)
        chunks: list[str] = []
        size = 0
        for chunk in template.generate(**data):
            size += len(chunk.encode("utf-8"))
            if size > max_bytes:
                raise SecretTemplateError(
                    f"the size of the generated secret manifest exceeds the limit of {max_bytes} bytes"
                )
            chunks.append(chunk)
    except TemplateError as e:
        raise SecretTemplateError(f"could not execute template: {e}") from e
    return "".join(chunks)


def create_secret_from_template(template_text: str, data: dict[str, Any]) -> dict[str, Any]:
    """Render a Secret manifest and validate its shape.

    The manifest must be a single ``v1`` ``Secret`` whose metadata only
    carries labels and annotations.

    Returns:
        The decoded manifest
    """
    manifest = render_template(template_text, data)
    try:
        obj = yaml.safe_load(manifest)
    except yaml.YAMLError as e:
        raise SecretTemplateError(f"the generated secret manifest is not a valid YAML document: {e}") from e

    if not isinstance(obj, dict):
        raise SecretTemplateError("the generated secret manifest is not a valid YAML document")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise SecretTemplateError("failed to read metadata fields of generated secret manifest")
    for key in metadata:
        if key not in ALLOWED_METADATA_FIELDS:
            raise SecretTemplateError(f"metadata field {key} is not allowed in generated secret manifest")

    api_version, kind = obj.get("apiVersion"), obj.get("kind")
    if api_version != "v1" or kind != "Secret":
        raise SecretTemplateError(f'generated secret manifest has unexpected type: "{api_version}, Kind={kind}"')

    for field in ("data", "stringData"):
        if field in obj and obj[field] is not None and not isinstance(obj[field], dict):
            raise SecretTemplateError(f"the generated secret manifest is not valid: {field} must be a map")

    return obj
