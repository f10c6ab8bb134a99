"""JSON Schema-based validation for lodestar YAML configuration.

This module normalizes a parsed ``config.yaml`` (variable expansion, legacy
flat-key documents) and validates it against ``config-schema.json`` shipped
next to this file.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

logger = logging.getLogger("lodestar.config")

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

# Top-level keys of the legacy flat JSON document.
_LEGACY_KEYS = ("Port", "Name", "Secret", "Records", "Nameservers")


def _normalize_legacy_config(cfg: Dict[str, Any]) -> None:
    """Brief: Rewrite a legacy flat ``config.json`` document in place.

    Inputs:
      - cfg: Parsed configuration mapping (mutated in-place).

    Outputs:
      - None.

    Notes:
      - Only runs when at least one capitalized legacy key is present.
      - ``Records`` entries are rewritten to ``address``/``ttl``; nameserver
        entries have their keys lowercased.
      - Legacy keys never override values already given in the new layout.
    """

    if not any(k in cfg for k in _LEGACY_KEYS):
        return

    server = cfg.setdefault("server", {})
    zone = cfg.setdefault("zone", {})
    if not isinstance(server, dict) or not isinstance(zone, dict):
        raise ValueError("config.server and config.zone must be mappings")

    if "Port" in cfg:
        server.setdefault("port", cfg.pop("Port"))
    if "Name" in cfg:
        zone.setdefault("name", cfg.pop("Name"))
    if "Secret" in cfg:
        zone.setdefault("secret", cfg.pop("Secret"))
    if "Records" in cfg:
        raw = cfg.pop("Records")
        records: Dict[str, Any] = {}
        for key, value in (raw or {}).items():
            if isinstance(value, dict):
                records[key] = {
                    "address": value.get("address", value.get("Address")),
                    "ttl": value.get("ttl", value.get("TTL", 0)),
                }
            else:
                records[key] = value
        zone.setdefault("records", records)
    if "Nameservers" in cfg:
        out: List[Any] = []
        for ns in cfg.pop("Nameservers") or []:
            if isinstance(ns, dict):
                out.append({str(k).lower(): v for k, v in ns.items()})
            else:
                out.append(ns)
        cfg.setdefault("nameservers", out)


def _normalize_variables_for_validation(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level ``vars`` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - Reads cfg['vars'] (or legacy cfg['variables']), a mapping of key ->
        YAML value.
      - Replaces ``${KEY}`` occurrences inside strings.
      - A string that is exactly ``$KEY`` or ``${KEY}`` is replaced with the
        variable's underlying YAML value (list/dict/int/etc.).
      - Keys are never substituted. Cycles raise ValueError.
    """

    variables = cfg.get("vars")
    if variables is None and "variables" in cfg:
        legacy = cfg.get("variables")
        if not isinstance(legacy, dict):
            raise ValueError("config.variables must be a mapping when present")
        cfg["vars"] = legacy
        cfg.pop("variables", None)
        variables = legacy
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")

    for k in variables.keys():
        if not isinstance(k, str):
            raise ValueError("config.vars keys must be strings")
        if not re.fullmatch(r"[A-Z_][A-Z0-9_]*", k):
            raise ValueError(f"config.vars key {k!r} must match [A-Z_][A-Z0-9_]*")

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            cycle = " -> ".join(stack + [key])
            raise ValueError(f"config.vars contains a cycle: {cycle}")
        if key not in variables:
            raise KeyError(key)

        stack.append(key)
        value = _expand_obj(variables[key], stack)
        stack.pop()

        resolved[key] = value
        return value

    def _injection_var_name(text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}") and len(text) > 3:
            candidate = text[2:-1]
            if candidate in variables:
                return candidate
        if text.startswith("$") and len(text) > 1 and text[1:] in variables:
            return text[1:]
        return None

    def _expand_string(text: str, stack: List[str]) -> Any:
        whole = _injection_var_name(text)
        if whole is not None:
            return copy.deepcopy(_resolve_var(whole, stack))

        def _repl(match: re.Match) -> str:
            try:
                v = _resolve_var(match.group(1), stack)
            except KeyError:
                return match.group(0)
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return "null"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand_obj(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand_obj(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand_obj(v, stack) for k, v in obj.items()}
        return obj

    for k in list(variables.keys()):
        _resolve_var(str(k), [])

    for top_key in list(cfg.keys()):
        if top_key == "vars":
            continue
        cfg[top_key] = _expand_obj(cfg[top_key], [])

    cfg.pop("vars", None)


def get_default_schema_path() -> Path:
    """Brief: Path of the JSON Schema bundled with the package."""

    return Path(__file__).resolve().parent / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def _split_extra_property_errors(
    errors: List[ValidationError],
) -> tuple[List[ValidationError], List[ValidationError]]:
    """Brief: Partition validation errors into extra-property vs other errors."""

    extra: List[ValidationError] = []
    other: List[ValidationError] = []
    for err in errors:
        if getattr(err, "validator", None) in {
            "additionalProperties",
            "unevaluatedProperties",
        }:
            extra.append(err)
        else:
            other.append(err)
    return extra, other


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Normalize and validate a parsed configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (mutated by normalization).
      - schema_path: Optional explicit path to a JSON Schema file.
      - config_path: Optional YAML path, used only in error messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ValueError: on any non-extra validation failure, on an unreadable
        schema, or on extra keys when ``unknown_keys`` is "error".

    Example:
      >>> import yaml
      >>> data = yaml.safe_load("zone: {name: example.com., secret: s}")
      >>> validate_config(data)
    """

    if unknown_keys not in {"ignore", "warn", "error"}:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    _normalize_legacy_config(cfg)
    _normalize_variables_for_validation(cfg)

    effective_schema_path = schema_path or get_default_schema_path()
    try:
        schema = _load_schema(effective_schema_path)
        validator = Draft202012Validator(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        raise ValueError(
            f"Failed to load configuration schema at {effective_schema_path}: {exc}"
        ) from exc

    all_errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if not all_errors:
        return None

    extra_errors, other_errors = _split_extra_property_errors(all_errors)
    if other_errors:
        raise ValueError(
            _format_errors(other_errors + extra_errors, config_path=config_path)
        )

    message = _format_errors(extra_errors, config_path=config_path)
    if unknown_keys == "warn":
        logger.warning(message)
    elif unknown_keys == "error":
        raise ValueError(message)
    return None
