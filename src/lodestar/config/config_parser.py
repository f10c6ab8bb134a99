"""Configuration parsing and normalization helpers for lodestar.

Brief:
  This module turns the YAML document handed to the CLI into the process-wide
  ZoneConfig. It centralizes:
    - reading YAML config files
    - merging variables from config/env/CLI
    - JSON Schema validation (see config_schema.validate_config)
    - normalization of nameservers (address, timeout, transport)
    - building the initial RecordStore

Inputs:
  - YAML config dicts and paths

Outputs:
  - ZoneConfig instances shared by the DNS engine, listeners and admin API
"""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from ..records import Record, RecordStore
from .config_schema import validate_config

TRANSPORTS = ("udp", "tcp")
DEFAULT_TRANSPORT = "tcp"
DEFAULT_TIMEOUT = 2.0
DEFAULT_DNS_PORT = 53

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


@dataclass(frozen=True)
class Nameserver:
    """Brief: One upstream resolver and how to reach it.

    Inputs:
      - host: Upstream host or IP literal.
      - port: Upstream port.
      - timeout: Per-exchange timeout in seconds.
      - transport: "udp" or "tcp".

    Outputs:
      - Immutable Nameserver; list order is fallback priority.
    """

    host: str
    port: int = DEFAULT_DNS_PORT
    timeout: float = DEFAULT_TIMEOUT
    transport: str = DEFAULT_TRANSPORT

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class ZoneConfig:
    """Brief: Process-wide configuration handle injected into every component.

    Inputs:
      - name: Owned zone suffix, lowercase with trailing dot.
      - secret: Admin shared secret.
      - records: RecordStore, the only mutable part of the config.
      - nameservers: Ordered upstream resolvers.
      - host/port: DNS bind address for both transports.
      - nameserver_host: Host advertised in the authority NS record.
      - tcp_idle_timeout/tcp_workers: TCP idle close and resolver pool size.

    Outputs:
      - ZoneConfig instance.
    """

    name: str
    secret: str = ""
    records: RecordStore = field(default_factory=RecordStore)
    nameservers: Tuple[Nameserver, ...] = ()
    host: str = "127.0.0.1"
    port: int = 5353
    nameserver_host: str = "127.0.0.1"
    tcp_idle_timeout: float = 15.0
    tcp_workers: int = 128

    def __post_init__(self) -> None:
        self.name = normalize_zone_name(self.name)
        self.nameservers = tuple(self.nameservers)


def normalize_zone_name(name: str) -> str:
    """Brief: Lowercase a zone name and ensure a single trailing dot.

    Example:
      >>> normalize_zone_name("Example.COM")
      'example.com.'
    """

    text = str(name).strip().lower().rstrip(".")
    return f"{text}." if text else "."


def _is_var_key(key: str) -> bool:
    """Brief: True when key is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""

    return bool(key) and bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML (string on error)."""

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI ``KEY=YAML`` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.
      - Environment variables are only merged for names the config file
        already declares or references as ``${NAME}``/``$NAME``.

    Example:
      >>> cfg = {'vars': {'TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TTL=300'], environ={})['TTL']
      300
    """

    base = cfg.get("vars", cfg.get("variables"))
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.vars must be a mapping when present")

    referenced = set(re.findall(r"\$\{?([A-Z_][A-Z0-9_]*)\}?", yaml.safe_dump(cfg)))
    env = os.environ if environ is None else environ
    for k, v in env.items():
        if _is_var_key(k) and (k in merged or k in referenced):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg.pop("variables", None)
    if merged:
        cfg["vars"] = merged
    return merged


def parse_duration(value: Any) -> float:
    """Brief: Parse a Go-style duration ("500ms", "1m30s") or seconds number.

    Inputs:
      - value: str duration or int/float seconds.

    Outputs:
      - float seconds.

    Raises:
      - ValueError: for empty, negative or unparseable values.

    Example:
      >>> parse_duration("1m30s")
      90.0
      >>> parse_duration(0.25)
      0.25
    """

    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"invalid duration {value!r}: must not be negative")
        return float(value)

    text = str(value).strip()
    if text in ("0", "+0"):
        return 0.0
    if text.startswith("+"):
        text = text[1:]
    if not text or text.startswith("-"):
        raise ValueError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def parse_nameserver_address(address: str) -> Tuple[str, int]:
    """Brief: Split "host:port" / "[v6]:port" / bare host into (host, port).

    Example:
      >>> parse_nameserver_address("[2606:4700::1111]:53")
      ('2606:4700::1111', 53)
    """

    text = str(address).strip()
    if not text:
        raise ValueError("nameserver address must not be empty")

    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep:
            raise ValueError(f"invalid nameserver address {address!r}")
        port_text = rest[1:] if rest.startswith(":") else ""
        if rest and not rest.startswith(":"):
            raise ValueError(f"invalid nameserver address {address!r}")
    elif text.count(":") == 1:
        host, _, port_text = text.partition(":")
    else:
        # Bare hostname, IPv4 literal, or unbracketed IPv6 literal.
        host, port_text = text, ""

    if not host:
        raise ValueError(f"invalid nameserver address {address!r}")
    if not port_text:
        return host, DEFAULT_DNS_PORT
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in nameserver address {address!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in nameserver address {address!r}")
    return host, port


def normalize_transport(value: Any) -> str:
    """Brief: Map a configured transport to "udp"/"tcp"; empty means tcp."""

    if value is None:
        return DEFAULT_TRANSPORT
    text = str(value).strip().lower()
    if not text:
        return DEFAULT_TRANSPORT
    if text not in TRANSPORTS:
        raise ValueError(f"Illegal value for transport {value!r}")
    return text


def normalize_nameservers(raw: Any) -> List[Nameserver]:
    """Brief: Build the ordered Nameserver list from config.nameservers.

    Inputs:
      - raw: list of mappings with address/timeout/transport, or None.

    Outputs:
      - list[Nameserver] in configured priority order.

    Raises:
      - ValueError: for invalid entries.
    """

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("config.nameservers must be a list of nameserver definitions")

    out: List[Nameserver] = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict) or "address" not in entry:
            raise ValueError(f"nameservers[{idx}] must be a mapping with 'address'")
        try:
            host, port = parse_nameserver_address(entry["address"])
            timeout = parse_duration(entry.get("timeout", DEFAULT_TIMEOUT))
            transport = normalize_transport(entry.get("transport"))
        except ValueError as exc:
            raise ValueError(f"nameservers[{idx}]: {exc}") from exc
        if timeout <= 0:
            raise ValueError(f"nameservers[{idx}]: timeout must be positive")
        out.append(Nameserver(host=host, port=port, timeout=timeout, transport=transport))
    return out


def zone_record_key(name: str, zone: str) -> str:
    key = str(name).strip().lower().rstrip(".")
    apex = zone.rstrip(".")
    if not key or key == apex:
        raise ValueError(f"record name {name!r} is the zone apex")
    if key.endswith("." + apex):
        key = key[: -(len(apex) + 1)]
    return key


def normalize_records(raw: Any, zone: str) -> Dict[str, Record]:
    """Brief: Build zone-relative Records from config.zone.records.

    Inputs:
      - raw: mapping of name -> {address, ttl}, or None.
      - zone: Normalized owned zone name.

    Outputs:
      - dict[str, Record] keyed without the zone suffix.
    """

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("config.zone.records must be a mapping")

    out: Dict[str, Record] = {}
    for name, value in raw.items():
        key = zone_record_key(name, zone)
        try:
            out[key] = Record.model_validate(value)
        except ValidationError as exc:
            raise ValueError(f"zone.records[{name!r}]: {exc}") from exc
    return out


def default_nameserver_host(bind_host: str) -> str:
    """Brief: Pick the host advertised in the authority NS record.

    Inputs:
      - bind_host: Configured DNS bind address.

    Outputs:
      - bind_host itself unless it is a wildcard; otherwise the primary IPv4
        of this machine (UDP-connect probe, no packets sent) or 127.0.0.1.
    """

    if bind_host not in ("", "0.0.0.0", "::"):
        return bind_host
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("192.0.2.1", 53))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def build_zone_config(cfg: Dict[str, Any]) -> ZoneConfig:
    """Brief: Convert a validated configuration mapping into a ZoneConfig.

    Inputs:
      - cfg: Mapping returned by parse_config_file (or an equivalent dict).

    Outputs:
      - ZoneConfig with a populated RecordStore.

    Raises:
      - ValueError: for semantically invalid values.

    Example:
      >>> zc = build_zone_config({"zone": {"name": "example.com",
      ...     "records": {"www": {"address": "10.0.0.1", "ttl": 300}}}})
      >>> zc.records.get("www").address
      '10.0.0.1'
    """

    zone_cfg = cfg.get("zone") or {}
    if not isinstance(zone_cfg, dict) or not zone_cfg.get("name"):
        raise ValueError("config.zone.name is required")
    server_cfg = cfg.get("server") or {}
    if not isinstance(server_cfg, dict):
        raise ValueError("config.server must be a mapping when present")

    name = normalize_zone_name(zone_cfg["name"])
    host = str(server_cfg.get("host", "127.0.0.1"))
    port = int(server_cfg.get("port", 5353))
    ns_host = str(server_cfg.get("nameserver") or default_nameserver_host(host))

    return ZoneConfig(
        name=name,
        secret=str(zone_cfg.get("secret") or ""),
        records=RecordStore(normalize_records(zone_cfg.get("records"), name)),
        nameservers=tuple(normalize_nameservers(cfg.get("nameservers"))),
        host=host,
        port=port,
        nameserver_host=ns_host,
        tcp_idle_timeout=float(server_cfg.get("tcp_idle_timeout", 15.0)),
        tcp_workers=int(server_cfg.get("tcp_workers", 128)),
    )


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML (or JSON) configuration file.
      - cli_vars: Optional list of CLI ``KEY=YAML`` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Normalized configuration mapping.

    Raises:
      - ValueError: when YAML parsing, variables or schema validation fail.
      - OSError: when the file cannot be read.
    """

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"YAML parsing error in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def load_zone_config(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Tuple[Dict[str, Any], ZoneConfig]:
    """Brief: parse_config_file + build_zone_config in one step.

    Outputs:
      - (cfg, zone_config) so callers keep access to the logging/http blocks.
    """

    cfg = parse_config_file(config_path, cli_vars=cli_vars, environ=environ)
    return cfg, build_zone_config(cfg)
