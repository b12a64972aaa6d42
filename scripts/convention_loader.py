#!/usr/bin/env python3
"""YAML configuration loader for the stack-guard link wrapper.

Parses the runtime convention descriptor (which symbol holds the initial
stack pointer, which region carries the stack) and the link settings (the
wrapped tool, its reporting flags, timeouts), validates them against
schema_version 1, and returns immutable config objects.

Usage as library::

    from convention_loader import load_config

    config = load_config("stackflip.yaml")
    print(config.convention.stack_symbol, config.link.tool)

Usage as CLI (for debugging)::

    python3 scripts/convention_loader.py examples/stm32f4/stackflip.yaml
"""

from __future__ import annotations

import dataclasses
import json
import os
import shlex
import sys
import warnings
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from flip_errors import ConfigError
from memory_map import DEFAULT_ALIGNMENT_CAP


SUPPORTED_SCHEMA_VERSIONS = {1}

DEFAULT_STACK_SYMBOL = "__stack_top__"
DEFAULT_TOOL = "ld"
DEFAULT_REPORT_FLAGS = ("--print-map", "--print-memory-usage")
DEFAULT_SCRIPT_FLAG = "-T"
DEFAULT_CONFIG_NAME = "stackflip.yaml"

POLICY_ERROR = "error"
POLICY_HIGHEST = "highest"
REGION_POLICIES = {POLICY_ERROR, POLICY_HIGHEST}

KNOWN_TOP_LEVEL_KEYS = {"schema_version", "runtime", "link"}

ENV_CONFIG = "STACKFLIP_CONFIG"
ENV_LINKER = "STACKFLIP_LINKER"
ENV_TIMEOUT = "STACKFLIP_TIMEOUT"
ENV_VERBOSE = "STACKFLIP_VERBOSE"


# ---------------------------------------------------------------------------
# Config data model
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class StackRegionRule:
    """An explicit stack-bearing region and the symbol set to its stack pointer."""

    region: str
    stack_symbol: str


@dataclasses.dataclass(frozen=True)
class RuntimeConvention:
    stack_symbol: str = DEFAULT_STACK_SYMBOL
    stack_regions: Tuple[StackRegionRule, ...] = ()
    region_policy: str = POLICY_ERROR
    allow_override: bool = False

    def symbols(self) -> List[str]:
        if not self.stack_regions:
            return [self.stack_symbol]
        return sorted({rule.stack_symbol for rule in self.stack_regions})


class LinkSettings:
    __slots__ = ("tool", "report_flags", "script_flag", "timeout", "verify_output", "alignment_cap")

    def __init__(
        self,
        tool: Optional[List[str]] = None,
        report_flags: Optional[List[str]] = None,
        script_flag: str = DEFAULT_SCRIPT_FLAG,
        timeout: Optional[float] = None,
        verify_output: bool = True,
        alignment_cap: int = DEFAULT_ALIGNMENT_CAP,
    ) -> None:
        self.tool = list(tool) if tool else [DEFAULT_TOOL]
        self.report_flags = list(report_flags) if report_flags is not None else list(DEFAULT_REPORT_FLAGS)
        self.script_flag = script_flag
        self.timeout = timeout
        self.verify_output = verify_output
        self.alignment_cap = alignment_cap

    def replace(self, **changes: Any) -> "LinkSettings":
        values = {name: getattr(self, name) for name in self.__slots__}
        values.update(changes)
        return LinkSettings(**values)


class WrapperConfig:
    """Fully-parsed wrapper configuration."""

    def __init__(
        self,
        convention: RuntimeConvention,
        link: LinkSettings,
        source: Optional[Path] = None,
    ) -> None:
        self.convention = convention
        self.link = link
        self.source = source


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_int(value: Any, field_name: str) -> int:
    """Parse an integer from YAML (handles hex strings like 0x20000000)."""
    if isinstance(value, bool):
        raise ConfigError("{}: expected integer, got {!r}".format(field_name, value))
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError("{}: expected integer, got {!r}".format(field_name, value))


def _parse_timeout(value: Any, field_name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError("{}: expected seconds, got {!r}".format(field_name, value))
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError("{}: expected seconds, got {!r}".format(field_name, value)) from exc
    if seconds <= 0:
        raise ConfigError("{}: must be positive, got {!r}".format(field_name, value))
    return seconds


def _parse_symbol(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("{}: expected a symbol name, got {!r}".format(field_name, value))
    symbol = value.strip()
    if any(ch.isspace() for ch in symbol) or "=" in symbol or ";" in symbol:
        raise ConfigError("{}: invalid symbol name {!r}".format(field_name, value))
    return symbol


def _parse_command(value: Any, field_name: str) -> List[str]:
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        parts = list(value)
    else:
        raise ConfigError("{}: expected a command string or list, got {!r}".format(field_name, value))
    if not parts:
        raise ConfigError("{}: command must not be empty".format(field_name))
    return parts


def _parse_flags(value: Any, field_name: str) -> List[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError("{}: expected a list of flags, got {!r}".format(field_name, value))


def _require_mapping(value: Any, context: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("{} must be a mapping, got {}".format(context, type(value).__name__))
    return value


def _parse_stack_regions(raw: Any, default_symbol: str) -> Tuple[StackRegionRule, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigError("runtime.stack_regions must be a list, got {}".format(type(raw).__name__))

    rules: List[StackRegionRule] = []
    seen = set()
    for i, entry in enumerate(raw):
        where = "runtime.stack_regions[{}]".format(i)
        if isinstance(entry, str):
            region, symbol = entry.strip(), default_symbol
        elif isinstance(entry, dict):
            if "region" not in entry:
                raise ConfigError("missing required field 'region' in {}.".format(where))
            region = str(entry["region"]).strip()
            symbol = _parse_symbol(entry.get("stack_symbol", default_symbol), where + ".stack_symbol")
        else:
            raise ConfigError("{}: expected a region name or mapping, got {!r}".format(where, entry))
        if not region:
            raise ConfigError("{}: region name must not be empty".format(where))
        if region in seen:
            raise ConfigError("{}: region '{}' listed twice".format(where, region))
        seen.add(region)
        rules.append(StackRegionRule(region=region, stack_symbol=symbol))
    return tuple(rules)


def _parse_runtime(raw: Optional[Dict[str, Any]]) -> RuntimeConvention:
    raw = _require_mapping(raw, "runtime")
    stack_symbol = _parse_symbol(raw.get("stack_symbol", DEFAULT_STACK_SYMBOL), "runtime.stack_symbol")
    policy = str(raw.get("region_policy", POLICY_ERROR))
    if policy not in REGION_POLICIES:
        raise ConfigError(
            "Invalid runtime.region_policy '{}'. Valid: {}".format(policy, sorted(REGION_POLICIES))
        )
    allow_override = raw.get("allow_override", False)
    if not isinstance(allow_override, bool):
        raise ConfigError("runtime.allow_override: expected true/false, got {!r}".format(allow_override))
    return RuntimeConvention(
        stack_symbol=stack_symbol,
        stack_regions=_parse_stack_regions(raw.get("stack_regions"), stack_symbol),
        region_policy=policy,
        allow_override=allow_override,
    )


def _parse_link(raw: Optional[Dict[str, Any]]) -> LinkSettings:
    raw = _require_mapping(raw, "link")
    alignment_cap = _parse_int(raw.get("alignment_cap", DEFAULT_ALIGNMENT_CAP), "link.alignment_cap")
    if alignment_cap <= 0 or alignment_cap & (alignment_cap - 1):
        raise ConfigError("link.alignment_cap must be a power of two, got {}".format(alignment_cap))
    verify_output = raw.get("verify_output", True)
    if not isinstance(verify_output, bool):
        raise ConfigError("link.verify_output: expected true/false, got {!r}".format(verify_output))
    script_flag = raw.get("script_flag", DEFAULT_SCRIPT_FLAG)
    if script_flag is None:
        script_flag = ""
    if not isinstance(script_flag, str):
        raise ConfigError("link.script_flag: expected a string, got {!r}".format(script_flag))
    return LinkSettings(
        tool=_parse_command(raw["tool"], "link.tool") if "tool" in raw else None,
        report_flags=_parse_flags(raw["report_flags"], "link.report_flags") if "report_flags" in raw else None,
        script_flag=script_flag,
        timeout=_parse_timeout(raw.get("timeout"), "link.timeout"),
        verify_output=verify_output,
        alignment_cap=alignment_cap,
    )


# ---------------------------------------------------------------------------
# Main loader
# ---------------------------------------------------------------------------

def default_config() -> WrapperConfig:
    return WrapperConfig(convention=RuntimeConvention(), link=LinkSettings())


def config_from_mapping(data: Any, source: Optional[Path] = None) -> WrapperConfig:
    """Validate an already-decoded YAML document."""
    if not isinstance(data, dict):
        raise ConfigError("Config must be a YAML mapping, got {}".format(type(data).__name__))

    if "schema_version" not in data:
        raise ConfigError("missing required field 'schema_version'.")
    schema_version = _parse_int(data["schema_version"], "schema_version")
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise ConfigError(
            "Unsupported schema_version {}. Supported: {}".format(
                schema_version, sorted(SUPPORTED_SCHEMA_VERSIONS)
            )
        )

    for key in data:
        if key not in KNOWN_TOP_LEVEL_KEYS:
            warnings.warn("Unknown key '{}' in stackflip config; ignoring.".format(key))

    return WrapperConfig(
        convention=_parse_runtime(data.get("runtime")),
        link=_parse_link(data.get("link")),
        source=source,
    )


def load_config(path: str | Path) -> WrapperConfig:
    """Load and validate a YAML config file.

    Args:
        path: Path to the .yaml config file.

    Returns:
        A validated WrapperConfig.

    Raises:
        ConfigError: If the config is invalid or not valid YAML.
        FileNotFoundError: If the config doesn't exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError("Config not found: {}".format(path))

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError("{}: invalid YAML: {}".format(path, exc)) from exc

    return config_from_mapping(data, source=path)


def discover_config(explicit: Optional[str], environ: Mapping[str, str], cwd: Path) -> WrapperConfig:
    """Resolve the config: explicit path, then $STACKFLIP_CONFIG, then ./stackflip.yaml."""
    if explicit:
        return load_config(explicit)
    env_path = environ.get(ENV_CONFIG)
    if env_path:
        return load_config(env_path)
    local = cwd / DEFAULT_CONFIG_NAME
    if local.is_file():
        return load_config(local)
    return default_config()


def apply_environment(config: WrapperConfig, environ: Mapping[str, str]) -> WrapperConfig:
    """Return a copy of ``config`` with $STACKFLIP_LINKER / $STACKFLIP_TIMEOUT applied."""
    link = config.link
    if environ.get(ENV_LINKER):
        link = link.replace(tool=_parse_command(environ[ENV_LINKER], ENV_LINKER))
    if environ.get(ENV_TIMEOUT):
        link = link.replace(timeout=_parse_timeout(environ[ENV_TIMEOUT], ENV_TIMEOUT))
    return WrapperConfig(convention=config.convention, link=link, source=config.source)


# ---------------------------------------------------------------------------
# CLI for debugging
# ---------------------------------------------------------------------------

def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python3 scripts/convention_loader.py <stackflip.yaml>", file=sys.stderr)
        return 1

    config = apply_environment(load_config(sys.argv[1]), os.environ)
    conv = config.convention
    info = {
        "stack_symbol": conv.stack_symbol,
        "stack_regions": {rule.region: rule.stack_symbol for rule in conv.stack_regions},
        "region_policy": conv.region_policy,
        "allow_override": conv.allow_override,
        "tool": config.link.tool,
        "report_flags": config.link.report_flags,
        "script_flag": config.link.script_flag,
        "timeout": config.link.timeout,
        "verify_output": config.link.verify_output,
    }
    print(json.dumps(info, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
