"""Load the configuration file, layering PERCAS_CONFIG_* environment variables over it."""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from percas.config import Config, ConfigError, known_option_entries

ENV_PREFIX = "PERCAS_CONFIG_"

_INTEGER = re.compile(r"[+-]?\d+")
_I64_MIN, _I64_MAX = -(2**63), 2**63 - 1


@dataclass
class LoadConfigResult:
    config: Config
    warnings: list[str] = field(default_factory=list)


def _parse_value(kind: str, key: str, value: str) -> Any:
    if kind == "string":
        return value
    if kind == "integer":
        if not _INTEGER.fullmatch(value) or not _I64_MIN <= int(value) <= _I64_MAX:
            raise ConfigError(f"failed to parse integer value {value} of key {key}")
        return int(value)
    if kind == "boolean":
        if value not in ("true", "false"):
            raise ConfigError(f"failed to parse boolean value {value} of key {key}")
        return value == "true"
    raise ConfigError(
        f"failed to parse environment variable {key} with value {value} "
        f"and resolved type {kind}"
    )


def _set_path(doc: dict[str, Any], key: str, path: str, value: Any) -> list[str]:
    parts = path.split(".")
    warnings = []
    current = doc
    for part in parts[:-1]:
        if part not in current:
            warnings.append(
                f"[key={key}] config path '{path}' has missing parent '{part}'; created"
            )
            current[part] = {}
        current = current[part]
        if not isinstance(current, dict):
            raise ConfigError(f"[key={key}] config path '{path}' has non-table parent '{part}'")
    current[parts[-1]] = value
    return warnings


def load_config(
    config_file: str | os.PathLike[str],
    environ: Mapping[str, str] | None = None,
) -> LoadConfigResult:
    """Read the TOML config file and apply overrides from the environment."""
    path = os.fspath(config_file)
    try:
        with open(path, "rb") as fh:
            content = fh.read()
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {path}") from exc
    try:
        doc = tomllib.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError("failed to parse config content") from exc

    env = os.environ if environ is None else environ
    entries = {entry.env_name: entry for entry in known_option_entries()}
    warnings: list[str] = []
    for key in sorted(k for k in env if k.startswith(ENV_PREFIX)):
        value = env[key]
        entry = entries.get(key)
        if entry is None:
            raise ConfigError(
                f"failed to parse unknown environment variable {key} with value {value}"
            )
        parsed = _parse_value(entry.ent_type, key, value)
        warnings.extend(_set_path(doc, key, entry.ent_path, parsed))

    try:
        config = Config.from_dict(doc)
    except ConfigError as exc:
        raise ConfigError(f"failed to deserialize config: {exc}") from exc
    return LoadConfigResult(config=config, warnings=warnings)