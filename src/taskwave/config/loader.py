"""
taskwave — config loading.

File: src/taskwave/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config from layered sources: built-in defaults, the
  ``taskwave.toml`` file, a profile overlay, ``TASKWAVE_*`` variables and
  ``--set key=value`` overrides from the command line.

What should be included in this file
- One table of overridable scalar slots, derived from the defaults, shared by the
  environment and the command line so both coerce text the same way.
- Path fields resolved against the directory holding the config file.
- The redacted text rendering printed by ``taskwave config``.

Functional requirements
- Precedence: command line > environment > profile > file > defaults.
- An explicitly named config file must exist; the implicit one is optional.
- Coercion failures name the offending variable or key.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, Final

from taskwave.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "taskwave.toml"
ENV_PREFIX: Final[str] = "TASKWAVE_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

# Slots whose default is unset, so their type cannot be read off the defaults.
_UNSET_SLOTS: Final[Mapping[tuple[str, ...], type]] = {
    ("isolation", "root"): str,
    ("safety", "limits", "max_tokens"): int,
    ("observability", "log_file"): str,
}
_NOT_OVERRIDABLE: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    project_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``cli_overrides`` maps dotted keys (``parallel.max_concurrent``) to values;
    string values are coerced by the type of the slot they target.
    """

    file_path = _config_file(config_path, project_root)
    env = os.environ if environ is None else environ

    file_layer = _read_toml(file_path, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))
    active_profile = _selected_profile(profile, env)
    if active_profile is not None:
        config = apply_profile_overlay(config, active_profile)

    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    config = assert_valid_config(config, active_profile=active_profile)
    return assert_valid_config(
        normalize_paths(config, base_dir=file_path.parent), active_profile=active_profile
    )


def parse_assignment(text: str) -> tuple[str, str]:
    """Split a ``key=value`` command line assignment."""

    key, separator, value = text.partition("=")
    key = key.strip()
    if not separator or not key:
        raise ConfigLoadError(f"expected KEY=VALUE, got {text!r}")
    return key, value


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every configured path field, profile overlays included, against ``base_dir``."""

    normalized = merge_config({}, config)
    for field_path in _path_field_locations(normalized):
        value = _lookup(normalized, field_path)
        if isinstance(value, str):
            _assign(normalized, field_path, _absolute_posix(value, base_dir))
    return normalized


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    """Render the redacted config as key-sorted JSON."""

    separators = (",", ":") if indent is None else (",", ": ")
    return json.dumps(
        redact_config(config),
        indent=indent,
        sort_keys=True,
        separators=separators,
        ensure_ascii=False,
    )


def env_var_for(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _config_file(config_path: str | Path | None, project_root: str | Path | None) -> Path:
    if config_path is not None:
        return Path(config_path).expanduser().resolve()
    base = Path(project_root).expanduser() if project_root is not None else Path.cwd()
    return (base / DEFAULT_CONFIG_FILE).resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(profile: str | None, env: Mapping[str, str]) -> str | None:
    raw = profile if profile is not None else env.get(PROFILE_ENV_VAR)
    if raw is None:
        return None
    return raw.strip() or None


@lru_cache(maxsize=1)
def _scalar_slots() -> dict[tuple[str, ...], type]:
    slots: dict[tuple[str, ...], type] = {}
    for path, value in _walk_scalars(default_config()):
        if path[0] not in _NOT_OVERRIDABLE:
            slots[path] = type(value)
    for path, kind in _UNSET_SLOTS.items():
        slots.setdefault(path, kind)
    return slots


def _walk_scalars(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _walk_scalars(value, (*prefix, key))
        elif isinstance(value, bool | int | float | str):
            yield (*prefix, key), value


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, kind in sorted(_scalar_slots().items()):
        name = env_var_for(path)
        if name in env:
            _assign(layer, path, _coerce(env[name], kind, name))
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    slots = _scalar_slots()
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid override key {key!r}")
        value = overrides[key]
        if isinstance(value, str) and path in slots:
            value = _coerce(value, slots[path], key)
        _assign(layer, path, value)
    return layer


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(text)


_PARSERS: Final[Mapping[type, tuple[Callable[[str], object], str]]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
    str: (str, "a string"),
}


def _coerce(raw: str, kind: type, origin: str) -> object:
    parser, expected = _PARSERS[kind]
    try:
        return parser(raw.strip())
    except ValueError as exc:
        raise ConfigLoadError(f"{origin} must be {expected}, got {raw!r}") from exc


def _path_field_locations(config: Mapping[str, object]) -> Iterator[tuple[str, ...]]:
    yield from PATH_FIELDS
    profiles = config.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            yield from (("profiles", name, *field_path) for field_path in PATH_FIELDS)


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _lookup(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    node = target
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[path[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "dump_effective_config",
    "env_var_for",
    "load_config",
    "normalize_paths",
    "parse_assignment",
]
