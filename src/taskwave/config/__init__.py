"""
taskwave config package public API.

File: src/taskwave/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``taskwave.toml`` + ``TASKWAVE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from taskwave.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV_VAR,
    ConfigLoadError,
    dump_effective_config,
    env_var_for,
    load_config,
    normalize_paths,
    parse_assignment,
)
from taskwave.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ProfileOverlay,
    TaskwaveConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "PROFILE_ENV_VAR",
    "ProfileOverlay",
    "TaskwaveConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_var_for",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "parse_assignment",
    "redact_config",
    "validate_config",
]
