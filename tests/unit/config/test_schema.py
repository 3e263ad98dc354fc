"""Unit tests for config schema validation, merging, and redaction."""

from __future__ import annotations

import pytest

from taskwave.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def test_default_config_is_valid_and_isolated_per_call() -> None:
    first = default_config()
    second = default_config()
    first["parallel"]["max_concurrent"] = 99

    assert second["parallel"]["max_concurrent"] == 3
    assert assert_valid_config(default_config())["loops"]["max_retries"] == 5
    assert set(BUILTIN_PROFILE_NAMES) <= set(default_config()["profiles"])


def test_unknown_keys_are_rejected_with_paths() -> None:
    config = merge_config(default_config(), {"parallel": {"turbo": True}, "extra": {}})

    result = validate_config(config)

    assert not result.is_valid
    assert {(item.path, item.message) for item in result.issues} >= {
        ("parallel.turbo", "unknown field"),
        ("extra", "unknown field"),
    }


def test_secret_looking_keys_are_forbidden() -> None:
    config = merge_config(default_config(), {"isolation": {"api_key": "sk-live"}})
    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        assert_valid_config(config)


def test_type_and_range_checks() -> None:
    config = merge_config(
        default_config(),
        {
            "loops": {"max_retries": 0, "enforced": "yes"},
            "verification": {"timeout_seconds": -1},
            "safety": {"limits": {"checkpoint_interval": 0}},
            "isolation": {"branch_prefix": "../evil"},
        },
    )

    issues = {item.path: item.message for item in validate_config(config).issues}

    assert issues["loops.max_retries"] == "must be >= 1"
    assert issues["loops.enforced"] == "expected boolean, got str"
    assert issues["verification.timeout_seconds"] == "must be > 0"
    assert issues["safety.limits.checkpoint_interval"] == "must be >= 1"
    assert issues["isolation.branch_prefix"] == "must be a safe git branch prefix"


def test_verification_commands_accept_strings_and_tables() -> None:
    config = merge_config(
        default_config(),
        {
            "verification": {
                "commands": {
                    "test": ["pytest -q", {"command": "ruff check .", "required": False}],
                }
            }
        },
    )

    validated = assert_valid_config(config)

    assert validated["verification"]["commands"]["test"] == [
        {"command": "pytest -q"},
        {"command": "ruff check .", "required": False},
    ]

    bad = merge_config(default_config(), {"verification": {"commands": {"deploy": []}}})
    with pytest.raises(ConfigValidationError, match="verification.commands.deploy"):
        assert_valid_config(bad)


def test_merge_replaces_lists_and_deep_merges_mappings() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    merged = merge_config(base, {"a": {"c": [3]}, "e": 2})

    assert merged == {"a": {"b": 1, "c": [3]}, "d": 1, "e": 2}
    assert base["a"]["c"] == [1, 2]


def test_apply_profile_overlay() -> None:
    strict = apply_profile_overlay(default_config(), "strict")
    assert strict["parallel"]["max_concurrent"] == 2
    assert apply_profile_overlay(default_config(), None)["parallel"] == default_config()["parallel"]
    with pytest.raises(ConfigValidationError):
        apply_profile_overlay(default_config(), "unknown")


def test_profile_names_are_validated() -> None:
    config = merge_config(default_config(), {"profiles": {"Bad Name": {}}})
    issues = validate_config(config).issues
    assert any(item.path == "profiles.Bad Name" for item in issues)


def test_schema_version_mismatch_reports_migration_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})
    issues = validate_config(config).issues
    assert issues[0].path == "meta.schema_version"
    assert "newer than supported" in issues[0].message
    assert "older than supported" in migration_guidance(0)


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config({"observability": {"log_level": "INFO"}, "token": "abc", "nested": {"password": "x"}})
    assert redacted == {
        "nested": {"password": "<redacted>"},
        "observability": {"log_level": "INFO"},
        "token": "<redacted>",
    }
    assert redact_config("not a mapping") == {}
