"""
taskwave — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-18

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Profile selection from argument and environment.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskwave.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_var_for,
    load_config,
    parse_assignment,
)
from taskwave.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "[parallel]\nmax_concurrent = 4\n")

    defaults = load_config(project_root=tmp_path / "empty", environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"TASKWAVE_PARALLEL_MAX_CONCURRENT": "6"})
    cli_loaded = load_config(
        config_path,
        environ={"TASKWAVE_PARALLEL_MAX_CONCURRENT": "6"},
        cli_overrides={"parallel.max_concurrent": 7},
    )

    assert defaults["parallel"]["max_concurrent"] == 3
    assert file_loaded["parallel"]["max_concurrent"] == 4
    assert env_loaded["parallel"]["max_concurrent"] == 6
    assert cli_loaded["parallel"]["max_concurrent"] == 7


def test_default_file_is_discovered_in_project_root(tmp_path: Path) -> None:
    _write_config(tmp_path / "taskwave.toml", '[parallel]\noverlap_policy = "warn"\n')
    loaded = load_config(project_root=tmp_path, environ={})
    assert loaded["parallel"]["overlap_policy"] == "warn"


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "nope.toml", environ={})


def test_invalid_toml_is_a_load_error(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, "[parallel\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_env_coercion_for_bool_float_and_nested_ints(tmp_path: Path) -> None:
    loaded = load_config(
        project_root=tmp_path,
        environ={
            "TASKWAVE_ISOLATION_PUSH": "yes",
            "TASKWAVE_VERIFICATION_TIMEOUT_SECONDS": "2.5",
            "TASKWAVE_SAFETY_LIMITS_MAX_STEPS": "9",
            "TASKWAVE_SAFETY_LIMITS_MAX_TOKENS": "1000",
        },
    )
    assert loaded["isolation"]["push"] is True
    assert loaded["verification"]["timeout_seconds"] == 2.5
    assert loaded["safety"]["limits"]["max_steps"] == 9
    assert loaded["safety"]["limits"]["max_tokens"] == 1000


def test_env_coercion_errors_name_the_variable(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="TASKWAVE_LOOPS_ENFORCED"):
        load_config(project_root=tmp_path, environ={"TASKWAVE_LOOPS_ENFORCED": "maybe"})
    with pytest.raises(ConfigLoadError, match="must be an integer"):
        load_config(project_root=tmp_path, environ={"TASKWAVE_LOOPS_MAX_RETRIES": "five"})


def test_profiles_from_argument_and_environment(tmp_path: Path) -> None:
    strict = load_config(project_root=tmp_path, profile="strict", environ={})
    assert strict["loops"]["max_retries"] == 3
    assert strict["loops"]["regression_on_recheck"] == "block"
    assert strict["safety"]["limits"]["max_steps"] == 30

    permissive = load_config(project_root=tmp_path, environ={"TASKWAVE_PROFILE": "permissive"})
    assert permissive["safety"]["on_violation"] == "warn"
    assert permissive["parallel"]["overlap_policy"] == "warn"

    with pytest.raises(ConfigValidationError, match="profile 'ghost' is not defined"):
        load_config(project_root=tmp_path, profile="ghost", environ={})


def test_env_overrides_beat_profile_values(tmp_path: Path) -> None:
    loaded = load_config(
        project_root=tmp_path,
        profile="strict",
        environ={"TASKWAVE_LOOPS_MAX_RETRIES": "8"},
    )
    assert loaded["loops"]["max_retries"] == 8


def test_user_defined_profile_overlay(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(
        config_path,
        "[profiles.ci.verification]\nfail_fast = false\n\n[profiles.ci.parallel]\nenabled = false\n",
    )
    loaded = load_config(config_path, profile="ci", environ={})
    assert loaded["verification"]["fail_fast"] is False
    assert loaded["parallel"]["enabled"] is False


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_path = config_dir / "taskwave.toml"
    _write_config(
        config_path,
        '[paths]\ntask_queue = "queue/ready.yaml"\nstate_dir = "../state"\n\n'
        '[isolation]\nroot = "/tmp/taskwave-iso"\n',
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["task_queue"] == (config_dir.resolve() / "queue" / "ready.yaml").as_posix()
    assert loaded["paths"]["state_dir"] == (tmp_path.resolve() / "state").as_posix()
    assert loaded["paths"]["verifications_dir"] == (
        config_dir.resolve() / ".workflow" / "verifications"
    ).as_posix()
    assert loaded["isolation"]["root"] == "/tmp/taskwave-iso"


def test_invalid_values_surface_as_validation_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwave.toml"
    _write_config(config_path, '[parallel]\nmax_concurrent = 0\noverlap_policy = "merge"\n')

    with pytest.raises(ConfigValidationError) as error:
        load_config(config_path, environ={})

    paths = {issue.path for issue in error.value.issues}
    assert paths == {"parallel.max_concurrent", "parallel.overlap_policy"}


def test_dump_effective_config_is_deterministic_json(tmp_path: Path) -> None:
    loaded = load_config(project_root=tmp_path, environ={})
    first = dump_effective_config(loaded)
    second = dump_effective_config(load_config(project_root=tmp_path, environ={}))

    assert first == second
    parsed = json.loads(first)
    assert parsed["parallel"]["max_concurrent"] == 3
    assert list(parsed) == sorted(parsed)


def test_dump_with_indent_is_the_same_document(tmp_path: Path) -> None:
    loaded = load_config(project_root=tmp_path, environ={})
    pretty = dump_effective_config(loaded, indent=2)

    assert "\n  " in pretty
    assert json.loads(pretty) == json.loads(dump_effective_config(loaded))


def test_parse_assignment_splits_on_first_equals() -> None:
    assert parse_assignment("parallel.max_concurrent=5") == ("parallel.max_concurrent", "5")
    assert parse_assignment(" isolation.root = a=b") == ("isolation.root", " a=b")

    for bad in ("parallel.max_concurrent", "=5", ""):
        with pytest.raises(ConfigLoadError, match="expected KEY=VALUE"):
            parse_assignment(bad)


def test_string_cli_overrides_are_coerced_by_slot_type(tmp_path: Path) -> None:
    loaded = load_config(
        project_root=tmp_path,
        environ={},
        cli_overrides={
            "loops.enforced": "off",
            "parallel.max_concurrent": "5",
            "verification.timeout_seconds": "1.5",
        },
    )
    assert loaded["loops"]["enforced"] is False
    assert loaded["parallel"]["max_concurrent"] == 5
    assert loaded["verification"]["timeout_seconds"] == 1.5

    with pytest.raises(ConfigLoadError, match="parallel.max_concurrent must be an integer"):
        load_config(project_root=tmp_path, environ={}, cli_overrides={"parallel.max_concurrent": "lots"})


def test_env_var_names_follow_the_config_path() -> None:
    assert env_var_for(("parallel", "max_concurrent")) == "TASKWAVE_PARALLEL_MAX_CONCURRENT"
    assert env_var_for(("safety", "limits", "max_steps")) == "TASKWAVE_SAFETY_LIMITS_MAX_STEPS"
