from __future__ import annotations

import json
from pathlib import Path

import pytest

from crateforge.config import DEFAULT_SCRIPT, BuildConfig, load_config, parse_flag
from crateforge.errors import ConfigError


def _write(path: Path, doc: dict) -> Path:
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def test_defaults_without_file_or_environment() -> None:
    cfg = load_config(environ={})

    assert cfg.workspace is None
    assert cfg.output_dir == Path("wasm").resolve()
    assert cfg.script == DEFAULT_SCRIPT
    assert cfg.caching is True
    assert cfg.engine == "docker"
    assert cfg.cargo_http_timeout == 240


def test_file_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "build.config.json",
        {"workspace": "ws", "output_dir": "out", "engine": "podman", "engine_command": ["sudo", "podman"]},
    )

    cfg = load_config(cfg_path, environ={})

    assert cfg.workspace == (tmp_path / "ws").resolve()
    assert cfg.output_dir == (tmp_path / "out").resolve()
    assert cfg.engine == "podman"
    assert cfg.engine_command == ("sudo", "podman")


def test_precedence_file_then_environment_then_overrides(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "build.config.json", {"toolchain": "1.70", "verbose": True, "build_uid": 10})
    environ = {"CRATEFORGE_RUST": "1.75", "CRATEFORGE_REBUILD": "1", "CRATEFORGE_BUILD_UID": "20"}

    cfg = load_config(cfg_path, environ=environ, overrides={"toolchain": "1.79", "workspace": str(tmp_path)})

    assert cfg.toolchain == "1.79"
    assert cfg.verbose is True
    assert cfg.caching is False
    assert cfg.build_uid == 20
    assert cfg.workspace == tmp_path.resolve()


def test_none_overrides_do_not_mask_environment(tmp_path: Path) -> None:
    cfg = load_config(environ={"CRATEFORGE_WORKSPACE": str(tmp_path)}, overrides={"workspace": None})

    assert cfg.workspace == tmp_path.resolve()


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="unknown configuration key"):
        load_config(environ={}, overrides={"colour": "blue"})
    with pytest.raises(ConfigError, match="E_CONFIG_INVALID"):
        load_config(_write(tmp_path / "c.json", {"colour": "blue"}), environ={})


def test_schema_type_errors_are_config_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path / "c.json", {"cargo_http_timeout": "fast"}), environ={})
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path / "d.json", {"engine": "lxc"}), environ={})


def test_inline_secrets_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="inline secret-like value"):
        load_config(_write(tmp_path / "c.json", {"registry_token": "hunter2"}), environ={})


def test_bad_environment_values(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="CRATEFORGE_BUILD_RAW"):
        load_config(environ={"CRATEFORGE_BUILD_RAW": "maybe"})
    with pytest.raises(ConfigError, match="CRATEFORGE_BUILD_UID"):
        load_config(environ={"CRATEFORGE_BUILD_UID": "root"})
    with pytest.raises(ConfigError, match="engine must be"):
        load_config(environ={"CRATEFORGE_ENGINE": "lxc"})


def test_parse_flag_values() -> None:
    assert parse_flag("X", "yes") is True
    assert parse_flag("X", "") is False
    assert parse_flag("X", " Off ") is False


def test_build_config_is_immutable() -> None:
    with pytest.raises(AttributeError):
        BuildConfig().raw = True  # type: ignore[misc]
