from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_manifest
from crateforge.cargo import crate_name, path_dependencies
from crateforge.errors import ConfigError


def test_crate_name_reads_package_table(tmp_path: Path) -> None:
    write_manifest(tmp_path / "kv", "kv-store")
    assert crate_name(tmp_path / "kv") == "kv-store"


def test_crate_name_requires_package_name(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("[workspace]\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        crate_name(tmp_path)


def test_invalid_manifest_is_a_config_error(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("[package\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        crate_name(tmp_path)


def test_path_dependencies_cover_both_dependency_tables(tmp_path: Path) -> None:
    ws = tmp_path / "repo" / "ws"
    ws.mkdir(parents=True)
    (ws / "Cargo.toml").write_text(
        "\n".join(
            [
                "[dependencies]",
                'shared = { path = "../shared" }',
                'serde = "1"',
                "[workspace.dependencies]",
                'vendored = { path = "vendor/lib" }',
                'remote = { git = "https://example.invalid/x" }',
                "",
            ]
        ),
        encoding="utf-8",
    )

    deps = path_dependencies(ws)

    assert deps == {(tmp_path / "repo" / "shared").resolve(), (ws / "vendor" / "lib").resolve()}


def test_path_dependencies_without_manifest(tmp_path: Path) -> None:
    assert path_dependencies(tmp_path) == set()


def test_missing_manifest_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="no Cargo.toml"):
        crate_name(tmp_path / "contracts" / "missing")
