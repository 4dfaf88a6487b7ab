from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

import crateforge.gitdir as gitdir
from crateforge._exec import ExecResult
from crateforge.errors import FetchFailed, GitDirNotFound
from crateforge.gitdir import GitLocation, fetch, require_git_location, resolve_git_location


def test_plain_repository_has_git_directory(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()

    location = resolve_git_location(tmp_path)

    assert location.present is True
    assert location.is_submodule is False
    assert location.path == tmp_path.resolve() / ".git"
    assert location.root_repo == tmp_path.resolve()
    assert location.submodule_dir == ""


def test_submodule_gitdir_pointer_is_followed(tmp_path: Path) -> None:
    root = tmp_path / "root"
    (root / ".git" / "modules" / "contracts" / "kv").mkdir(parents=True)
    module = root / "contracts" / "kv"
    module.mkdir(parents=True)
    (module / ".git").write_text("gitdir: ../../.git/modules/contracts/kv\n", encoding="utf-8")

    location = resolve_git_location(module)

    assert location.present is True
    assert location.is_submodule is True
    assert location.path == root.resolve() / ".git" / "modules" / "contracts" / "kv"
    assert location.root_repo == root.resolve()
    assert location.submodule_dir == "contracts/kv"


def test_submodule_dir_for_single_level_pointer(tmp_path: Path) -> None:
    location = GitLocation(path=tmp_path / ".git" / "modules" / "contracts" / "kv", present=True, is_submodule=True)

    assert location.root_repo == tmp_path
    assert location.submodule_dir == "contracts/kv"


def test_unrecognized_git_file_is_not_present(tmp_path: Path) -> None:
    (tmp_path / ".git").write_text("something else\n", encoding="utf-8")

    location = resolve_git_location(tmp_path)

    assert location.present is False
    assert location.is_submodule is False


def test_missing_git_entry_is_not_present(tmp_path: Path) -> None:
    location = resolve_git_location(tmp_path)

    assert location.present is False
    assert location.as_dict()["present"] is False


def test_require_git_location_raises_when_absent(tmp_path: Path) -> None:
    with pytest.raises(GitDirNotFound) as exc_info:
        require_git_location(tmp_path)
    assert str(exc_info.value).startswith("E_GIT_DIR_NOT_FOUND:")


def test_fetch_runs_git_against_resolved_git_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".git").mkdir()
    location = resolve_git_location(tmp_path)
    calls: list[tuple[str, list[str], Path]] = []

    def fake_run(name, command, cwd, env=None, policy=None):
        calls.append((name, command, cwd))
        return ExecResult(name=name, command=command, returncode=0, stdout="", stderr="")

    monkeypatch.setattr(gitdir, "run_command", fake_run)
    fetch(location, "upstream")

    assert calls == [
        ("git_fetch", ["git", "--git-dir", str(location.path), "fetch", "upstream"], location.root_repo)
    ]


def test_fetch_failure_raises_with_remote(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".git").mkdir()
    location = resolve_git_location(tmp_path)

    def fake_run(name, command, cwd, env=None, policy=None):
        return ExecResult(name=name, command=command, returncode=128, stdout="", stderr="fatal: no remote")

    monkeypatch.setattr(gitdir, "run_command", fake_run)
    with pytest.raises(FetchFailed) as exc_info:
        fetch(location, "origin")
    assert exc_info.value.remote == "origin"
    assert "fatal: no remote" in str(exc_info.value)


def test_unreadable_git_file_is_not_present(tmp_path: Path) -> None:
    (tmp_path / ".git").write_text("gitdir: ../.git/modules/kv\n", encoding="utf-8")

    with patch.object(Path, "read_text", side_effect=PermissionError("denied")):
        location = resolve_git_location(tmp_path)

    assert location.present is False
    assert location.path == tmp_path.resolve() / ".git"
