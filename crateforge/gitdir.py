"""Locating the real git data directory of a workspace.

In a standalone repository this is `<workspace>/.git/`. When the workspace is
a submodule, `.git` is a file containing e.g. `gitdir: ../.git/modules/kv`,
pointing into the parent repository's module store.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from ._exec import run_command
from .errors import FetchFailed, GitDirNotFound
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("crateforge.gitdir")

GITDIR_PREFIX = "gitdir:"
MODULES_PREFIX = "modules" + os.sep

# Matches "/.git" or "/.git/"
ROOT_REPO_RE = re.compile(re.escape(os.sep) + r"\.git" + re.escape(os.sep) + "?")


@dataclass(frozen=True)
class GitLocation:
    path: Path
    present: bool
    is_submodule: bool = False

    @property
    def root_repo(self) -> Path:
        return Path(_split_git_path(self.path)[0])

    @property
    def submodule_dir(self) -> str:
        if not self.is_submodule:
            return ""
        rest = _split_git_path(self.path)[1]
        if rest.startswith(MODULES_PREFIX):
            rest = rest[len(MODULES_PREFIX) :]
        return rest.rstrip(os.sep)

    def as_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "present": self.present,
            "is_submodule": self.is_submodule,
            "root_repo": str(self.root_repo),
            "submodule_dir": self.submodule_dir,
        }


def _split_git_path(path: Path) -> tuple[str, str]:
    parts = ROOT_REPO_RE.split(str(path), maxsplit=1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def resolve_git_location(base: Path) -> GitLocation:
    """Inspect `<base>/.git`. Never raises for a missing or unreadable entry."""
    base = Path(base).resolve()
    dot_git = base / ".git"
    if dot_git.is_dir():
        return GitLocation(path=dot_git, present=True)
    if dot_git.is_file():
        try:
            pointer = dot_git.read_text(encoding="utf-8", errors="replace").strip()
        except OSError as exc:
            log_event(_LOG, "gitdir.unreadable", level=logging.WARNING, path=str(dot_git), error=str(exc))
            return GitLocation(path=dot_git, present=False)
        if pointer.startswith(GITDIR_PREFIX):
            target = pointer[len(GITDIR_PREFIX) :].strip()
            real = Path(os.path.normpath(base / target))
            log_event(_LOG, "gitdir.submodule", path=str(dot_git), gitdir=str(real))
            return GitLocation(path=real, present=True, is_submodule=True)
        log_event(_LOG, "gitdir.unknown_file", level=logging.WARNING, path=str(dot_git))
        return GitLocation(path=dot_git, present=False)
    if dot_git.exists():
        log_event(_LOG, "gitdir.not_file_or_dir", level=logging.WARNING, path=str(dot_git))
    else:
        log_event(_LOG, "gitdir.missing", level=logging.WARNING, path=str(dot_git))
    return GitLocation(path=dot_git, present=False)


def require_git_location(base: Path) -> GitLocation:
    location = resolve_git_location(base)
    if not location.present:
        raise GitDirNotFound(
            f"no usable .git found at {location.path}; cannot build from history"
        )
    return location


def fetch(location: GitLocation, remote: str) -> None:
    res = run_command(
        "git_fetch",
        ["git", "--git-dir", str(location.path), "fetch", remote],
        location.root_repo,
    )
    if not res.ok:
        raise FetchFailed(remote, res.stderr)
    log_event(_LOG, "gitdir.fetch.success", remote=remote, path=str(location.path))
