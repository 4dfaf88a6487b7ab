from __future__ import annotations

from typing import Sequence


class CrateforgeError(RuntimeError):
    """Base class; `code` is a stable identifier that also prefixes the message."""

    code = "E_CRATEFORGE"

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.code}: {message}")
        self.detail = message


class ConfigError(CrateforgeError, ValueError):
    code = "E_CONFIG_INVALID"


class MissingWorkspace(ConfigError):
    code = "E_MISSING_WORKSPACE"


class NoCrateSelected(ConfigError):
    code = "E_NO_CRATE_SELECTED"


class BuildScriptMissing(ConfigError):
    code = "E_BUILD_SCRIPT_MISSING"


class GitDirNotFound(CrateforgeError):
    code = "E_GIT_DIR_NOT_FOUND"


class FetchFailed(CrateforgeError):
    code = "E_FETCH_FAILED"

    def __init__(self, remote: str, stderr: str = "") -> None:
        message = f"git fetch from remote {remote!r} failed"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)
        self.remote = remote


class ContainerLaunchError(CrateforgeError):
    code = "E_CONTAINER_LAUNCH"


class BuildExitNonZero(CrateforgeError):
    code = "E_BUILD_EXIT_NONZERO"

    def __init__(
        self,
        crates: Sequence[str],
        exit_code: int,
        logs: str = "",
        *,
        reason: str | None = None,
    ) -> None:
        crate_list = " ".join(crates)
        message = reason or f'build of crates "{crate_list}" exited with status {exit_code}'
        super().__init__(message)
        self.crates = list(crates)
        self.exit_code = exit_code
        self.logs = logs


BuildFailed = BuildExitNonZero
