from __future__ import annotations

import atexit
import logging
import os
import secrets
import sys
import threading
from pathlib import Path, PurePosixPath
from typing import Iterable

from .artifacts import HEAD, CompiledArtifact, artifact_path, sanitize
from .batching import BuildBatch
from .cargo import path_dependencies
from .config import BuildConfig
from .engine import ContainerEngine, ContainerRunSpec
from .errors import (
    BuildExitNonZero,
    BuildScriptMissing,
    ConfigError,
    CrateforgeError,
    FetchFailed,
)
from .gitdir import fetch, require_git_location
from .logsink import LineLogSink
from .redaction import load_redaction_patterns
from .util import ensure_dir, log_event, redact_text, setup_json_logger, short_path

_LOG = setup_json_logger("crateforge.executor")
_BUILD_LOG = setup_json_logger("crateforge.build")

SRC_MOUNT = "/src"
OUTPUT_MOUNT = "/output"
CARGO_HOME = "/usr/local/cargo"
SSH_AGENT_MOUNT = "/ssh_agent_socket"


def common_mount_root(paths: Iterable[Path]) -> Path:
    """Deepest directory containing every path, compared by whole segments."""
    ordered = sorted(Path(p).resolve() for p in paths)
    if not ordered:
        raise ValueError("no paths to mount")
    first, last = ordered[0].parts, ordered[-1].parts
    common: list[str] = []
    for a, b in zip(first, last):
        if a != b:
            break
        common.append(a)
    return Path(*common) if common else Path(ordered[0].anchor or os.sep)


class ContainerReaper:
    """Kills build containers that are still running when the process goes down."""

    def __init__(self) -> None:
        self._active: dict[str, ContainerEngine] = {}
        self._lock = threading.Lock()
        self._installed = False

    def install(self) -> None:
        if self._installed:
            return
        self._installed = True
        atexit.register(self.reap)
        previous = sys.excepthook

        def _hook(exc_type, exc, tb):
            self.reap()
            previous(exc_type, exc, tb)

        sys.excepthook = _hook

    def register(self, engine: ContainerEngine, container_id: str) -> None:
        self.install()
        with self._lock:
            self._active[container_id] = engine

    def unregister(self, container_id: str) -> None:
        with self._lock:
            self._active.pop(container_id, None)

    @property
    def active(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def reap(self) -> None:
        with self._lock:
            pending = list(self._active.items())
            self._active.clear()
        for container_id, engine in pending:
            log_event(_LOG, "executor.reap.kill", id=container_id)
            try:
                engine.kill(container_id)
                engine.remove(container_id)
            except CrateforgeError as exc:
                log_event(_LOG, "executor.reap.failure", level=logging.WARNING, id=container_id, error=str(exc))


REAPER = ContainerReaper()


def mounted_at(spec: ContainerRunSpec, inner: str) -> str:
    for mounts in (spec.readonly_mounts, spec.writable_mounts):
        for host, target in mounts.items():
            if target == inner:
                return host
    return ""


class ContainerBuildExecutor:
    """Runs one container per batch and turns its outcome into artifacts."""

    def __init__(
        self,
        config: BuildConfig,
        engine: ContainerEngine,
        *,
        reaper: ContainerReaper = REAPER,
    ) -> None:
        self.config = config
        self.engine = engine
        self.reaper = reaper
        self.redaction_patterns = load_redaction_patterns(config.redaction_policy_path)
        self._image_ready = False

    @property
    def script(self) -> Path:
        if self.config.script is None:
            raise BuildScriptMissing("build script path is not set")
        script = Path(self.config.script)
        if not script.is_file():
            raise BuildScriptMissing(f"build script {script} does not exist")
        return script

    def mount_candidates(self, batch: BuildBatch, git_root: Path | None = None) -> set[Path]:
        paths = {Path(batch.workspace).resolve()}
        paths |= path_dependencies(batch.workspace)
        if git_root is not None:
            paths.add(Path(git_root).resolve())
        return paths

    def _known_hosts(self) -> dict[str, str]:
        mounts: dict[str, str] = {}
        user_known_hosts = Path.home() / ".ssh" / "known_hosts"
        if user_known_hosts.is_file():
            mounts[str(user_known_hosts)] = "/root/.ssh/known_hosts"
        global_known_hosts = Path("/etc/ssh/ssh_known_hosts")
        if global_known_hosts.is_file():
            mounts[str(global_known_hosts)] = "/etc/ssh/ssh_known_hosts"
        return mounts

    def run_spec(
        self,
        batch: BuildBatch,
        mount_root: Path,
        *,
        git_root: Path | None = None,
        git_subdir: str = "",
    ) -> ContainerRunSpec:
        cfg = self.config
        script = self.script
        script_mount = f"/{script.name}"
        revision = batch.revision
        src_subdir = Path(batch.workspace).resolve().relative_to(mount_root).as_posix()

        readonly: dict[str, str] = {str(script.resolve()): script_mount}
        writable: dict[str, str] = {
            str(cfg.output_dir): OUTPUT_MOUNT,
            f"crateforge_cargo_cache_{sanitize(revision)}": CARGO_HOME,
        }
        if cfg.workspace_manifest is not None:
            if revision != HEAD:
                raise ConfigError("workspace_manifest can only be used when building from the working tree")
            writable[str(mount_root)] = SRC_MOUNT
            manifest_mount = PurePosixPath(SRC_MOUNT, src_subdir, "Cargo.toml")
            readonly[str(Path(cfg.workspace_manifest).resolve())] = str(manifest_mount)
        else:
            readonly[str(mount_root)] = SRC_MOUNT
        readonly.update(self._known_hosts())
        if cfg.ssh_auth_sock:
            readonly[cfg.ssh_auth_sock] = SSH_AGENT_MOUNT

        env: dict[str, str] = {
            "GIT_REMOTE": cfg.preferred_remote,
            "GIT_SUBDIR": git_subdir,
            "SRC_SUBDIR": src_subdir,
            "NO_FETCH": str(cfg.no_fetch).lower(),
            "VERBOSE": str(cfg.verbose).lower(),
            "OUTPUT": OUTPUT_MOUNT,
            "TOOLCHAIN": cfg.toolchain,
            "LOCKED": "",
            "CARGO_HTTP_TIMEOUT": str(cfg.cargo_http_timeout),
            "CARGO_NET_GIT_FETCH_WITH_CLI": "true",
            "GIT_PAGER": "cat",
            "GIT_TERMINAL_PROMPT": "0",
        }
        if cfg.build_uid is not None:
            env["BUILD_UID"] = str(cfg.build_uid)
        if cfg.build_gid is not None:
            env["BUILD_GID"] = str(cfg.build_gid)
        if git_root is not None:
            rel = Path(git_root).resolve().relative_to(mount_root).as_posix()
            env["GIT_ROOT"] = str(PurePosixPath(SRC_MOUNT, rel, ".git"))
        if cfg.ssh_auth_sock:
            env["SSH_AUTH_SOCK"] = SSH_AGENT_MOUNT
        if os.environ.get("TERM"):
            env["TERM"] = os.environ["TERM"]

        crates = list(dict.fromkeys(batch.crates))
        return ContainerRunSpec(
            image=cfg.image,
            name=f"crateforge-build-{secrets.token_hex(3)}",
            command=(cfg.container_runtime, script_mount, "phase1", revision, *crates),
            readonly_mounts=readonly,
            writable_mounts=writable,
            env=env,
            workdir=SRC_MOUNT,
        )

    def prepare(self, batch: BuildBatch) -> ContainerRunSpec:
        """Resolve git state and mounts for `batch` and build its run spec."""
        git_root: Path | None = None
        git_subdir = ""
        if batch.revision != HEAD:
            location = require_git_location(batch.workspace)
            git_root = location.root_repo
            git_subdir = location.submodule_dir
            if not self.config.no_fetch:
                remote = self.config.preferred_remote
                try:
                    fetch(location, remote)
                except FetchFailed as exc:
                    log_event(
                        _LOG,
                        "executor.fetch.failure",
                        level=logging.WARNING,
                        remote=remote,
                        error=str(exc),
                        hint="the build may fail or produce an outdated result",
                    )
        mount_root = common_mount_root(self.mount_candidates(batch, git_root))
        return self.run_spec(batch, mount_root, git_root=git_root, git_subdir=git_subdir)

    def _ensure_image(self) -> None:
        if not self._image_ready:
            self.engine.ensure_image(self.config.image, self.config.dockerfile)
            self._image_ready = True

    def run(self, batch: BuildBatch) -> dict[int, CompiledArtifact]:
        """Build every crate of `batch` in one container; results keyed by original index."""
        spec = self.prepare(batch)
        ensure_dir(self.config.output_dir)
        self._ensure_image()

        crates = list(dict.fromkeys(batch.crates))
        log_event(
            _LOG,
            "executor.run.start",
            workspace=short_path(batch.workspace),
            revision=batch.revision,
            crates=crates,
            mount_root=mounted_at(spec, SRC_MOUNT),
            name=spec.name,
        )
        sink = LineLogSink(_BUILD_LOG, revision=batch.revision, quiet=self.config.quiet)
        container_id = self.engine.create(spec)
        self.reaper.register(self.engine, container_id)
        try:
            for chunk in self.engine.start(container_id):
                sink.write(chunk)
            sink.close()
            code = self.engine.wait(container_id)
        finally:
            self.reaper.unregister(container_id)
            try:
                self.engine.remove(container_id)
            except CrateforgeError as exc:
                log_event(_LOG, "executor.remove.failure", level=logging.WARNING, id=container_id, error=str(exc))

        logs = redact_text(sink.text, self.redaction_patterns)
        if code != 0:
            sink.flush()
            log_event(
                _LOG,
                "executor.run.failure",
                level=logging.ERROR,
                crates=crates,
                exit_code=code,
            )
            raise BuildExitNonZero(crates, code, logs)

        results: dict[int, CompiledArtifact] = {}
        for index, crate in batch.members:
            location = artifact_path(self.config.output_dir, crate, batch.revision)
            if not location.is_file():
                raise BuildExitNonZero(
                    crates,
                    code,
                    logs,
                    reason=f"build exited 0 but {location.name} was not produced",
                )
            results[index] = CompiledArtifact.from_path(location)
        log_event(
            _LOG,
            "executor.run.success",
            revision=batch.revision,
            artifacts={a.path.name: a.code_hash for a in results.values()},
        )
        return results
