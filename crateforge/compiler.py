"""Public entry points: containerized and raw (host toolchain) compilers.

Both strategies name artifacts the same way and consult the same
`ArtifactCache` before doing any work, so callers need not know which one is
active.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from .artifacts import HEAD, ArtifactCache, CompiledArtifact, artifact_path
from .batching import SourceLike, as_source, partition
from .config import BuildConfig
from .engine import ContainerEngine, get_engine
from .errors import BuildExitNonZero, BuildScriptMissing
from .executor import ContainerBuildExecutor
from .gitdir import require_git_location
from .util import ensure_dir, log_event, setup_json_logger, short_path

_LOG = setup_json_logger("crateforge.compiler")


class Compiler(Protocol):
    config: BuildConfig

    def build(self, source: SourceLike) -> CompiledArtifact: ...

    def build_many(self, sources: Sequence[SourceLike]) -> list[CompiledArtifact]: ...


class ContainerizedCompiler:
    """Groups sources by (workspace, revision) and builds each group in one container."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        engine: ContainerEngine | None = None,
        executor: ContainerBuildExecutor | None = None,
    ) -> None:
        self.config = config
        self.cache = ArtifactCache(enabled=config.caching)
        self.executor = executor or ContainerBuildExecutor(config, engine or get_engine(config))

    def build(self, source: SourceLike) -> CompiledArtifact:
        return self.build_many([source])[0]

    def build_many(self, sources: Sequence[SourceLike]) -> list[CompiledArtifact]:
        plan = partition(
            sources,
            cache=self.cache,
            output_dir=self.config.output_dir,
            default_workspace=self.config.workspace,
        )
        if plan.fully_cached:
            log_event(_LOG, "compiler.fully_cached", sources=len(plan.sources))
            return plan.scatter([])
        # Batches run one after another; a failure aborts the remaining ones.
        results = [self.executor.run(batch) for batch in plan.batches.values()]
        return plan.scatter(results)


Runner = Callable[..., subprocess.CompletedProcess]


class RawCompiler:
    """Runs the build driver directly on the host, one subprocess per source."""

    def __init__(self, config: BuildConfig, *, runner: Runner = subprocess.run) -> None:
        self.config = config
        self.cache = ArtifactCache(enabled=config.caching)
        self.runner = runner

    def build_many(self, sources: Sequence[SourceLike]) -> list[CompiledArtifact]:
        return [self.build(source) for source in sources]

    def build(self, source: SourceLike) -> CompiledArtifact:
        spec = as_source(source).resolved(self.config.workspace)
        cached = self.cache.get(self.config.output_dir, spec.crate, spec.revision)
        if cached is not None:
            log_event(_LOG, "compiler.raw.cache.hit", crate=spec.crate, revision=spec.revision)
            return cached

        script = self.config.script
        if script is None or not Path(script).is_file():
            raise BuildScriptMissing(f"build script {script} is not available")
        ensure_dir(self.config.output_dir)

        env = self._base_env()
        temp_dirs: list[Path] = []
        try:
            tmp_target = Path(tempfile.mkdtemp(prefix="crateforge-target-"))
            temp_dirs.append(tmp_target)
            env["TMP_TARGET"] = str(tmp_target)
            if spec.revision != HEAD:
                location = require_git_location(spec.workspace)
                tmp_git = Path(tempfile.mkdtemp(prefix="crateforge-git-"))
                tmp_build = Path(tempfile.mkdtemp(prefix="crateforge-build-"))
                temp_dirs += [tmp_git, tmp_build]
                env.update(
                    {
                        "GIT_ROOT": str(location.root_repo / ".git"),
                        "GIT_SUBDIR": location.submodule_dir,
                        "NO_FETCH": str(self.config.no_fetch).lower(),
                        "GIT_REMOTE": self.config.preferred_remote,
                        "TMP_GIT": str(tmp_git),
                        "TMP_BUILD": str(tmp_build),
                    }
                )
            self._run(spec.crate, spec.workspace, spec.revision, env)
        finally:
            for tmp in temp_dirs:
                shutil.rmtree(tmp, ignore_errors=True)

        location = artifact_path(self.config.output_dir, spec.crate, spec.revision)
        if not location.is_file():
            raise BuildExitNonZero(
                [spec.crate], 0, reason=f"build exited 0 but {location.name} was not produced"
            )
        artifact = CompiledArtifact.from_path(location)
        log_event(
            _LOG,
            "compiler.raw.built",
            crate=spec.crate,
            path=short_path(location),
            code_hash=artifact.code_hash,
        )
        return artifact

    def _base_env(self) -> dict[str, str]:
        cfg = self.config
        env = {
            "OUTPUT": str(cfg.output_dir),
            "TOOLCHAIN": cfg.toolchain,
            "VERBOSE": str(cfg.verbose).lower(),
            "REGISTRY": "",
        }
        if cfg.build_uid is not None:
            env["BUILD_UID"] = str(cfg.build_uid)
        if cfg.build_gid is not None:
            env["BUILD_GID"] = str(cfg.build_gid)
        return env

    def _run(self, crate: str, workspace: Path, revision: str, env: Mapping[str, str]) -> None:
        argv = [self.config.runtime, str(self.config.script), "phase1", revision, crate]
        log_event(_LOG, "compiler.raw.start", crate=crate, workspace=short_path(workspace), revision=revision)
        proc = self.runner(argv, cwd=str(workspace), env={**os.environ, **env}, check=False)
        code = int(proc.returncode)
        if code == 0:
            return
        build = f"build of {crate} from {short_path(workspace)} @ {revision}"
        if code < 0:
            reason = f"{build} exited by signal {-code}"
        else:
            reason = f"{build} exited with code {code}"
        log_event(_LOG, "compiler.raw.failure", level=logging.ERROR, crate=crate, exit_code=code)
        raise BuildExitNonZero([crate], code, reason=reason)


def get_compiler(config: BuildConfig, **options) -> Compiler:
    if config.raw:
        return RawCompiler(config, **options)
    return ContainerizedCompiler(config, **options)
