from __future__ import annotations

from .artifacts import HEAD, ArtifactCache, CompiledArtifact, artifact_name, sanitize
from .batching import BuildBatch, BuildPlan, SourceSpec, partition
from .compiler import Compiler, ContainerizedCompiler, RawCompiler, get_compiler
from .config import BuildConfig, load_config
from .gitdir import GitLocation, resolve_git_location

__all__ = [
    "__version__",
    "HEAD",
    "ArtifactCache",
    "BuildBatch",
    "BuildConfig",
    "BuildPlan",
    "CompiledArtifact",
    "Compiler",
    "ContainerizedCompiler",
    "GitLocation",
    "RawCompiler",
    "SourceSpec",
    "artifact_name",
    "get_compiler",
    "load_config",
    "partition",
    "resolve_git_location",
    "sanitize",
]
__version__ = "0.1.0"
