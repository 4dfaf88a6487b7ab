"""Grouping build requests by shared compilation context.

Sources that share a workspace and a git revision are compiled in one
container session, so they reuse a single checkout and a warm cargo cache.
Every record carries the index of the source in the caller's list; results
are written back by that index, never by position inside a batch.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Sequence, Union

from .artifacts import HEAD, ArtifactCache, CompiledArtifact
from .cargo import crate_name
from .errors import ConfigError, MissingWorkspace, NoCrateSelected
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("crateforge.batching")


@dataclass(frozen=True)
class SourceSpec:
    crate: str
    workspace: Path | None = None
    revision: str = HEAD
    features: tuple[str, ...] = ()

    def resolved(self, default_workspace: Path | None) -> "SourceSpec":
        """Fill in the default workspace and revision.

        A crate given as a relative path (`contracts/kv`) names a crate
        directory inside the workspace; the crate name is then read from its
        manifest.
        """
        if not self.crate:
            raise NoCrateSelected("source has no crate name")
        if self.features:
            # Artifact names do not encode a feature set.
            raise ConfigError(
                f"cargo features are not supported for crate {self.crate!r}: {', '.join(self.features)}"
            )
        workspace = self.workspace if self.workspace is not None else default_workspace
        if workspace is None:
            raise MissingWorkspace(f"no workspace given for crate {self.crate!r}")
        workspace = Path(workspace).resolve()
        crate = self.crate
        if os.sep in crate or "/" in crate:
            workspace = (workspace / crate).resolve()
            crate = crate_name(workspace)
        return replace(self, crate=crate, workspace=workspace, revision=self.revision or HEAD)


SourceLike = Union[str, SourceSpec]


def as_source(source: SourceLike) -> SourceSpec:
    if isinstance(source, SourceSpec):
        return source
    return SourceSpec(crate=source)


BatchKey = tuple[Path, str]


@dataclass
class BuildBatch:
    workspace: Path
    revision: str
    members: list[tuple[int, str]] = field(default_factory=list)

    @property
    def key(self) -> BatchKey:
        return (self.workspace, self.revision)

    @property
    def crates(self) -> list[str]:
        return [crate for _, crate in self.members]


@dataclass
class BuildPlan:
    sources: list[SourceSpec]
    cached: dict[int, CompiledArtifact]
    batches: dict[BatchKey, BuildBatch]

    @property
    def fully_cached(self) -> bool:
        return not self.batches

    def scatter(
        self, batch_results: Iterable[dict[int, CompiledArtifact]]
    ) -> list[CompiledArtifact]:
        slots: list[CompiledArtifact | None] = [None] * len(self.sources)
        for index, artifact in self.cached.items():
            slots[index] = artifact
        for results in batch_results:
            for index, artifact in results.items():
                if slots[index] is not None:
                    raise RuntimeError(f"already built #{index}")
                slots[index] = artifact
        missing = [i for i, slot in enumerate(slots) if slot is None]
        if missing:
            raise RuntimeError(f"no build result for sources {missing}")
        return [slot for slot in slots if slot is not None]


def partition(
    sources: Sequence[SourceLike],
    *,
    cache: ArtifactCache,
    output_dir: Path,
    default_workspace: Path | None,
) -> BuildPlan:
    resolved: list[SourceSpec] = []
    cached: dict[int, CompiledArtifact] = {}
    batches: dict[BatchKey, BuildBatch] = {}
    for index, raw in enumerate(sources):
        source = as_source(raw).resolved(default_workspace)
        resolved.append(source)
        hit = cache.get(output_dir, source.crate, source.revision)
        if hit is not None:
            log_event(
                _LOG,
                "batch.cache.hit",
                crate=source.crate,
                revision=source.revision,
                code_hash=hit.code_hash,
            )
            cached[index] = hit
            continue
        key = (source.workspace, source.revision)
        batch = batches.get(key)
        if batch is None:
            batch = batches[key] = BuildBatch(workspace=source.workspace, revision=source.revision)
        batch.members.append((index, source.crate))
        log_event(
            _LOG,
            "batch.member.add",
            crate=source.crate,
            workspace=str(source.workspace),
            revision=source.revision,
        )
    log_event(
        _LOG,
        "batch.partition.done",
        sources=len(resolved),
        cached=len(cached),
        batches=len(batches),
    )
    return BuildPlan(sources=resolved, cached=cached, batches=batches)
