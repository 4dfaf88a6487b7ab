from __future__ import annotations

from pathlib import Path

import pytest

from crateforge.artifacts import ArtifactCache, CompiledArtifact
from crateforge.batching import SourceSpec, partition
from crateforge.errors import ConfigError, MissingWorkspace, NoCrateSelected


def _plan(sources, tmp_path: Path, workspace: Path, cache: ArtifactCache | None = None):
    return partition(
        sources,
        cache=cache or ArtifactCache(),
        output_dir=tmp_path / "out",
        default_workspace=workspace,
    )


def test_sources_group_by_workspace_and_revision(tmp_path: Path, workspace: Path) -> None:
    other = tmp_path / "other"
    other.mkdir()
    plan = _plan(
        [
            SourceSpec("kv"),
            SourceSpec("counter"),
            SourceSpec("kv", revision="v1"),
            SourceSpec("kv", workspace=other),
        ],
        tmp_path,
        workspace,
    )

    assert len(plan.batches) == 3
    head = plan.batches[(workspace.resolve(), "HEAD")]
    assert head.members == [(0, "kv"), (1, "counter")]
    assert plan.batches[(workspace.resolve(), "v1")].members == [(2, "kv")]
    assert plan.batches[(other.resolve(), "HEAD")].members == [(3, "kv")]


def test_batches_keep_first_seen_order(tmp_path: Path, workspace: Path) -> None:
    plan = _plan([SourceSpec("kv", revision="v2"), "counter", SourceSpec("kv", revision="v1")], tmp_path, workspace)

    assert [key[1] for key in plan.batches] == ["v2", "HEAD", "v1"]


def test_crate_paths_resolve_to_crate_directories(tmp_path: Path, workspace: Path) -> None:
    plan = _plan(["contracts/kv"], tmp_path, workspace)

    (batch,) = plan.batches.values()
    assert batch.workspace == (workspace / "contracts" / "kv").resolve()
    assert batch.crates == ["kv"]


def test_cached_sources_are_not_batched(tmp_path: Path, workspace: Path) -> None:
    out = tmp_path / "out"
    out.mkdir()
    (out / "kv@HEAD.wasm").write_bytes(b"cached")

    plan = _plan(["kv", "counter"], tmp_path, workspace)

    assert set(plan.cached) == {0}
    (batch,) = plan.batches.values()
    assert batch.members == [(1, "counter")]
    assert not plan.fully_cached


def test_scatter_restores_input_order(tmp_path: Path, workspace: Path) -> None:
    out = tmp_path / "out"
    out.mkdir()
    (out / "counter@HEAD.wasm").write_bytes(b"cached")
    plan = _plan(["kv", "counter", SourceSpec("kv", revision="v1")], tmp_path, workspace)
    built_head = CompiledArtifact("file:///kv@HEAD.wasm", "aa")
    built_v1 = CompiledArtifact("file:///kv@v1.wasm", "bb")

    results = plan.scatter([{2: built_v1}, {0: built_head}])

    assert results[0] is built_head
    assert results[1].code_path.endswith("counter@HEAD.wasm")
    assert results[2] is built_v1


def test_scatter_rejects_double_write(tmp_path: Path, workspace: Path) -> None:
    plan = _plan(["kv"], tmp_path, workspace)
    artifact = CompiledArtifact("file:///kv@HEAD.wasm", "aa")

    with pytest.raises(RuntimeError, match="already built #0"):
        plan.scatter([{0: artifact}, {0: artifact}])


def test_scatter_rejects_missing_results(tmp_path: Path, workspace: Path) -> None:
    plan = _plan(["kv", "counter"], tmp_path, workspace)

    with pytest.raises(RuntimeError, match="no build result"):
        plan.scatter([{0: CompiledArtifact("file:///kv@HEAD.wasm", "aa")}])


def test_missing_workspace_and_crate_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(MissingWorkspace):
        _plan(["kv"], tmp_path, None)
    with pytest.raises(NoCrateSelected):
        _plan([SourceSpec("")], tmp_path, tmp_path)


def test_cargo_features_are_rejected(tmp_path: Path, workspace: Path) -> None:
    with pytest.raises(ConfigError, match="cargo features are not supported"):
        _plan([SourceSpec("kv", features=("x",))], tmp_path, workspace)


def test_crate_path_without_manifest_is_a_config_error(tmp_path: Path, workspace: Path) -> None:
    with pytest.raises(ConfigError, match="no Cargo.toml"):
        _plan(["contracts/missing"], tmp_path, workspace)
