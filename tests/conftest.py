from __future__ import annotations

import hashlib
import json
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PRODUCT_MODULE_PREFIXES = ("crateforge",)


def _canonical_env_hash(env: dict[str, str]) -> str:
    payload = json.dumps(sorted(env.items()), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@pytest.fixture(autouse=True)
def isolate_runtime_state() -> Iterator[None]:
    modules_before = set(sys.modules.keys())
    environ_before = dict(os.environ)
    environ_before_hash = _canonical_env_hash(environ_before)

    yield

    post_modules = set(sys.modules.keys())
    new_modules = post_modules - modules_before
    for module_name in new_modules:
        if module_name.startswith(PRODUCT_MODULE_PREFIXES):
            sys.modules.pop(module_name, None)

    post_env = dict(os.environ)
    for key in list(post_env.keys()):
        if key not in environ_before:
            os.environ.pop(key, None)
    for key, value in environ_before.items():
        os.environ[key] = value

    assert _canonical_env_hash(dict(os.environ)) == environ_before_hash


def write_manifest(crate_dir: Path, name: str, body: str = "") -> Path:
    crate_dir.mkdir(parents=True, exist_ok=True)
    manifest = crate_dir / "Cargo.toml"
    manifest.write_text(f'[package]\nname = "{name}"\nversion = "0.1.0"\n{body}', encoding="utf-8")
    return manifest


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / ".git").mkdir()
    (ws / "Cargo.toml").write_text('[workspace]\nmembers = ["contracts/*"]\n', encoding="utf-8")
    write_manifest(ws / "contracts" / "kv", "kv")
    write_manifest(ws / "contracts" / "counter", "counter")
    return ws


@pytest.fixture
def build_script(tmp_path: Path) -> Path:
    script = tmp_path / "driver" / "build_driver.py"
    script.parent.mkdir()
    script.write_text("# test driver\n", encoding="utf-8")
    return script
