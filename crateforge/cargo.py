from __future__ import annotations

import os
import sys
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from .errors import ConfigError

MANIFEST = "Cargo.toml"


def load_manifest(crate_dir: Path) -> dict:
    manifest = Path(crate_dir) / MANIFEST
    try:
        return tomllib.loads(manifest.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid {MANIFEST} at {manifest}: {exc}") from exc
    except FileNotFoundError as exc:
        raise ConfigError(f"no {MANIFEST} at {manifest}") from exc


def crate_name(crate_dir: Path) -> str:
    data = load_manifest(crate_dir)
    name = (data.get("package") or {}).get("name")
    if not isinstance(name, str) or not name:
        raise ConfigError(f"{Path(crate_dir) / MANIFEST} has no [package].name")
    return name


def _path_entries(table: dict) -> list[str]:
    out: list[str] = []
    for spec in (table or {}).values():
        if isinstance(spec, dict) and isinstance(spec.get("path"), str):
            out.append(spec["path"])
    return out


def path_dependencies(workspace: Path) -> set[Path]:
    """Absolute roots of every local path dependency declared by the workspace manifest."""
    workspace = Path(workspace).resolve()
    if not (workspace / MANIFEST).is_file():
        return set()
    data = load_manifest(workspace)
    rel_paths = _path_entries(data.get("dependencies") or {})
    rel_paths += _path_entries((data.get("workspace") or {}).get("dependencies") or {})
    return {Path(os.path.normpath(workspace / rel)) for rel in rel_paths}
