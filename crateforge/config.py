from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import jsonschema

from .errors import ConfigError
from .util import read_json

PACKAGE_DIR = Path(__file__).resolve().parent
SCHEMA_PATH = PACKAGE_DIR / "schemas" / "build.config.schema.json"
DEFAULT_SCRIPT = PACKAGE_DIR / "build_driver.py"
DEFAULT_DOCKERFILE = PACKAGE_DIR / "Dockerfile"
DEFAULT_IMAGE = "ghcr.io/crateforge/build:latest"

SENSITIVE_KEY_PATTERN = re.compile(
    r"(?:secret|token|password|passwd|private[_-]?key|api[_-]?key)",
    re.IGNORECASE,
)
ALLOWED_SECRET_VALUE_PATTERN = re.compile(
    r"^(\$\{[A-Z][A-Z0-9_]*\}|sm://[a-zA-Z0-9._/-]+)$"
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"", "0", "false", "no", "off"}


@dataclass(frozen=True)
class BuildConfig:
    workspace: Path | None = None
    output_dir: Path = Path("wasm")
    script: Path | None = DEFAULT_SCRIPT
    runtime: str = sys.executable or "python3"
    container_runtime: str = "python3"
    image: str = DEFAULT_IMAGE
    dockerfile: Path | None = DEFAULT_DOCKERFILE
    engine: str = "docker"
    engine_command: tuple[str, ...] = ()
    raw: bool = False
    caching: bool = True
    verbose: bool = False
    quiet: bool = False
    no_fetch: bool = False
    toolchain: str = ""
    build_uid: int | None = None
    build_gid: int | None = None
    preferred_remote: str = "origin"
    ssh_auth_sock: str | None = None
    workspace_manifest: Path | None = None
    cargo_http_timeout: int = 240
    redaction_policy_path: Path | None = None

    def __post_init__(self) -> None:
        # Host paths are bound into containers, so they must be absolute.
        if self.workspace is not None:
            object.__setattr__(self, "workspace", Path(self.workspace).resolve())
        object.__setattr__(self, "output_dir", Path(self.output_dir).resolve())


# CRATEFORGE_* variable -> (field, kind)
ENV_VARS: dict[str, tuple[str, str]] = {
    "CRATEFORGE_WORKSPACE": ("workspace", "path"),
    "CRATEFORGE_ARTIFACTS": ("output_dir", "path"),
    "CRATEFORGE_BUILD_SCRIPT": ("script", "path"),
    "CRATEFORGE_BUILD_RUNTIME": ("runtime", "str"),
    "CRATEFORGE_BUILD_IMAGE": ("image", "str"),
    "CRATEFORGE_BUILD_DOCKERFILE": ("dockerfile", "path"),
    "CRATEFORGE_ENGINE": ("engine", "str"),
    "CRATEFORGE_BUILD_RAW": ("raw", "flag"),
    "CRATEFORGE_REBUILD": ("caching", "inverted_flag"),
    "CRATEFORGE_BUILD_VERBOSE": ("verbose", "flag"),
    "CRATEFORGE_BUILD_QUIET": ("quiet", "flag"),
    "CRATEFORGE_NO_FETCH": ("no_fetch", "flag"),
    "CRATEFORGE_RUST": ("toolchain", "str"),
    "CRATEFORGE_BUILD_UID": ("build_uid", "int"),
    "CRATEFORGE_BUILD_GID": ("build_gid", "int"),
    "CRATEFORGE_PREFERRED_REMOTE": ("preferred_remote", "str"),
    "SSH_AUTH_SOCK": ("ssh_auth_sock", "str"),
    "CRATEFORGE_BUILD_WORKSPACE_MANIFEST": ("workspace_manifest", "path"),
    "CRATEFORGE_CARGO_HTTP_TIMEOUT": ("cargo_http_timeout", "int"),
    "CRATEFORGE_REDACTION_POLICY": ("redaction_policy_path", "path"),
}

_PATH_FIELDS = {"workspace", "output_dir", "script", "dockerfile", "workspace_manifest", "redaction_policy_path"}


def parse_flag(name: str, value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {value!r}")


def _parse_env_value(name: str, kind: str, value: str) -> Any:
    if kind == "flag":
        return parse_flag(name, value)
    if kind == "inverted_flag":
        return not parse_flag(name, value)
    if kind == "int":
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {value!r}")
    if kind == "path":
        return Path(value) if value else None
    return value


def _assert_no_inline_secrets(node, path: str = "$") -> None:
    if isinstance(node, dict):
        for key in sorted(node.keys()):
            value = node[key]
            current_path = f"{path}.{key}"
            if SENSITIVE_KEY_PATTERN.search(key) and not isinstance(value, (dict, list)):
                if not isinstance(value, str) or not ALLOWED_SECRET_VALUE_PATTERN.fullmatch(
                    value
                ):
                    raise ConfigError(
                        f"inline secret-like value is not allowed at {current_path}; use environment variable or secret-manager binding"
                    )
            _assert_no_inline_secrets(value, current_path)
        return

    if isinstance(node, list):
        for index, value in enumerate(node):
            _assert_no_inline_secrets(value, f"{path}[{index}]")


def _from_file(path: Path) -> dict[str, Any]:
    raw = read_json(path)
    _assert_no_inline_secrets(raw)
    schema = read_json(SCHEMA_PATH)
    try:
        jsonschema.validate(instance=raw, schema=schema)
    except jsonschema.ValidationError as exc:
        raise ConfigError(f"{path}: {exc.message}") from exc

    # Relative paths are resolved against the config file's directory
    base_dir = path.parent.resolve()
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key in _PATH_FIELDS and value is not None:
            p = Path(str(value))
            values[key] = p if p.is_absolute() else (base_dir / p).resolve()
        elif key == "engine_command":
            values[key] = tuple(value)
        else:
            values[key] = value
    return values


def _from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, (field, kind) in ENV_VARS.items():
        if name in environ:
            values[field] = _parse_env_value(name, kind, environ[name])
    return values


def _host_ids() -> dict[str, int]:
    ids: dict[str, int] = {}
    if hasattr(os, "getuid"):
        ids["build_uid"] = os.getuid()
    if hasattr(os, "getgid"):
        ids["build_gid"] = os.getgid()
    return ids


def load_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> BuildConfig:
    """Resolve the build configuration once: defaults < file < environment < overrides."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(BuildConfig)}

    values: dict[str, Any] = dict(_host_ids())
    if path is not None:
        values.update(_from_file(Path(path)))
    values.update(_from_env(environ))
    for key, value in (overrides or {}).items():
        if key not in known:
            raise ConfigError(f"unknown configuration key {key!r}")
        if value is None:
            continue
        if key in _PATH_FIELDS and isinstance(value, str):
            value = Path(value)
        values[key] = value

    cfg = replace(BuildConfig(), **values)
    if cfg.engine not in ("docker", "podman"):
        raise ConfigError(f"engine must be 'docker' or 'podman', got {cfg.engine!r}")
    if cfg.cargo_http_timeout <= 0:
        raise ConfigError("cargo_http_timeout must be positive")
    return cfg
