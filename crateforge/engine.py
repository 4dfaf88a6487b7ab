"""Container engines driven through their command-line clients.

Docker and Podman expose the same verbs (`create`, `start --attach`, `wait`,
`kill`, `rm`, `image inspect`, `pull`, `build`), so one implementation serves
both; the backend is chosen once when the engine is constructed.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Protocol, Sequence

from ._exec import DEFAULT_ENV_POLICY, EnvPolicy, build_env, run_command
from .config import BuildConfig
from .errors import ContainerLaunchError
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("crateforge.engine")

ENGINE_ENV_POLICY = EnvPolicy(
    allowlist_keys=DEFAULT_ENV_POLICY.allowlist_keys
    | {
        "DOCKER_HOST",
        "DOCKER_CONTEXT",
        "DOCKER_CONFIG",
        "DOCKER_CERT_PATH",
        "DOCKER_TLS_VERIFY",
        "CONTAINER_HOST",
        "CONTAINERS_CONF",
        "XDG_RUNTIME_DIR",
    },
    defaults={"LANG": "C.UTF-8", "LC_ALL": "C.UTF-8"},
    required_keys={"PATH"},
)

_GONE_MARKERS = ("no such container", "is not running", "no container with name or id")


@dataclass(frozen=True)
class ContainerRunSpec:
    image: str
    name: str
    command: tuple[str, ...]
    readonly_mounts: dict[str, str] = field(default_factory=dict)
    writable_mounts: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    workdir: str = "/src"
    entrypoint: str = "/usr/bin/env"


class ContainerEngine(Protocol):
    name: str

    def ensure_image(self, image: str, dockerfile: Path | None = None) -> None: ...

    def create(self, spec: ContainerRunSpec) -> str: ...

    def start(self, container_id: str) -> Iterator[str]: ...

    def wait(self, container_id: str) -> int: ...

    def kill(self, container_id: str) -> bool: ...

    def remove(self, container_id: str) -> bool: ...


def create_args(spec: ContainerRunSpec) -> list[str]:
    args = ["create", "--name", spec.name, "--workdir", spec.workdir, "--entrypoint", spec.entrypoint]
    for host, inner in spec.readonly_mounts.items():
        args += ["--volume", f"{host}:{inner}:ro"]
    for host, inner in spec.writable_mounts.items():
        args += ["--volume", f"{host}:{inner}"]
    for key in sorted(spec.env):
        args += ["--env", f"{key}={spec.env[key]}"]
    args.append(spec.image)
    args += list(spec.command)
    return args


class CliContainerEngine:
    name = "cli"
    binary = "docker"

    def __init__(self, command: Sequence[str] = ()) -> None:
        self.command = list(command) if command else [self.binary]

    def _cli(self, verb: str, *args: str):
        return run_command(
            f"{self.name}_{verb}",
            [*self.command, verb, *args],
            Path.cwd(),
            policy=ENGINE_ENV_POLICY,
        )

    def _check(self, res, what: str) -> str:
        if not res.ok:
            raise ContainerLaunchError(
                f"{self.name} {what} failed with code {res.returncode}: {res.stderr.strip()}"
            )
        return res.stdout

    def ensure_image(self, image: str, dockerfile: Path | None = None) -> None:
        if self._cli("image", "inspect", image).ok:
            log_event(_LOG, "engine.image.present", engine=self.name, image=image)
            return
        log_event(_LOG, "engine.image.pull", engine=self.name, image=image)
        pulled = self._cli("pull", image)
        if pulled.ok:
            return
        if dockerfile is None or not dockerfile.is_file():
            raise ContainerLaunchError(
                f"image {image} is unavailable and no Dockerfile was provided: {pulled.stderr.strip()}"
            )
        log_event(_LOG, "engine.image.build", engine=self.name, image=image, dockerfile=str(dockerfile))
        self._check(
            self._cli("build", "--tag", image, "--file", str(dockerfile), str(dockerfile.parent)),
            f"build of {image}",
        )

    def create(self, spec: ContainerRunSpec) -> str:
        out = self._check(self._cli(*create_args(spec)), f"create of {spec.name}")
        container_id = out.strip().splitlines()[-1] if out.strip() else spec.name
        log_event(_LOG, "engine.container.created", engine=self.name, name=spec.name, id=container_id)
        return container_id

    def start(self, container_id: str) -> Iterator[str]:
        try:
            proc = subprocess.Popen(
                [*self.command, "start", "--attach", container_id],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=build_env(policy=ENGINE_ENV_POLICY),
            )
        except OSError as exc:
            raise ContainerLaunchError(f"{self.name} start of {container_id} failed: {exc}") from exc
        return self._stream(proc)

    @staticmethod
    def _stream(proc: subprocess.Popen) -> Iterator[str]:
        assert proc.stdout is not None
        try:
            for line in proc.stdout:
                yield line
        finally:
            proc.stdout.close()
            proc.wait()

    def wait(self, container_id: str) -> int:
        out = self._check(self._cli("wait", container_id), f"wait on {container_id}")
        try:
            return int(out.strip().splitlines()[-1])
        except (IndexError, ValueError):
            raise ContainerLaunchError(f"{self.name} wait returned no exit code: {out!r}")

    def _signal(self, verb: str, *args: str) -> bool:
        res = self._cli(verb, *args)
        if res.ok:
            return True
        if any(marker in res.stderr.lower() for marker in _GONE_MARKERS):
            return False
        raise ContainerLaunchError(f"{self.name} {verb} failed with code {res.returncode}: {res.stderr.strip()}")

    def kill(self, container_id: str) -> bool:
        return self._signal("kill", container_id)

    def remove(self, container_id: str) -> bool:
        return self._signal("rm", "--force", container_id)


class DockerEngine(CliContainerEngine):
    name = "docker"
    binary = "docker"


class PodmanEngine(CliContainerEngine):
    name = "podman"
    binary = "podman"


def get_engine(config: BuildConfig) -> CliContainerEngine:
    cls = PodmanEngine if config.engine == "podman" else DockerEngine
    return cls(config.engine_command)
