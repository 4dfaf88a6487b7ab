#!/usr/bin/env python3
"""Build driver executed inside the build container (or on the host in raw mode).

    python3 build_driver.py phase1 <revision> [crate ...]

Prepares the source tree (the mounted working tree for HEAD, an isolated
clone for any other revision), compiles the crates with one cargo invocation,
optimizes each into OUTPUT/<crate>@<revision>.wasm, writes a .sha256 sidecar
and hands ownership to BUILD_UID:BUILD_GID. Standard library only: this file
is mounted into an image that does not have crateforge installed.
"""
from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import time
from pathlib import Path

PLATFORM = "wasm32-unknown-unknown"
HEAD = "HEAD"


def env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def flag(key: str) -> bool:
    return env(key, "false").strip().lower() in ("1", "true", "yes", "on")


def sanitize(ref: str) -> str:
    return ref.replace("/", "_")


def fumigate(crate: str) -> str:
    """Cargo names the output file after the crate with dashes turned into underscores."""
    return crate.replace("-", "_")


def log(*args: object) -> None:
    print("#", *args, flush=True)


class Driver:
    def __init__(self, revision: str, crates: list[str]) -> None:
        self.revision = revision or HEAD
        self.crates = crates
        self.verbose = flag("VERBOSE")
        self.no_fetch = flag("NO_FETCH")
        self.output = Path(env("OUTPUT", "/output"))
        self.src_subdir = env("SRC_SUBDIR", ".") or "."
        self.git_root = Path(env("GIT_ROOT", "/src/.git"))
        self.git_subdir = env("GIT_SUBDIR")
        self.git_remote = env("GIT_REMOTE", "origin")
        self.tmp_git = Path(env("TMP_GIT", "/tmp/git"))
        self.tmp_build = Path(env("TMP_BUILD", "/tmp/crateforge-build")) / sanitize(self.revision)
        self.tmp_target = Path(env("TMP_TARGET", "/tmp/target"))
        self.registry = env("REGISTRY", "/usr/local/cargo/registry")
        self.toolchain = env("TOOLCHAIN")
        self.locked = env("LOCKED")
        self.uid = env("BUILD_UID", "1000")
        self.gid = env("BUILD_GID", "1000")

    def run(self, argv: list[str], extra_env: dict[str, str] | None = None, cwd: Path | None = None) -> None:
        if self.verbose:
            print("$", " ".join(argv), flush=True)
        subprocess.run(argv, check=True, cwd=cwd, env={**os.environ, **(extra_env or {})})

    def call(self, argv: list[str], extra_env: dict[str, str] | None = None) -> str:
        print("$", " ".join(argv), flush=True)
        out = subprocess.run(
            argv, check=True, capture_output=True, text=True, env={**os.environ, **(extra_env or {})}
        ).stdout.strip()
        print(">", out, flush=True)
        return out

    def phase1(self) -> None:
        log("Build phase 1: preparing source for", self.revision)
        self.setup_toolchain()
        self.report_context()
        self.prepare_context()
        workdir = self.prepare_source()
        self.build_crates(workdir)

    def setup_toolchain(self) -> None:
        if self.toolchain:
            self.run(["rustup", "default", self.toolchain])
            self.run(["rustup", "target", "add", PLATFORM])
        self.run(["rustup", "show", "active-toolchain"])

    def report_context(self) -> None:
        for tool in (["cargo", "--version"], ["rustc", "--version"], ["wasm-opt", "--version"]):
            self.run(tool)
        if self.verbose:
            self.run(["pwd"])
            self.run(["ls", "-al"])

    def prepare_context(self) -> None:
        # The registry lives in a named volume; keep it writable for non-root users.
        old = os.umask(0o000)
        try:
            self.tmp_target.mkdir(parents=True, exist_ok=True)
            if self.revision != HEAD:
                self.tmp_build.mkdir(parents=True, exist_ok=True)
            if self.registry:
                Path(self.registry).mkdir(parents=True, exist_ok=True)
        finally:
            os.umask(old)

    def workspace(self) -> Path:
        return (Path.cwd() / self.src_subdir).resolve()

    def workspace_in_checkout(self) -> str:
        """Workspace location relative to the working tree of the repository being cloned."""
        tree = self.git_root.parent
        if self.git_subdir:
            tree = tree / self.git_subdir
        return os.path.relpath(self.workspace(), tree.resolve())

    def prepare_source(self) -> Path:
        self.run(["git", "--version"])
        if self.revision == HEAD:
            log("Building from working tree.")
            return self.workspace()
        checkout = self.prepare_history()
        return (checkout / self.workspace_in_checkout()).resolve()

    def git_dir(self, root: Path) -> Path:
        if self.git_subdir:
            return root / "modules" / self.git_subdir
        return root

    def prepare_history(self) -> Path:
        log("Building from checkout of", self.revision)
        # The git store may be read-only and may point at a worktree that does not
        # exist in here, so work on a copy of it.
        started = time.monotonic()
        shutil.copytree(self.git_root, self.tmp_git, symlinks=True, dirs_exist_ok=True)
        log(f"copied git store in {int((time.monotonic() - started) * 1000)}ms")
        git_dir = self.git_dir(self.tmp_git)
        config_path = git_dir / "config"
        if config_path.is_file():
            text = config_path.read_text(encoding="utf-8")
            config_path.write_text(re.sub(r"\s+worktree\s*=.*", "", text), encoding="utf-8")
        git_env = {"GIT_DIR": str(git_dir)}
        ref = self.revision
        probe = subprocess.run(["git", "show-ref", "--verify", "--quiet", f"refs/heads/{ref}"], env={**os.environ, **git_env})
        if probe.returncode != 0:
            if self.no_fetch:
                print(f"{ref} is not checked out or fetched. Run 'git fetch' to update.", file=sys.stderr)
                raise SystemExit(1)
            log(f"{ref} is not checked out. Creating branch ref from {self.git_remote}/{ref}.")
            try:
                self.run(["git", "fetch", self.git_remote, "--recurse-submodules", ref], git_env)
            except subprocess.CalledProcessError as exc:
                print(f"{ref}: failed to fetch: {exc}", file=sys.stderr)
            shown = self.call(["git", "show-ref", "--verify", f"refs/remotes/{self.git_remote}/{ref}"], git_env)
            ref_path = git_dir / "refs" / "heads" / ref
            ref_path.parent.mkdir(parents=True, exist_ok=True)
            ref_path.write_text(shown.split(" ")[0] + "\n", encoding="utf-8")
        if self.tmp_build.exists():
            shutil.rmtree(self.tmp_build)
        self.run(["git", "clone", "--recursive", "-b", ref, str(git_dir), str(self.tmp_build)])
        self.run(["git", "log", "-1"], cwd=self.tmp_build)
        log("Populating Git submodules...")
        self.run(["git", "submodule", "update", "--init", "--recursive"], cwd=self.tmp_build)
        return self.tmp_build

    def build_crates(self, workdir: Path) -> None:
        if not self.crates:
            log("No crates to build.")
            return
        log("Building in:", workdir)
        log("Building these crates:", " ".join(self.crates))
        argv = ["cargo", "build"]
        for crate in self.crates:
            argv += ["-p", crate]
        argv += ["--release", "--target", PLATFORM]
        if self.locked:
            argv.append(self.locked)
        if self.verbose:
            argv.append("--verbose")
        self.run(argv, {"CARGO_TARGET_DIR": str(self.tmp_target), "PLATFORM": PLATFORM}, cwd=workdir)
        self.output.mkdir(parents=True, exist_ok=True)
        release_dir = self.tmp_target / PLATFORM / "release"
        for crate in self.crates:
            compiled = release_dir / f"{fumigate(crate)}.wasm"
            optimized = self.output / f"{crate}@{sanitize(self.revision)}.wasm"
            checksum = optimized.with_name(optimized.name + ".sha256")
            log(f"Optimizing {compiled} into {optimized}...")
            self.run(["wasm-opt", "-g", "-Oz", "--strip-dwarf", str(compiled), "-o", str(optimized)])
            digest = self.call(["sha256sum", "-b", str(optimized)])
            checksum.write_text(digest + "\n", encoding="utf-8")
            for path in (optimized, checksum):
                self.chown(path)
            log(f"Permissions set to: {self.uid}:{self.gid}")

    def chown(self, path: Path) -> None:
        try:
            os.chown(path, int(self.uid), int(self.gid))
        except PermissionError:
            # Raw builds run as the invoking user already.
            pass


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] != "phase1":
        print("usage: build_driver.py phase1 <revision> [crate ...]", file=sys.stderr)
        return 2
    revision = args[1] if len(args) > 1 else HEAD
    try:
        Driver(revision, args[2:]).phase1()
    except subprocess.CalledProcessError as exc:
        print(f"command failed with code {exc.returncode}: {exc.cmd}", file=sys.stderr)
        return exc.returncode or 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
