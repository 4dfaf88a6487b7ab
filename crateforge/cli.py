from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .batching import SourceSpec
from .compiler import get_compiler
from .config import load_config
from .errors import BuildExitNonZero, ConfigError, CrateforgeError
from .gitdir import resolve_git_location
from .util import (
    MetricsEmitter,
    generate_request_id,
    get_request_id,
    log_event,
    set_request_id,
    setup_json_logger,
)

_LOG = setup_json_logger("crateforge.cli")

EXIT_OK = 0
EXIT_BUILD_FAILED = 3
EXIT_CONFIG = 4


def _normalize_global_flags(argv: list[str]) -> list[str]:
    """Allow global flags after the subcommand.

    `crateforge build kv --config X` becomes `crateforge --config X build kv`.
    """
    out = list(argv)
    for flag in ("--config", "--metrics-out", "--request-id"):
        if flag in out:
            i = out.index(flag)
            if i + 1 < len(out):
                val = out[i + 1]
                del out[i : i + 2]
                out = [flag, val, *out]
    return out


def _render_table(rows: list[dict[str, str]], console: Console) -> None:
    table = Table(title="Compiled artifacts")
    table.add_column("Crate", style="cyan")
    table.add_column("Revision")
    table.add_column("Path")
    table.add_column("SHA-256", style="green")
    for row in rows:
        table.add_row(row["crate"], row["revision"], row["code_path"], row["code_hash"])
    console.print(table)


def cmd_build(
    config_path: Path | None,
    crates: list[str],
    *,
    workspace: str | None,
    revision: str,
    raw: bool,
    rebuild: bool,
    output_format: str,
) -> int:
    overrides = {"workspace": workspace, "raw": True if raw else None}
    if rebuild:
        overrides["caching"] = False
    cfg = load_config(config_path, overrides=overrides)
    sources = [SourceSpec(crate=crate, revision=revision) for crate in crates]
    artifacts = get_compiler(cfg).build_many(sources)
    rows = [
        {"crate": crate, "revision": revision, **artifact.as_dict()}
        for crate, artifact in zip(crates, artifacts)
    ]
    if output_format == "table":
        _render_table(rows, Console())
    else:
        print(json.dumps(rows, indent=2, sort_keys=True))
    return EXIT_OK


def cmd_git_info(path: Path) -> int:
    print(json.dumps(resolve_git_location(path).as_dict(), indent=2, sort_keys=True))
    return EXIT_OK


def _guarded(fn):
    """Map library errors onto exit codes; anything else propagates."""

    def _call() -> int:
        try:
            return fn()
        except ConfigError as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_CONFIG
        except BuildExitNonZero as exc:
            print(str(exc), file=sys.stderr)
            if exc.logs:
                print(exc.logs, file=sys.stderr)
            return EXIT_BUILD_FAILED
        except CrateforgeError as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_BUILD_FAILED

    return _call


def _run_command_with_observability(
    *,
    command_name: str,
    fn,
    metrics: MetricsEmitter,
) -> int:
    started = time.perf_counter()
    log_event(_LOG, "cli.command.start", command=command_name)
    try:
        rc = fn()
    except Exception as exc:
        latency_ms = (time.perf_counter() - started) * 1000.0
        log_event(
            _LOG,
            "cli.command.error",
            command=command_name,
            error=str(exc),
            gate_outcome="error",
            latency_ms=round(latency_ms, 3),
        )
        metrics.emit(
            metric="crateforge.command",
            status="error",
            latency_ms=latency_ms,
            gate_outcome="error",
            error=type(exc).__name__,
        )
        raise

    latency_ms = (time.perf_counter() - started) * 1000.0
    gate_outcome = "success" if rc == 0 else "failure"
    status = "success" if rc == 0 else "error"
    log_event(
        _LOG,
        "cli.command.finish",
        command=command_name,
        gate_outcome=gate_outcome,
        latency_ms=round(latency_ms, 3),
        status=status,
    )
    metrics.emit(
        metric="crateforge.command",
        status=status,
        latency_ms=latency_ms,
        gate_outcome=gate_outcome,
        error=(None if rc == 0 else f"exit_code={rc}"),
    )
    return rc


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="crateforge", description="Build Rust contract crates into optimized WASM artifacts."
    )
    p.add_argument("--config", default=None, help="Path to a build.config.json file.")
    p.add_argument(
        "--metrics-out",
        default=".crateforge/metrics.jsonl",
        help="Path to JSONL metrics file emitter output.",
    )
    p.add_argument(
        "--request-id",
        default=None,
        help="Correlation/request identifier for all structured logs and metrics.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    bp = sub.add_parser("build", help="Compile one or more crates.")
    bp.add_argument("crates", nargs="+", help="Crate names or crate directories relative to the workspace.")
    bp.add_argument("--workspace", default=None, help="Cargo workspace root.")
    bp.add_argument("--revision", default="HEAD", help="Git revision to build (default: working tree).")
    bp.add_argument("--raw", action="store_true", help="Use the host toolchain instead of a container.")
    bp.add_argument("--rebuild", action="store_true", help="Ignore previously compiled artifacts.")
    bp.add_argument("--format", dest="output_format", choices=("json", "table"), default="json")

    gp = sub.add_parser("git-info", help="Show where the git data for a workspace lives.")
    gp.add_argument("path", nargs="?", default=".")
    return p


def main(argv: list[str] | None = None) -> None:
    argv = _normalize_global_flags(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    cfg_path = Path(args.config) if args.config else None

    set_request_id(args.request_id or generate_request_id())
    metrics = MetricsEmitter(Path(args.metrics_out))
    log_event(_LOG, "cli.request.context", request_id=get_request_id(), command=args.cmd)

    if args.cmd == "build":
        fn = lambda: cmd_build(  # noqa: E731
            cfg_path,
            args.crates,
            workspace=args.workspace,
            revision=args.revision,
            raw=args.raw,
            rebuild=args.rebuild,
            output_format=args.output_format,
        )
    elif args.cmd == "git-info":
        fn = lambda: cmd_git_info(Path(args.path))  # noqa: E731
    else:
        raise RuntimeError("unreachable")

    rc = _run_command_with_observability(command_name=args.cmd, fn=_guarded(fn), metrics=metrics)
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
