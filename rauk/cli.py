"""rauk CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .aggregate import aggregate_measurements
from .ktest import KTestError, describe_record, load_ktest, load_ktest_dir
from .probe import OpenOCDTransport, ProbeError, ProbeSession, SessionConfig, TransportConfig, TransportError
from .recorder import TraceRecorder, VectorFailure, measure_vectors
from .report import build_report, render_table, write_report
from .rta import analyze_task_set, build_descriptors
from .settings import RaukSettings, SettingsError, load_settings, merge_cli_overrides
from .symbols import SymbolMapError, load_symbol_map
from .trace_format import TraceFormatError, load_measurements, write_measurements

LOG = logging.getLogger("rauk.cli")


def _configure_logging(level: str, log_file: Optional[Path] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if log_file is not None:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rauk", description="Measurement-based WCET and response-time analysis")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("RAUK_LOG"),
        help="Logging level (default INFO, or $RAUK_LOG)",
    )
    parser.add_argument("--log-file", type=Path, help="Also write warnings and errors to this file")
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Directory holding rauk.toml (default: current directory)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    decode = sub.add_parser("decode", help="Print a decoded .ktest test vector")
    decode.add_argument("file", type=Path)
    decode.add_argument("--json", action="store_true", help="Emit JSON")
    decode.add_argument("--byteorder", choices=("little", "big"), help="Integer byte order of the file")

    measure = sub.add_parser("measure", help="Replay test vectors on hardware and record traces")
    measure.add_argument("--symbols", type=Path, required=True, help="Debug-symbol map (JSON)")
    measure.add_argument("--ktests", type=Path, required=True, help="KLEE output directory")
    measure.add_argument("-o", "--output", type=Path, help="Measurement file (default rauk.json)")
    measure.add_argument("--host", help="OpenOCD host")
    measure.add_argument("--port", type=int, help="OpenOCD TCL-RPC port")
    measure.add_argument("--halt-timeout", type=float, help="Seconds to wait for each breakpoint")
    measure.add_argument("--byteorder", choices=("little", "big"), help="Integer byte order of the .ktest files")

    analyze = sub.add_parser("analyze", help="Aggregate traces and run response-time analysis")
    analyze.add_argument("--symbols", type=Path, required=True, help="Debug-symbol map (JSON)")
    analyze.add_argument("--traces", type=Path, required=True, help="Measurement file from 'rauk measure'")
    analyze.add_argument("--json", action="store_true", help="Print the report as JSON")
    analyze.add_argument("-o", "--output", type=Path, help="Write the report document here")
    analyze.add_argument("--clock-hz", type=int, help="Core clock, adds microsecond columns")
    return parser


def _settings_for(args: argparse.Namespace) -> RaukSettings:
    settings = load_settings(args.project_dir)
    return merge_cli_overrides(
        settings,
        log_level=args.log_level,
        log_file=args.log_file,
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        halt_timeout=getattr(args, "halt_timeout", None),
        ktest_byteorder=getattr(args, "byteorder", None),
        clock_hz=getattr(args, "clock_hz", None),
        output=getattr(args, "output", None) if args.command == "measure" else None,
    )


def cmd_decode(args: argparse.Namespace, settings: RaukSettings) -> int:
    record = load_ktest(args.file, byteorder=settings.ktest_byteorder)
    described = describe_record(record)
    if args.json:
        print(json.dumps(described, indent=2))
        return 0
    print(f"ktest file : {described['file']}")
    print(f"format     : {described['format']} v{described['version']}")
    print(f"args       : {described['args']}")
    print(f"objects    : {len(described['objects'])}")
    for idx, obj in enumerate(described["objects"]):
        print(f"  object {idx:4}: name {obj['name']!r} size {obj['size']} data {obj['data']}")
    return 0


def cmd_measure(args: argparse.Namespace, settings: RaukSettings) -> int:
    symbols = load_symbol_map(args.symbols)
    records, bad_files = load_ktest_dir(args.ktests, byteorder=settings.ktest_byteorder)
    for path, exc in bad_files:
        LOG.warning("skipping %s: %s", path, exc)
    if not records:
        LOG.error("no test vectors found in %s", args.ktests)
        return 1

    transport = OpenOCDTransport(
        TransportConfig(host=settings.host, port=settings.port, connect_timeout=settings.connect_timeout)
    )
    endpoint = f"{settings.host}:{settings.port}"
    transport.register_on_connect(lambda state: LOG.info("OpenOCD %s (%s)", state, endpoint))
    transport.register_on_disconnect(
        lambda state: LOG.warning("OpenOCD connection lost (%s); reconnecting on next command", endpoint)
    )
    transport.connect()
    session = ProbeSession(transport, config=SessionConfig(halt_timeout=settings.halt_timeout))
    try:
        session.enable_cycle_counter()
        recorder = TraceRecorder(session, symbols, halt_timeout=settings.halt_timeout)
        run = measure_vectors(recorder, records)
    finally:
        session.close()
    run.failures.extend(
        VectorFailure(vector=path.name, error_type=type(exc).__name__, message=str(exc)) for path, exc in bad_files
    )
    path = write_measurements(settings.output, run)
    print(f"{len(run.traces)} trace(s), {len(run.failures)} failure(s) -> {path}")
    return 0


def cmd_analyze(args: argparse.Namespace, settings: RaukSettings) -> int:
    symbols = load_symbol_map(args.symbols)
    results = load_measurements(args.traces)
    task_names = [task.name for task in symbols.tasks]
    summaries, excluded = aggregate_measurements(results, task_names)
    descriptors = build_descriptors(symbols.tasks, summaries)
    analysis = analyze_task_set(descriptors, not_analyzed=sorted(excluded))
    document = build_report(
        analysis,
        summaries,
        results,
        priorities={task.name: task.priority for task in symbols.tasks},
        aggregation_failures=excluded,
        clock_hz=settings.clock_hz,
    )
    if args.output:
        write_report(args.output, document)
    if args.json:
        print(json.dumps(document, indent=2))
    else:
        print(render_table(document))
    return 0


_COMMANDS = {"decode": cmd_decode, "measure": cmd_measure, "analyze": cmd_analyze}

_OPERATIONAL_ERRORS = (
    OSError,
    KTestError,
    SymbolMapError,
    SettingsError,
    TraceFormatError,
    TransportError,
    ProbeError,
)


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings_for(args)
    except SettingsError as exc:
        _configure_logging(args.log_level or "INFO")
        LOG.error("%s", exc)
        return 1
    _configure_logging(settings.log_level, settings.log_file)
    try:
        return _COMMANDS[args.command](args, settings)
    except KeyboardInterrupt:
        print()
        return 1
    except _OPERATIONAL_ERRORS as exc:
        LOG.exception("%s failed", args.command)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
