from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from flow_harness.errors import FlowHarnessError, FlowParseError
from flow_harness.flow import Flow, iter_flow_files, load_flow
from flow_harness.reporting.aggregate import (
    build_aggregate_report,
    format_summary,
    write_aggregate_report,
)
from flow_harness.reporting.result import RunResult
from flow_harness.runtime.android.controller import AndroidController
from flow_harness.runtime.config import (
    DEFAULT_TIMEOUT_S,
    RunnerConfig,
    env_flag,
    env_float,
    env_str,
)
from flow_harness.runtime.engine import DEFAULT_ENGINE_BINARY, DEFAULT_ENGINE_HOME, MaestroEngine
from flow_harness.runtime.runner import FlowRunner, run_flows

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_INPUT = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )


def _load_flows(target: Path, *, default_app_id: Optional[str]) -> List[Flow]:
    paths = list(iter_flow_files(target))
    if not paths:
        raise FlowParseError("no flow files found", source=str(target))
    return [load_flow(p, default_app_id=default_app_id) for p in paths]


def _print_result(result: RunResult) -> None:
    line = (
        f"[{result.status.upper()}] {result.run_id}: "
        f"{result.steps_passed} passed, {result.steps_failed} failed, "
        f"{result.steps_skipped} skipped ({result.duration_s:.1f}s)"
    )
    print(line)
    if result.failure_message:
        print(f"  {result.failure_message}")
    for warning in result.warnings:
        print(f"  WARNING: {warning}")


def _add_run_parser(sub: argparse._SubParsersAction) -> None:
    run_p = sub.add_parser("run", help="Run a flow file (or every flow in a directory).")
    run_p.add_argument("flow", type=Path, help="Flow file, or a directory of flow files.")
    run_p.add_argument(
        "--device",
        type=str,
        default=env_str("DEVICE"),
        help="Target device identifier (default: $FLOW_HARNESS_DEVICE).",
    )
    run_p.add_argument(
        "--app",
        type=str,
        default=env_str("APP_ID"),
        help="Application/bundle identifier; overrides the flow's appId.",
    )
    run_p.add_argument(
        "--out",
        type=Path,
        default=Path(env_str("ARTIFACTS_DIR", "artifacts") or "artifacts"),
        help="Artifact directory; each run writes <out>/<run-id>/.",
    )
    run_p.add_argument("--run-id", type=str, default=None, help="Run identifier (e.g. an issue id).")
    run_p.add_argument(
        "--timeout",
        type=float,
        default=env_float("TIMEOUT_S", DEFAULT_TIMEOUT_S),
        help="Seconds to wait for the engine before killing it.",
    )
    run_p.add_argument("--engine", type=str, default=env_str("ENGINE", DEFAULT_ENGINE_BINARY))
    run_p.add_argument(
        "--engine-home",
        type=Path,
        default=Path(env_str("ENGINE_HOME", str(DEFAULT_ENGINE_HOME)) or DEFAULT_ENGINE_HOME),
        help="Directory appended to PATH so the engine binary is found.",
    )
    run_p.add_argument("--adb-path", type=str, default=env_str("ADB_PATH", "adb"))
    run_p.add_argument(
        "--record",
        action=argparse.BooleanOptionalAction,
        default=env_flag("RECORD"),
        help="Record the device screen during the run (adb screenrecord).",
    )
    run_p.add_argument(
        "--screenshot-on-failure",
        action=argparse.BooleanOptionalAction,
        default=env_flag("SCREENSHOT_ON_FAILURE"),
        help="Capture a device screenshot when a step fails.",
    )
    run_p.add_argument(
        "--check-device",
        action=argparse.BooleanOptionalAction,
        default=env_flag("CHECK_DEVICE"),
        help="Require `adb get-state` to report the device before running.",
    )
    run_p.add_argument(
        "--healthcheck",
        type=Path,
        default=Path(env_str("HEALTHCHECK_FLOW")) if env_str("HEALTHCHECK_FLOW") else None,
        help="Flow that must pass before the main flow is started.",
    )


def _cmd_run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if not args.device:
        parser.error("--device is required (or set FLOW_HARNESS_DEVICE)")

    try:
        flows = _load_flows(args.flow, default_app_id=args.app)
        config = RunnerConfig(
            timeout_s=float(args.timeout),
            record=bool(args.record),
            screenshot_on_failure=bool(args.screenshot_on_failure),
            check_device=bool(args.check_device),
            healthcheck_flow=args.healthcheck,
        )
    except FlowParseError as e:
        print(f"[ERROR] {e}")
        return EXIT_BAD_INPUT
    except ValueError as e:
        parser.error(str(e))

    engine = MaestroEngine(binary=args.engine, engine_home=args.engine_home)
    controller = (
        AndroidController(adb_path=args.adb_path, serial=args.device)
        if config.needs_device_controller
        else None
    )
    runner = FlowRunner(config, engine=engine, controller=controller)

    try:
        results = run_flows(
            runner,
            flows,
            device_id=args.device,
            artifacts_root=args.out,
            run_id=args.run_id,
            app_id=args.app,
        )
    except FlowHarnessError as e:
        print(f"[ERROR] {e}")
        return EXIT_BAD_INPUT

    for result in results:
        _print_result(result)
    passed = sum(1 for r in results if r.ok)
    print(f"{passed}/{len(results)} flow(s) passed -> {args.out}")
    return EXIT_OK if passed == len(results) else EXIT_FAILED


def _cmd_validate(args: argparse.Namespace) -> int:
    try:
        flows = _load_flows(args.flow, default_app_id=args.app)
    except FlowParseError as e:
        print(f"[ERROR] {e}")
        return EXIT_BAD_INPUT
    for flow in flows:
        print(f"OK: {flow.display_name} ({flow.source}) app={flow.app_id} steps={len(flow)}")
    return EXIT_OK


def _cmd_report(args: argparse.Namespace) -> int:
    report = build_aggregate_report(args.artifacts_dir)
    if args.write:
        out = write_aggregate_report(args.artifacts_dir, report)
        logger.info("wrote %s", out)
    if args.json:
        print(json.dumps(report, indent=2, ensure_ascii=False))
    else:
        print(format_summary(report))
    return EXIT_OK if report.get("all_ok") and report.get("total_runs") else EXIT_FAILED


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowctl",
        description="Run declarative UI test flows through an external automation engine.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    try:
        _add_run_parser(sub)
    except ValueError as e:
        parser.error(str(e))

    validate_p = sub.add_parser("validate", help="Parse and validate flow files without running.")
    validate_p.add_argument("flow", type=Path, help="Flow file, or a directory of flow files.")
    validate_p.add_argument("--app", type=str, default=env_str("APP_ID"))

    report_p = sub.add_parser("report", help="Summarize every run under an artifact directory.")
    report_p.add_argument("artifacts_dir", type=Path)
    report_p.add_argument("--json", action="store_true", help="Print machine-readable JSON.")
    report_p.add_argument(
        "--write", action="store_true", help="Also write aggregate_report.json into the directory."
    )

    args = parser.parse_args(argv)
    _configure_logging(bool(args.verbose))

    if args.cmd == "run":
        return _cmd_run(args, parser)
    if args.cmd == "validate":
        return _cmd_validate(args)
    if args.cmd == "report":
        return _cmd_report(args)

    raise SystemExit(f"unknown subcommand: {args.cmd}")  # pragma: no cover


if __name__ == "__main__":
    raise SystemExit(main())
