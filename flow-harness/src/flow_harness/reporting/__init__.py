"""Engine output collection and run reporting."""

from __future__ import annotations

from flow_harness.reporting.aggregate import (
    aggregate_results,
    build_aggregate_report,
    format_summary,
    write_aggregate_report,
)
from flow_harness.reporting.collector import (
    CommandOutcome,
    ReportCollector,
    parse_engine_output,
)
from flow_harness.reporting.result import (
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_SKIPPED,
    STATUS_UNKNOWN,
    RunResult,
    StepOutcome,
    load_run_result,
)

__all__ = [
    "STATUS_FAILED",
    "STATUS_PASSED",
    "STATUS_SKIPPED",
    "STATUS_UNKNOWN",
    "CommandOutcome",
    "ReportCollector",
    "RunResult",
    "StepOutcome",
    "aggregate_results",
    "build_aggregate_report",
    "format_summary",
    "load_run_result",
    "parse_engine_output",
    "write_aggregate_report",
]
