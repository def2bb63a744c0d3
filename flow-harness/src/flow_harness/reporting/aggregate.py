from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from flow_harness.reporting.result import (
    ALLOWED_RUN_STATUSES,
    STATUS_FAILED,
    STATUS_PASSED,
    RunResult,
    load_run_result,
)

logger = logging.getLogger(__name__)

RESULT_FILE_NAME = "result.json"
AGGREGATE_REPORT_NAME = "aggregate_report.json"


def find_result_paths(artifacts_root: Path) -> List[Path]:
    if not artifacts_root.exists():
        return []
    return sorted(p for p in artifacts_root.rglob(RESULT_FILE_NAME) if p.is_file())


def load_results(artifacts_root: Path) -> Tuple[List[Tuple[Path, RunResult]], List[str]]:
    """Load every run result; unreadable files are reported, not skipped silently."""
    loaded: List[Tuple[Path, RunResult]] = []
    errors: List[str] = []
    for path in find_result_paths(artifacts_root):
        try:
            loaded.append((path, load_run_result(path)))
        except (OSError, ValueError) as e:
            logger.warning("unreadable run result %s: %s", path, e)
            errors.append(f"{path}: {e}")
    return loaded, errors


def _rate(n: int, d: int) -> float:
    return float(n) / float(d) if d else 0.0


def aggregate_results(results: Sequence[RunResult]) -> Dict[str, Any]:
    status_counts: Counter[str] = Counter({s: 0 for s in sorted(ALLOWED_RUN_STATUSES)})
    reasons: Counter[str] = Counter()
    step_totals = {"passed": 0, "failed": 0, "skipped": 0}
    videos = 0
    screenshots = 0
    for r in results:
        status_counts[r.status] += 1
        if r.failure_reason:
            reasons[r.failure_reason] += 1
        step_totals["passed"] += r.steps_passed
        step_totals["failed"] += r.steps_failed
        step_totals["skipped"] += r.steps_skipped
        if r.video_path:
            videos += 1
        if r.screenshot_path:
            screenshots += 1

    total = len(results)
    passed = int(status_counts.get(STATUS_PASSED, 0))
    return {
        "total_runs": total,
        "status_counts": dict(status_counts),
        "pass_rate": _rate(passed, total),
        "failure_reasons": dict(sorted(reasons.items(), key=lambda kv: (-kv[1], kv[0]))),
        "steps": step_totals,
        "videos_recorded": videos,
        "screenshots_captured": screenshots,
        "all_ok": all(r.ok for r in results),
    }


def build_aggregate_report(artifacts_root: Path) -> Dict[str, Any]:
    loaded, errors = load_results(artifacts_root)
    report = aggregate_results([r for _, r in loaded])
    report["artifacts_root"] = str(artifacts_root)
    report["runs"] = [
        {
            "run_id": r.run_id,
            "flow_name": r.flow_name,
            "status": r.status,
            "failure_message": r.failure_message,
            "path": str(p.parent.relative_to(artifacts_root)),
        }
        for p, r in loaded
    ]
    report["unreadable"] = errors
    if errors:
        report["all_ok"] = False
    return report


def write_aggregate_report(artifacts_root: Path, report: Dict[str, Any]) -> Path:
    out = artifacts_root / AGGREGATE_REPORT_NAME
    out.write_text(json.dumps(report, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return out


def format_summary(report: Dict[str, Any]) -> str:
    counts = report.get("status_counts") or {}
    total = int(report.get("total_runs", 0))
    lines = [
        f"Summary: {counts.get(STATUS_PASSED, 0)}/{total} flows passed, "
        f"{report.get('videos_recorded', 0)} video(s) recorded"
    ]
    failed = int(counts.get(STATUS_FAILED, 0))
    if failed:
        lines.append(f"{failed} flow(s) FAILED")
    for run in report.get("runs") or []:
        line = f"  [{str(run.get('status', '')).upper()}] {run.get('run_id')} ({run.get('flow_name')})"
        if run.get("failure_message"):
            line += f": {str(run['failure_message']).splitlines()[0]}"
        lines.append(line)
    for err in report.get("unreadable") or []:
        lines.append(f"  [UNREADABLE] {err}")
    return "\n".join(lines)
