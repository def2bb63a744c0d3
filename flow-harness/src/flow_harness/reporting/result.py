from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

RESULT_SCHEMA_VERSION = "run_result.v1"

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
STATUS_UNKNOWN = "unknown"

ALLOWED_RUN_STATUSES = {STATUS_PASSED, STATUS_FAILED, STATUS_SKIPPED, STATUS_UNKNOWN}
ALLOWED_STEP_STATUSES = {STATUS_PASSED, STATUS_FAILED, STATUS_SKIPPED}


@dataclass(frozen=True)
class StepOutcome:
    index: int
    description: str
    status: str
    diagnostic: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "status": self.status,
            "diagnostic": self.diagnostic,
        }


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, str) and value else None


@dataclass(frozen=True)
class RunResult:
    run_id: str
    flow_name: str
    status: str
    failure_message: Optional[str] = None
    failure_reason: Optional[str] = None
    failed_step_index: Optional[int] = None
    steps: Sequence[StepOutcome] = field(default_factory=tuple)
    steps_passed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    duration_s: float = 0.0
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    screenshot_path: Optional[str] = None
    video_path: Optional[str] = None
    warnings: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.status not in ALLOWED_RUN_STATUSES:
            raise ValueError(f"invalid run status: {self.status!r}")

    @property
    def ok(self) -> bool:
        return self.status in {STATUS_PASSED, STATUS_SKIPPED}

    @property
    def total_steps(self) -> int:
        return self.steps_passed + self.steps_failed + self.steps_skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": RESULT_SCHEMA_VERSION,
            "run_id": self.run_id,
            "flow_name": self.flow_name,
            "status": self.status,
            "failure_message": self.failure_message,
            "failure_reason": self.failure_reason,
            "failed_step_index": self.failed_step_index,
            "counts": {
                "passed": self.steps_passed,
                "failed": self.steps_failed,
                "skipped": self.steps_skipped,
            },
            "steps": [s.to_dict() for s in self.steps],
            "duration_s": round(float(self.duration_s), 3),
            "exit_code": self.exit_code,
            "artifacts": {
                "log": self.log_path,
                "screenshot": self.screenshot_path,
                "video": self.video_path,
            },
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "RunResult":
        counts = obj.get("counts") if isinstance(obj.get("counts"), Mapping) else {}
        artifacts = obj.get("artifacts") if isinstance(obj.get("artifacts"), Mapping) else {}
        steps = []
        for raw in obj.get("steps") or []:
            if not isinstance(raw, Mapping):
                continue
            steps.append(
                StepOutcome(
                    index=int(raw.get("index", len(steps))),
                    description=str(raw.get("description") or ""),
                    status=str(raw.get("status") or STATUS_SKIPPED),
                    diagnostic=_optional_str(raw.get("diagnostic")),
                )
            )
        failed_idx = obj.get("failed_step_index")
        exit_code = obj.get("exit_code")
        return cls(
            run_id=str(obj.get("run_id") or ""),
            flow_name=str(obj.get("flow_name") or ""),
            status=str(obj.get("status") or STATUS_UNKNOWN),
            failure_message=_optional_str(obj.get("failure_message")),
            failure_reason=_optional_str(obj.get("failure_reason")),
            failed_step_index=int(failed_idx) if isinstance(failed_idx, int) else None,
            steps=tuple(steps),
            steps_passed=int(counts.get("passed", 0)),
            steps_failed=int(counts.get("failed", 0)),
            steps_skipped=int(counts.get("skipped", 0)),
            duration_s=float(obj.get("duration_s") or 0.0),
            exit_code=int(exit_code) if isinstance(exit_code, int) else None,
            log_path=_optional_str(artifacts.get("log")),
            screenshot_path=_optional_str(artifacts.get("screenshot")),
            video_path=_optional_str(artifacts.get("video")),
            warnings=tuple(str(w) for w in obj.get("warnings") or []),
        )


def load_run_result(path: Path) -> RunResult:
    obj = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise ValueError(f"run result must be a JSON object: {path}")
    return RunResult.from_dict(obj)
