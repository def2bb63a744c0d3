"""Turn raw engine console output into a RunResult.

The engine prints one line per executed command, either in the plain style

    Tap on "Sign In"... COMPLETED
    Assert that "Welcome" is visible... FAILED
    Element not found: Text matching regex: Welcome

or in the boxed interactive style

    ║    ✅   Tap on "Sign In"
    ║    ❌   Assert that "Welcome" is visible

Lines that are not command lines and follow a failed command are treated as
its diagnostic text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from flow_harness.errors import MalformedOutput, RunTimeout, StepFailure
from flow_harness.flow.flow_loader import RenderedFlow
from flow_harness.flow.model import Flow
from flow_harness.reporting.result import (
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_SKIPPED,
    STATUS_UNKNOWN,
    RunResult,
    StepOutcome,
)

logger = logging.getLogger(__name__)

COMMAND_COMPLETED = "completed"
COMMAND_FAILED = "failed"
COMMAND_SKIPPED = "skipped"
COMMAND_WARNED = "warned"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PLAIN_RE = re.compile(
    r"^\s*(?:[║│|]\s*)?(?P<desc>\S.*?)\s*\.\.\.\s*(?P<status>COMPLETED|FAILED|SKIPPED|WARNED)\s*$"
)
_BOXED_RE = re.compile(r"^\s*[║│]\s*(?P<mark>✅|❌|⚠️|⚠|🔲)\s+(?P<desc>\S.*?)\s*$")
_BOX_ONLY_RE = re.compile(r"^[\s║│]*$")

_MARKS = {
    "✅": COMMAND_COMPLETED,
    "❌": COMMAND_FAILED,
    "⚠️": COMMAND_WARNED,
    "⚠": COMMAND_WARNED,
    "🔲": COMMAND_SKIPPED,
}

_DIAGNOSTIC_MAX_LINES = 20
_DIAGNOSTIC_MAX_CHARS = 2000


@dataclass(frozen=True)
class CommandOutcome:
    description: str
    status: str
    diagnostic: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in {COMMAND_COMPLETED, COMMAND_WARNED}


def _strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def _match_command(line: str) -> Optional[tuple[str, str]]:
    m = _PLAIN_RE.match(line)
    if m:
        return m.group("desc"), m.group("status").lower()
    m = _BOXED_RE.match(line)
    if m:
        return m.group("desc"), _MARKS[m.group("mark")]
    return None


def _clip(lines: Sequence[str]) -> Optional[str]:
    kept = [ln.strip(" ║│").rstrip() for ln in lines if not _BOX_ONLY_RE.match(ln)]
    kept = [ln for ln in kept if ln.strip()]
    if not kept:
        return None
    text = "\n".join(kept[:_DIAGNOSTIC_MAX_LINES])
    return text[:_DIAGNOSTIC_MAX_CHARS]


def output_tail(raw_output: str, *, max_lines: int = _DIAGNOSTIC_MAX_LINES) -> str:
    lines = [ln for ln in _strip_ansi(raw_output).splitlines() if ln.strip()]
    if not lines:
        return "no output from engine"
    return "\n".join(lines[-max_lines:])[-_DIAGNOSTIC_MAX_CHARS:]


def parse_engine_output(raw_output: str) -> List[CommandOutcome]:
    """Extract command outcomes in the order the engine reported them.

    Raises MalformedOutput when the text holds no command line at all.
    """
    outcomes: List[CommandOutcome] = []
    pending_desc: Optional[str] = None
    pending_lines: List[str] = []

    def flush() -> None:
        nonlocal pending_desc, pending_lines
        if pending_desc is not None:
            outcomes.append(
                CommandOutcome(
                    description=pending_desc,
                    status=COMMAND_FAILED,
                    diagnostic=_clip(pending_lines) or pending_desc,
                )
            )
        pending_desc = None
        pending_lines = []

    for line in _strip_ansi(raw_output).splitlines():
        matched = _match_command(line)
        if matched is None:
            if pending_desc is not None:
                pending_lines.append(line)
            continue
        flush()
        desc, status = matched
        if status == COMMAND_FAILED:
            pending_desc = desc
        else:
            outcomes.append(CommandOutcome(description=desc, status=status))
    flush()

    if not outcomes:
        raise MalformedOutput("no command outcomes found in engine output")
    return outcomes


def _step_outcomes(
    flow: Flow, *, failed_index: Optional[int], diagnostic: Optional[str]
) -> List[StepOutcome]:
    out: List[StepOutcome] = []
    for i, step in enumerate(flow.steps):
        if failed_index is None or i < failed_index:
            status, diag = STATUS_PASSED, None
        elif i == failed_index:
            status, diag = STATUS_FAILED, diagnostic
        else:
            status, diag = STATUS_SKIPPED, None
        out.append(StepOutcome(index=i, description=step.describe(), status=status, diagnostic=diag))
    return out


def _count(steps: Sequence[StepOutcome], status: str) -> int:
    return sum(1 for s in steps if s.status == status)


class ReportCollector:
    """Summarize one engine run into a RunResult."""

    def _walk(
        self,
        raw_output: str,
        exit_code: int,
        *,
        rendered: RenderedFlow,
        timeout_s: Optional[float],
    ) -> None:
        total = rendered.total_commands

        if timeout_s is not None:
            try:
                outcomes = parse_engine_output(raw_output)
            except MalformedOutput:
                outcomes = []
            done = 0
            for outcome in outcomes[:total]:
                if not outcome.succeeded:
                    break
                done += 1
            step_index = rendered.step_for_command(min(done, total - 1))
            raise RunTimeout(step_index, timeout_s)

        outcomes = parse_engine_output(raw_output)
        done = 0
        for outcome in outcomes[:total]:
            if outcome.status == COMMAND_FAILED:
                raise StepFailure(
                    rendered.step_for_command(done), outcome.diagnostic or outcome.description
                )
            if not outcome.succeeded:
                break
            done += 1

        if done >= total:
            if exit_code != 0:
                raise MalformedOutput(
                    f"engine exited with code {exit_code} but reported every command completed"
                )
            return

        if exit_code == 0:
            raise MalformedOutput(
                f"engine exited cleanly but reported {done} of {total} commands"
            )
        raise StepFailure(rendered.step_for_command(done), output_tail(raw_output))

    def collect(
        self,
        raw_output: str,
        exit_code: int,
        *,
        flow: Flow,
        rendered: RenderedFlow,
        run_id: str,
        duration_s: float = 0.0,
        timeout_s: Optional[float] = None,
    ) -> RunResult:
        """Build the RunResult for a finished (or timed out) engine run.

        `timeout_s` is set only when the engine was killed on timeout.
        """
        base = dict(
            run_id=run_id,
            flow_name=flow.display_name,
            duration_s=duration_s,
            exit_code=exit_code,
        )
        try:
            self._walk(raw_output, exit_code, rendered=rendered, timeout_s=timeout_s)
        except StepFailure as failure:
            steps = _step_outcomes(
                flow, failed_index=failure.step_index, diagnostic=failure.diagnostic
            )
            logger.info("flow %s failed at step %d (%s)", flow.display_name, failure.step_index, failure.reason)
            return RunResult(
                status=STATUS_FAILED,
                failure_message=str(failure),
                failure_reason=failure.reason,
                failed_step_index=failure.step_index,
                steps=tuple(steps),
                steps_passed=_count(steps, STATUS_PASSED),
                steps_failed=_count(steps, STATUS_FAILED),
                steps_skipped=_count(steps, STATUS_SKIPPED),
                **base,
            )
        except MalformedOutput as e:
            logger.warning("could not parse engine output for %s: %s", flow.display_name, e)
            return RunResult(
                status=STATUS_UNKNOWN,
                failure_message=f"malformed engine output: {e}",
                failure_reason="malformed_output",
                **base,
            )

        steps = _step_outcomes(flow, failed_index=None, diagnostic=None)
        return RunResult(
            status=STATUS_PASSED,
            steps=tuple(steps),
            steps_passed=len(steps),
            **base,
        )
