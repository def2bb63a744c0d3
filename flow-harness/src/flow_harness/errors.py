"""Error kinds raised across the harness.

`FlowParseError` and `ProcessError` abort a run before any result exists.
`StepFailure` (and its `RunTimeout` variant) halts the remaining steps but the
runner still turns it into a full RunResult. `MalformedOutput` is recorded on
the result as status `unknown`; the raw log is kept regardless.
"""

from __future__ import annotations

from typing import Optional


class FlowHarnessError(RuntimeError):
    """Base class for every harness error."""


class FlowParseError(FlowHarnessError):
    """The flow file is absent, not structured data, or not a valid flow."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class ProcessError(FlowHarnessError):
    """An external process (engine, adb) could not be launched or crashed."""


class MalformedOutput(FlowHarnessError):
    """Engine output could not be parsed into the expected summary shape."""


class StepFailure(FlowHarnessError):
    """A single step did not succeed against the live UI."""

    reason = "step_failed"

    def __init__(self, step_index: int, diagnostic: str) -> None:
        self.step_index = int(step_index)
        self.diagnostic = diagnostic
        super().__init__(f"step {self.step_index} failed: {diagnostic}")


class RunTimeout(StepFailure):
    reason = "timeout"

    def __init__(self, step_index: int, timeout_s: float) -> None:
        self.timeout_s = float(timeout_s)
        super().__init__(step_index, f"timeout after {self.timeout_s:g}s")
