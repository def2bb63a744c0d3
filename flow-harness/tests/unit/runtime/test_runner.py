from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import pytest
import yaml

from flow_harness.errors import ProcessError
from flow_harness.flow import Flow, FlowStep
from flow_harness.reporting.result import (
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_SKIPPED,
    STATUS_UNKNOWN,
)
from flow_harness.runtime.android.controller import AndroidControllerError
from flow_harness.runtime.artifacts import BundleError
from flow_harness.runtime.config import RunnerConfig
from flow_harness.runtime.engine import EngineResult
from flow_harness.runtime.runner import FlowRunner, run_flows

SIGN_IN = Flow(
    app_id="com.example.app",
    name="sign-in",
    steps=(
        FlowStep.launch_app(),
        FlowStep.tap_on("Sign In"),
        FlowStep.assert_visible("Welcome"),
    ),
)

ALL_PASS = (
    'Launch app "com.example.app"... COMPLETED\n'
    'Tap on "Sign In"... COMPLETED\n'
    'Assert that "Welcome" is visible... COMPLETED\n'
)
WELCOME_MISSING = (
    'Launch app "com.example.app"... COMPLETED\n'
    'Tap on "Sign In"... COMPLETED\n'
    'Assert that "Welcome" is visible... FAILED\n'
    "Element not found: Text matching regex: Welcome\n"
)
_PNG = b"\x89PNG\r\n\x1a\nfake"


class _FakeEngine:
    """Replays canned engine runs in order and records what it was asked to run."""

    def __init__(self, *runs: tuple[str, int], timed_out: bool = False) -> None:
        self._runs = list(runs)
        self._timed_out = timed_out
        self.calls: list[dict[str, Any]] = []

    def run(self, flow_path: Path, *, device_id: str, log_sink, timeout_s: float) -> EngineResult:
        self.calls.append(
            {
                "flow_path": Path(flow_path),
                "flow_text": Path(flow_path).read_text(encoding="utf-8"),
                "device_id": device_id,
                "timeout_s": timeout_s,
            }
        )
        output, rc = self._runs.pop(0)
        log_sink.write(output)
        return EngineResult(
            args=["maestro", "test", str(flow_path)],
            output=output,
            returncode=rc,
            duration_s=0.01,
            timed_out=self._timed_out,
        )


class _FakeController:
    def __init__(
        self,
        *,
        device_state: str = "device",
        screencap_error: Optional[str] = None,
        recording_bytes: bytes = b"mp4-bytes",
    ) -> None:
        self.events: list[str] = []
        self._device_state = device_state
        self._screencap_error = screencap_error
        self._recording_bytes = recording_bytes

    def require_device(self) -> None:
        self.events.append("require_device")
        if self._device_state != "device":
            raise AndroidControllerError(f"device not connected ({self._device_state})")

    def screencap_to_file(self, path: Path, **kwargs) -> Path:  # noqa: ARG002
        self.events.append(f"screencap:{path.name}")
        if self._screencap_error:
            raise AndroidControllerError(self._screencap_error)
        path.write_bytes(_PNG)
        return path

    def start_screenrecord(self, remote_path: str):
        self.events.append("start_screenrecord")
        return {"remote_path": remote_path}

    def stop_screenrecord(self, recording, *, settle_s: float = 2.0) -> None:  # noqa: ARG002
        self.events.append("stop_screenrecord")

    def pull_recording(self, recording, dst: Path) -> Path:  # noqa: ARG002
        self.events.append("pull_recording")
        dst.write_bytes(self._recording_bytes)
        return dst


def _runner(engine: _FakeEngine, controller: Optional[_FakeController] = None, **cfg) -> FlowRunner:
    return FlowRunner(RunnerConfig(**cfg), engine=engine, controller=controller)


def _read_result(run_dir: Path) -> dict:
    return json.loads((run_dir / "result.json").read_text(encoding="utf-8"))


def test_all_steps_pass(tmp_path: Path, quiet_root_logger) -> None:
    engine = _FakeEngine((ALL_PASS, 0))
    result = _runner(engine).run(
        SIGN_IN, device_id="emulator-5554", artifacts_root=tmp_path, run_id="issue-42"
    )

    assert result.status == STATUS_PASSED
    assert result.failure_message is None
    assert (result.steps_passed, result.steps_failed, result.steps_skipped) == (3, 0, 0)

    run_dir = tmp_path / "issue-42"
    assert (run_dir / "log.txt").read_text(encoding="utf-8") == ALL_PASS
    harness_log = (run_dir / "harness.log").read_text(encoding="utf-8")
    assert "=== run issue-42 started: flow=sign-in" in harness_log
    assert "=== run issue-42 finished: passed" in harness_log
    assert _read_result(run_dir)["status"] == "passed"
    assert _read_result(run_dir)["counts"] == {"passed": 3, "failed": 0, "skipped": 0}
    assert result.log_path == "log.txt"

    call = engine.calls[0]
    assert call["device_id"] == "emulator-5554"
    assert call["flow_path"] == run_dir / "flow.yaml"
    header, commands = list(yaml.safe_load_all(call["flow_text"]))
    assert header == {"appId": "com.example.app"}
    assert commands == ["launchApp", {"tapOn": "Sign In"}, {"assertVisible": "Welcome"}]


def test_failing_assertion(tmp_path: Path) -> None:
    engine = _FakeEngine((WELCOME_MISSING, 1))
    result = _runner(engine).run(
        SIGN_IN, device_id="emulator-5554", artifacts_root=tmp_path, run_id="issue-43"
    )

    assert result.status == STATUS_FAILED
    assert (result.steps_passed, result.steps_failed, result.steps_skipped) == (2, 1, 0)
    assert result.failed_step_index == 2
    assert "step 2" in (result.failure_message or "")

    on_disk = _read_result(tmp_path / "issue-43")
    assert on_disk["failed_step_index"] == 2
    assert on_disk["steps"][2]["status"] == "failed"


def test_no_step_beyond_first_failure_is_counted(tmp_path: Path) -> None:
    output = 'Launch app "com.example.app"... FAILED\nApp crashed\n'
    result = _runner(_FakeEngine((output, 1))).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path
    )
    assert result.failed_step_index == 0
    assert result.steps_passed == 0
    assert result.steps_skipped == 2


def test_timeout_marks_run_failed(tmp_path: Path) -> None:
    output = 'Launch app "com.example.app"... COMPLETED\n'
    engine = _FakeEngine((output, -15), timed_out=True)
    result = _runner(engine, timeout_s=12.0).run(SIGN_IN, device_id="d", artifacts_root=tmp_path)
    assert result.status == STATUS_FAILED
    assert result.failure_reason == "timeout"
    assert result.failed_step_index == 1
    assert engine.calls[0]["timeout_s"] == 12.0


def test_malformed_output_keeps_raw_log(tmp_path: Path) -> None:
    raw = "java.lang.IllegalStateException: boom\n\tat somewhere\n"
    result = _runner(_FakeEngine((raw, 1))).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path, run_id="r1"
    )
    assert result.status == STATUS_UNKNOWN
    assert (tmp_path / "r1" / "log.txt").read_text(encoding="utf-8") == raw
    assert _read_result(tmp_path / "r1")["status"] == "unknown"


def test_empty_flow_is_skipped_without_engine(tmp_path: Path) -> None:
    engine = _FakeEngine()
    result = _runner(engine).run(
        Flow(app_id="com.example.app", name="empty"), device_id="d", artifacts_root=tmp_path
    )
    assert result.status == STATUS_SKIPPED
    assert result.ok
    assert engine.calls == []


def test_app_id_override(tmp_path: Path) -> None:
    engine = _FakeEngine((ALL_PASS, 0))
    _runner(engine).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path, app_id="com.example.staging"
    )
    header = next(yaml.safe_load_all(engine.calls[0]["flow_text"]))
    assert header == {"appId": "com.example.staging"}


def test_screenshot_on_failure(tmp_path: Path) -> None:
    controller = _FakeController()
    result = _runner(
        _FakeEngine((WELCOME_MISSING, 1)), controller, screenshot_on_failure=True
    ).run(SIGN_IN, device_id="d", artifacts_root=tmp_path, run_id="r1")
    assert result.screenshot_path == "screenshot-2.png"
    assert (tmp_path / "r1" / "screenshot-2.png").read_bytes() == _PNG
    assert controller.events == ["screencap:screenshot-2.png"]


def test_no_screenshot_when_passing(tmp_path: Path) -> None:
    controller = _FakeController()
    result = _runner(_FakeEngine((ALL_PASS, 0)), controller, screenshot_on_failure=True).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path
    )
    assert result.screenshot_path is None
    assert controller.events == []


def test_screenshot_error_is_a_warning(tmp_path: Path) -> None:
    controller = _FakeController(screencap_error="adb: device offline")
    result = _runner(
        _FakeEngine((WELCOME_MISSING, 1)), controller, screenshot_on_failure=True
    ).run(SIGN_IN, device_id="d", artifacts_root=tmp_path)
    assert result.status == STATUS_FAILED
    assert result.screenshot_path is None
    assert any("device offline" in w for w in result.warnings)


def test_recording_wraps_engine_run(tmp_path: Path) -> None:
    controller = _FakeController()
    result = _runner(_FakeEngine((ALL_PASS, 0)), controller, record=True).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path, run_id="r1"
    )
    assert controller.events == ["start_screenrecord", "stop_screenrecord", "pull_recording"]
    assert result.video_path == "recording.mp4"
    assert (tmp_path / "r1" / "recording.mp4").read_bytes() == b"mp4-bytes"


def test_empty_recording_is_a_warning(tmp_path: Path) -> None:
    controller = _FakeController(recording_bytes=b"")
    result = _runner(_FakeEngine((ALL_PASS, 0)), controller, record=True).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path
    )
    assert result.status == STATUS_PASSED
    assert result.video_path is None
    assert "screen recording is empty" in result.warnings


def test_failed_healthcheck_skips_main_flow(tmp_path: Path) -> None:
    hc = tmp_path / "healthcheck.yaml"
    hc.write_text("- launchApp\n- assertVisible: Home\n", encoding="utf-8")
    hc_output = 'Launch app "com.example.app"... COMPLETED\nAssert that "Home" is visible... FAILED\n'
    engine = _FakeEngine((hc_output, 1), (ALL_PASS, 0))

    result = _runner(engine, healthcheck_flow=hc).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path / "out", run_id="r1"
    )

    assert len(engine.calls) == 1
    assert engine.calls[0]["flow_path"].name == "healthcheck.yaml"
    assert result.status == STATUS_FAILED
    assert (result.failure_message or "").startswith("health check failed")
    assert result.steps_skipped == 3
    assert (tmp_path / "out" / "r1" / "healthcheck.log").read_text(encoding="utf-8") == hc_output


def test_passing_healthcheck_runs_main_flow(tmp_path: Path) -> None:
    hc = tmp_path / "healthcheck.yaml"
    hc.write_text("- launchApp\n", encoding="utf-8")
    engine = _FakeEngine(('Launch app "com.example.app"... COMPLETED\n', 0), (ALL_PASS, 0))
    result = _runner(engine, healthcheck_flow=hc).run(
        SIGN_IN, device_id="d", artifacts_root=tmp_path / "out"
    )
    assert len(engine.calls) == 2
    assert result.status == STATUS_PASSED


def test_device_preflight_failure_aborts(tmp_path: Path, quiet_root_logger) -> None:
    controller = _FakeController(device_state="offline")
    engine = _FakeEngine((ALL_PASS, 0))
    with pytest.raises(ProcessError, match="not connected"):
        _runner(engine, controller, check_device=True).run(
            SIGN_IN, device_id="d", artifacts_root=tmp_path, run_id="r1"
        )
    assert engine.calls == []
    assert not (tmp_path / "r1" / "result.json").exists()
    harness_log = (tmp_path / "r1" / "harness.log").read_text(encoding="utf-8")
    assert "=== run r1 started" in harness_log
    assert "run r1 aborted: device not connected (offline)" in harness_log


def test_existing_run_dir_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "r1").mkdir()
    with pytest.raises(BundleError):
        _runner(_FakeEngine((ALL_PASS, 0))).run(
            SIGN_IN, device_id="d", artifacts_root=tmp_path, run_id="r1"
        )


def test_generated_run_ids_are_unique(tmp_path: Path) -> None:
    runner = _runner(_FakeEngine((ALL_PASS, 0), (ALL_PASS, 0)))
    a = runner.run(SIGN_IN, device_id="d", artifacts_root=tmp_path)
    b = runner.run(SIGN_IN, device_id="d", artifacts_root=tmp_path)
    assert a.run_id != b.run_id
    assert a.run_id.endswith("-sign-in")


def test_controller_required_for_device_features() -> None:
    with pytest.raises(ValueError):
        FlowRunner(RunnerConfig(record=True), engine=_FakeEngine())


def test_run_flows_sequentially_with_prefix(tmp_path: Path) -> None:
    other = Flow(app_id="com.example.app", name="settings", steps=(FlowStep.launch_app(),))
    engine = _FakeEngine((ALL_PASS, 0), ('Launch app "com.example.app"... FAILED\n', 1))
    results = run_flows(
        _runner(engine), [SIGN_IN, other], device_id="d", artifacts_root=tmp_path, run_id="issue-7"
    )
    assert [r.run_id for r in results] == ["issue-7-sign-in", "issue-7-settings"]
    assert [r.status for r in results] == [STATUS_PASSED, STATUS_FAILED]
    assert (tmp_path / "issue-7-settings" / "result.json").exists()


def test_run_flows_repeated_names_get_distinct_ids(tmp_path: Path) -> None:
    twin = Flow(app_id="com.example.app", name="sign-in", steps=SIGN_IN.steps)
    dashed = Flow(app_id="com.example.app", name="sign-in-2", steps=SIGN_IN.steps)
    engine = _FakeEngine((ALL_PASS, 0), (ALL_PASS, 0), (ALL_PASS, 0))
    results = run_flows(
        _runner(engine), [SIGN_IN, dashed, twin], device_id="d", artifacts_root=tmp_path, run_id="r"
    )
    assert [r.run_id for r in results] == ["r-sign-in", "r-sign-in-2", "r-sign-in-3"]
    assert all(r.status == STATUS_PASSED for r in results)
    assert len(engine.calls) == 3
