from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set

from flow_harness.errors import FlowHarnessError
from flow_harness.flow.flow_loader import load_flow, render_engine_flow
from flow_harness.flow.model import Flow
from flow_harness.reporting.collector import ReportCollector
from flow_harness.reporting.result import (
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_SKIPPED,
    RunResult,
    StepOutcome,
)
from flow_harness.runtime.android.controller import (
    AndroidController,
    AndroidControllerError,
    ScreenRecording,
)
from flow_harness.runtime.artifacts import (
    FLOW_FILE,
    HEALTHCHECK_FLOW_FILE,
    HEALTHCHECK_LOG_FILE,
    LOG_FILE,
    RECORDING_FILE,
    ArtifactBundle,
    allocate_run_id,
    screenshot_name,
    slugify,
)
from flow_harness.runtime.config import RunnerConfig

logger = logging.getLogger(__name__)

_REMOTE_RECORDING_DIR = "/sdcard"


def _skipped_steps(flow: Flow) -> tuple[StepOutcome, ...]:
    return tuple(
        StepOutcome(index=i, description=s.describe(), status=STATUS_SKIPPED)
        for i, s in enumerate(flow.steps)
    )


class FlowRunner:
    """Run one Flow at a time against a device through the automation engine.

    `engine` needs `run(flow_path, *, device_id, log_sink, timeout_s)` returning
    an `EngineResult`; `controller` is only required for recording,
    screenshots and the device preflight.
    """

    def __init__(
        self,
        config: RunnerConfig,
        *,
        engine: Any,
        controller: Optional[AndroidController] = None,
        collector: Optional[ReportCollector] = None,
    ) -> None:
        if config.needs_device_controller and controller is None:
            raise ValueError("recording, screenshots and device checks need an AndroidController")
        self._config = config
        self._engine = engine
        self._controller = controller
        self._collector = collector or ReportCollector()

    def run(
        self,
        flow: Flow,
        *,
        device_id: str,
        artifacts_root: Path,
        run_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> RunResult:
        artifacts_root = Path(artifacts_root)
        artifacts_root.mkdir(parents=True, exist_ok=True)
        run_id = run_id or allocate_run_id(artifacts_root, flow.display_name)
        bundle = ArtifactBundle.create(artifacts_root, run_id)

        with bundle.capture_harness_log():
            logger.info(
                "=== run %s started: flow=%s steps=%d device=%s ===",
                run_id,
                flow.display_name,
                len(flow),
                device_id,
            )
            try:
                result = self._run_in_bundle(
                    flow, bundle=bundle, device_id=device_id, app_id=app_id or flow.app_id
                )
            except FlowHarnessError as e:
                logger.error("run %s aborted: %s", run_id, e)
                raise
            logger.info(
                "=== run %s finished: %s (%d passed, %d failed, %d skipped) ===",
                run_id,
                result.status,
                result.steps_passed,
                result.steps_failed,
                result.steps_skipped,
            )

        bundle.write_result(result)
        return result

    def _run_in_bundle(
        self, flow: Flow, *, bundle: ArtifactBundle, device_id: str, app_id: str
    ) -> RunResult:
        started = time.monotonic()
        log_path = bundle.path(LOG_FILE)
        log_path.touch()

        if not flow.steps:
            logger.warning("flow %s has no steps; skipping", flow.display_name)
            return RunResult(
                run_id=bundle.run_id,
                flow_name=flow.display_name,
                status=STATUS_SKIPPED,
                log_path=bundle.relative(log_path),
            )

        if self._config.check_device:
            assert self._controller is not None
            self._controller.require_device()
            logger.info("device %s connected", device_id)

        rendered = render_engine_flow(flow, app_id=app_id)
        flow_path = bundle.write_text(FLOW_FILE, rendered.text)
        warnings: List[str] = []

        if self._config.healthcheck_flow is not None:
            problem = self._run_healthcheck(bundle=bundle, device_id=device_id, app_id=app_id)
            if problem is not None:
                return RunResult(
                    run_id=bundle.run_id,
                    flow_name=flow.display_name,
                    status=STATUS_FAILED,
                    failure_message=f"health check failed: {problem}",
                    failure_reason="healthcheck",
                    steps=_skipped_steps(flow),
                    steps_skipped=len(flow),
                    duration_s=time.monotonic() - started,
                    log_path=bundle.relative(log_path),
                )

        recording = self._start_recording(flow, warnings) if self._config.record else None
        video_path: Optional[str] = None
        try:
            with bundle.open_log() as sink:
                engine_result = self._engine.run(
                    flow_path,
                    device_id=device_id,
                    log_sink=sink,
                    timeout_s=self._config.timeout_s,
                )
        finally:
            if recording is not None:
                video_path = self._finish_recording(recording, bundle, warnings)

        result = self._collector.collect(
            engine_result.output,
            engine_result.returncode,
            flow=flow,
            rendered=rendered,
            run_id=bundle.run_id,
            duration_s=engine_result.duration_s,
            timeout_s=self._config.timeout_s if engine_result.timed_out else None,
        )

        screenshot_path: Optional[str] = None
        if (
            self._config.screenshot_on_failure
            and result.status == STATUS_FAILED
            and result.failed_step_index is not None
        ):
            screenshot_path = self._capture_screenshot(bundle, result.failed_step_index, warnings)

        return replace(
            result,
            duration_s=time.monotonic() - started,
            log_path=bundle.relative(log_path),
            screenshot_path=screenshot_path,
            video_path=video_path,
            warnings=tuple(warnings),
        )

    def _run_healthcheck(
        self, *, bundle: ArtifactBundle, device_id: str, app_id: str
    ) -> Optional[str]:
        assert self._config.healthcheck_flow is not None
        hc_flow = load_flow(self._config.healthcheck_flow, default_app_id=app_id)
        if not hc_flow.steps:
            logger.warning("health check flow %s has no steps; skipping", hc_flow.display_name)
            return None

        logger.info("running health check flow %s", hc_flow.display_name)
        rendered = render_engine_flow(hc_flow, app_id=app_id)
        hc_path = bundle.write_text(HEALTHCHECK_FLOW_FILE, rendered.text)
        with bundle.open_log(HEALTHCHECK_LOG_FILE) as sink:
            hc_engine = self._engine.run(
                hc_path,
                device_id=device_id,
                log_sink=sink,
                timeout_s=self._config.timeout_s,
            )
        hc_result = self._collector.collect(
            hc_engine.output,
            hc_engine.returncode,
            flow=hc_flow,
            rendered=rendered,
            run_id=bundle.run_id,
            duration_s=hc_engine.duration_s,
            timeout_s=self._config.timeout_s if hc_engine.timed_out else None,
        )
        if hc_result.status != STATUS_PASSED:
            logger.error("health check did not pass: %s", hc_result.failure_message)
            return hc_result.failure_message or hc_result.status
        logger.info("health check passed")
        return None

    def _start_recording(self, flow: Flow, warnings: List[str]) -> Optional[ScreenRecording]:
        assert self._controller is not None
        remote = f"{_REMOTE_RECORDING_DIR}/flow-harness-{slugify(flow.display_name)}.mp4"
        try:
            return self._controller.start_screenrecord(remote)
        except AndroidControllerError as e:
            warnings.append(f"screen recording not started: {e}")
            logger.warning("screen recording not started: %s", e)
            return None

    def _finish_recording(
        self, recording: ScreenRecording, bundle: ArtifactBundle, warnings: List[str]
    ) -> Optional[str]:
        assert self._controller is not None
        dst = bundle.path(RECORDING_FILE)
        try:
            self._controller.stop_screenrecord(recording, settle_s=self._config.recording_settle_s)
            self._controller.pull_recording(recording, dst)
        except AndroidControllerError as e:
            warnings.append(f"screen recording not collected: {e}")
            logger.warning("screen recording not collected: %s", e)
            return None
        if not dst.exists() or dst.stat().st_size == 0:
            warnings.append("screen recording is empty")
            logger.warning("screen recording is empty: %s", dst)
            return None
        logger.info("screen recording saved (%d bytes)", dst.stat().st_size)
        return bundle.relative(dst)

    def _capture_screenshot(
        self, bundle: ArtifactBundle, step_index: int, warnings: List[str]
    ) -> Optional[str]:
        assert self._controller is not None
        try:
            path = self._controller.screencap_to_file(bundle.path(screenshot_name(step_index)))
        except AndroidControllerError as e:
            warnings.append(f"failure screenshot not captured: {e}")
            logger.warning("failure screenshot not captured: %s", e)
            return None
        logger.info("failure screenshot saved: %s", path.name)
        return bundle.relative(path)


def _batch_run_ids(run_id: Optional[str], flows: Sequence[Flow]) -> List[Optional[str]]:
    if not run_id or len(flows) <= 1:
        return [run_id] * len(flows)
    used: Set[str] = set()
    ids: List[Optional[str]] = []
    for flow in flows:
        base = f"{run_id}-{slugify(flow.display_name)}"
        candidate = base
        n = 2
        while candidate in used:
            candidate = f"{base}-{n}"
            n += 1
        used.add(candidate)
        ids.append(candidate)
    return ids


def run_flows(
    runner: FlowRunner,
    flows: Sequence[Flow],
    *,
    device_id: str,
    artifacts_root: Path,
    run_id: Optional[str] = None,
    app_id: Optional[str] = None,
) -> List[RunResult]:
    """Run flows one after another; each gets its own bundle.

    With several flows, an explicit `run_id` becomes a prefix:
    `<run_id>-<flow name>`, suffixed `-2`, `-3`... when flow names repeat.
    """
    run_ids = _batch_run_ids(run_id, flows)
    results: List[RunResult] = []
    for i, (flow, flow_run_id) in enumerate(zip(flows, run_ids), start=1):
        logger.info("--- flow %d/%d: %s ---", i, len(flows), flow.display_name)
        results.append(
            runner.run(
                flow,
                device_id=device_id,
                artifacts_root=artifacts_root,
                run_id=flow_run_id,
                app_id=app_id,
            )
        )
    return results
