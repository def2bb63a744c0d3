"""Flow execution: engine process interface, runner, artifact bundles."""

from __future__ import annotations

from flow_harness.runtime.artifacts import ArtifactBundle, allocate_run_id
from flow_harness.runtime.config import RunnerConfig
from flow_harness.runtime.engine import EngineResult, MaestroEngine
from flow_harness.runtime.runner import FlowRunner, run_flows

__all__ = [
    "ArtifactBundle",
    "EngineResult",
    "FlowRunner",
    "MaestroEngine",
    "RunnerConfig",
    "allocate_run_id",
    "run_flows",
]
