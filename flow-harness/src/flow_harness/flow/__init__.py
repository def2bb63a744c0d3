"""Flow files: model, loading/validation, serialization."""

from __future__ import annotations

from flow_harness.flow.flow_loader import (
    RenderedFlow,
    dump_flow,
    iter_flow_files,
    load_flow,
    parse_flow,
    render_engine_flow,
)
from flow_harness.flow.model import ActionKind, Flow, FlowStep

__all__ = [
    "ActionKind",
    "Flow",
    "FlowStep",
    "RenderedFlow",
    "dump_flow",
    "iter_flow_files",
    "load_flow",
    "parse_flow",
    "render_engine_flow",
]
