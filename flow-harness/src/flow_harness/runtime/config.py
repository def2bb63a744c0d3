from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

ENV_PREFIX = "FLOW_HARNESS_"

DEFAULT_TIMEOUT_S = 600.0


def env_str(name: str, default: Optional[str] = None, *, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    raw = env.get(ENV_PREFIX + name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def env_flag(name: str, default: bool = False, *, environ: Optional[Mapping[str, str]] = None) -> bool:
    raw = env_str(name, environ=environ)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def env_float(name: str, default: float, *, environ: Optional[Mapping[str, str]] = None) -> float:
    raw = env_str(name, environ=environ)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class RunnerConfig:
    """Operational knobs for one FlowRunner, passed explicitly."""

    timeout_s: float = DEFAULT_TIMEOUT_S
    record: bool = False
    screenshot_on_failure: bool = False
    check_device: bool = False
    healthcheck_flow: Optional[Path] = None
    recording_settle_s: float = 2.0

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s}")

    @property
    def needs_device_controller(self) -> bool:
        return self.record or self.screenshot_on_failure or self.check_device

