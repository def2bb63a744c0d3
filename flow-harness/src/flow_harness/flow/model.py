from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple


class ActionKind(str, Enum):
    LAUNCH_APP = "launchApp"
    TAP_ON = "tapOn"
    INPUT_TEXT = "inputText"
    ASSERT_VISIBLE = "assertVisible"

    @classmethod
    def from_name(cls, name: str) -> Optional["ActionKind"]:
        for kind in cls:
            if kind.value == name:
                return kind
        return None


_SELECTOR_REQUIRED = {ActionKind.TAP_ON, ActionKind.ASSERT_VISIBLE}


@dataclass(frozen=True)
class FlowStep:
    """One atomic UI action or assertion.

    Selectors are opaque strings; matching them against the UI is entirely up
    to the automation engine.
    """

    kind: ActionKind
    selector: Optional[str] = None
    text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind == ActionKind.LAUNCH_APP:
            if self.selector is not None or self.text is not None:
                raise ValueError("launchApp takes no parameters")
        elif self.kind in _SELECTOR_REQUIRED:
            if not self.selector:
                raise ValueError(f"{self.kind.value} requires a selector")
            if self.text is not None:
                raise ValueError(f"{self.kind.value} does not take text")
        elif self.kind == ActionKind.INPUT_TEXT:
            if self.text is None:
                raise ValueError("inputText requires text")

    @classmethod
    def launch_app(cls) -> "FlowStep":
        return cls(ActionKind.LAUNCH_APP)

    @classmethod
    def tap_on(cls, selector: str) -> "FlowStep":
        return cls(ActionKind.TAP_ON, selector=selector)

    @classmethod
    def input_text(cls, text: str, *, selector: Optional[str] = None) -> "FlowStep":
        return cls(ActionKind.INPUT_TEXT, selector=selector, text=text)

    @classmethod
    def assert_visible(cls, selector: str) -> "FlowStep":
        return cls(ActionKind.ASSERT_VISIBLE, selector=selector)

    def describe(self) -> str:
        if self.kind == ActionKind.LAUNCH_APP:
            return "launchApp"
        if self.kind == ActionKind.INPUT_TEXT:
            if self.selector:
                return f"inputText({self.selector!r}, {self.text!r})"
            return f"inputText({self.text!r})"
        return f"{self.kind.value}({self.selector!r})"


@dataclass(frozen=True)
class Flow:
    app_id: str
    steps: Tuple[FlowStep, ...] = field(default_factory=tuple)
    name: Optional[str] = None
    source: Optional[Path] = None

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.source is not None:
            return self.source.stem
        return "flow"
