"""Import shim for the src/ layout.

The real package lives under `flow-harness/src/flow_harness/`. This shim lets
`python -m flow_harness.cli.flowctl ...` work from the repo root without
setting PYTHONPATH, by extending the package search path to the src directory.
"""

from __future__ import annotations

from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
_REAL_PKG = _REPO_ROOT / "flow-harness" / "src" / "flow_harness"
if _REAL_PKG.is_dir():
    __path__.append(str(_REAL_PKG))  # type: ignore[name-defined]

__version__ = "0.1.0"

__all__ = [
    "cli",
    "errors",
    "flow",
    "reporting",
    "runtime",
]
