"""flow-harness: run declarative UI test flows through an external
automation engine and collect pass/fail/skip results with their artifacts.
"""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "errors",
    "flow",
    "reporting",
    "runtime",
]
