"""Per-run artifact directory.

Layout of `<artifacts_root>/<run_id>/`:

* log.txt            raw engine output, verbatim
* flow.yaml          the flow as handed to the engine
* harness.log        timestamped harness log lines
* result.json        RunResult, written last
* healthcheck.log    (optional) health-check engine output
* recording.mp4      (optional) device screen recording
* screenshot-<n>.png (optional) screenshot taken after step <n> failed

The bundle is created at run start and sealed once `result.json` is written.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, TextIO

from flow_harness.errors import FlowHarnessError
from flow_harness.reporting.result import RunResult

LOG_FILE = "log.txt"
FLOW_FILE = "flow.yaml"
HARNESS_LOG_FILE = "harness.log"
RESULT_FILE = "result.json"
HEALTHCHECK_LOG_FILE = "healthcheck.log"
HEALTHCHECK_FLOW_FILE = "healthcheck.yaml"
RECORDING_FILE = "recording.mp4"

_HARNESS_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_HARNESS_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


class BundleError(FlowHarnessError):
    pass


def _utc_timestamp() -> str:
    now = dt.datetime.now(dt.timezone.utc)
    return now.strftime("%Y%m%d_%H%M%S")


def slugify(value: str) -> str:
    return _SLUG_RE.sub("-", value).strip("-.") or "flow"


def screenshot_name(step_index: int) -> str:
    return f"screenshot-{int(step_index)}.png"


def allocate_run_id(artifacts_root: Path, flow_name: str) -> str:
    """Return `<utc timestamp>-<flow name>`, suffixed when that directory exists."""
    base = f"{_utc_timestamp()}-{slugify(flow_name)}"
    candidate = base
    n = 2
    while (Path(artifacts_root) / candidate).exists():
        candidate = f"{base}-{n}"
        n += 1
    return candidate


class ArtifactBundle:
    def __init__(self, root: Path, run_id: str) -> None:
        self.root = root
        self.run_id = run_id
        self._sealed = False

    @classmethod
    def create(cls, artifacts_root: Path, run_id: str) -> "ArtifactBundle":
        if not run_id or slugify(run_id) != run_id:
            raise BundleError(f"invalid run id: {run_id!r}")
        root = Path(artifacts_root) / run_id
        try:
            root.mkdir(parents=True, exist_ok=False)
        except FileExistsError as e:
            raise BundleError(f"artifact directory already exists: {root}") from e
        return cls(root, run_id)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def path(self, name: str) -> Path:
        return self.root / name

    def _check_open(self) -> None:
        if self._sealed:
            raise BundleError(f"artifact bundle is sealed: {self.root}")

    def write_text(self, name: str, text: str) -> Path:
        self._check_open()
        path = self.path(name)
        path.write_text(text, encoding="utf-8")
        return path

    @contextmanager
    def open_log(self, name: str = LOG_FILE) -> Iterator[TextIO]:
        self._check_open()
        with self.path(name).open("a", encoding="utf-8") as sink:
            yield sink

    @contextmanager
    def capture_harness_log(self, logger_name: str = "flow_harness") -> Iterator[Path]:
        """Mirror the package's log records into harness.log for the run."""
        self._check_open()
        path = self.path(HARNESS_LOG_FILE)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_HARNESS_LOG_FORMAT, _HARNESS_LOG_DATEFMT))
        handler.setLevel(logging.INFO)
        target = logging.getLogger(logger_name)
        # harness.log always gets INFO lines, whatever the caller configured.
        previous_level = target.level
        if target.getEffectiveLevel() > logging.INFO:
            target.setLevel(logging.INFO)
        target.addHandler(handler)
        try:
            yield path
        finally:
            target.removeHandler(handler)
            target.setLevel(previous_level)
            handler.close()

    def relative(self, path: Path) -> str:
        return str(Path(path).relative_to(self.root))

    def write_result(self, result: RunResult) -> Path:
        self._check_open()
        path = self.path(RESULT_FILE)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(result.to_dict(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )
        tmp_path.replace(path)
        self._sealed = True
        return path
