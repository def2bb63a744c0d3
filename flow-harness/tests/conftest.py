from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterator

import pytest


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "flow-harness" / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


_ensure_src_on_path()


_FAKE_ENGINE_SCRIPT = """\
import os
import subprocess
import sys
import time

sys.stdout.write(os.environ.get("FAKE_ENGINE_OUTPUT", ""))
sys.stdout.flush()
if os.environ.get("FAKE_ENGINE_LINGER"):
    # A child that keeps stdout open after this process exits.
    subprocess.Popen(
        [sys.executable, "-c", "import sys, time; time.sleep(float(sys.argv[1])); print('late output', flush=True)",
         os.environ["FAKE_ENGINE_LINGER"]]
    )
time.sleep(float(os.environ.get("FAKE_ENGINE_SLEEP", "0")))
with open(os.environ.get("FAKE_ENGINE_ARGS_FILE", os.devnull), "w") as fh:
    fh.write("\\n".join(sys.argv[1:]))
sys.exit(int(os.environ.get("FAKE_ENGINE_RC", "0")))
"""


@pytest.fixture
def fake_engine_home(tmp_path: Path) -> Path:
    """Directory holding an executable `maestro` that replays FAKE_ENGINE_* env vars."""
    home = tmp_path / "engine-bin"
    home.mkdir()
    script = home / "maestro"
    script.write_text(f"#!{sys.executable}\n{_FAKE_ENGINE_SCRIPT}", encoding="utf-8")
    script.chmod(0o755)
    return home


@pytest.fixture
def quiet_root_logger() -> Iterator[None]:
    """Root logger at WARNING and the package logger unset, as for a bare library caller."""
    root = logging.getLogger()
    pkg = logging.getLogger("flow_harness")
    saved = (root.level, pkg.level)
    root.setLevel(logging.WARNING)
    pkg.setLevel(logging.NOTSET)
    try:
        yield
    finally:
        root.setLevel(saved[0])
        pkg.setLevel(saved[1])
