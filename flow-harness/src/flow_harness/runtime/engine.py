"""Process interface to the external UI-automation engine.

The engine is a black box: `<binary> test --udid <device> <flow.yaml>`. It is
located through `PATH` extended with the engine's install directory, and its
combined stdout/stderr is streamed line by line into a log sink while the
harness waits (with a timeout) for it to exit.

Anything passed to `FlowRunner` as an engine only needs the `run()` method
below; tests use in-process fakes.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, TextIO

from flow_harness.errors import ProcessError

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_BINARY = "maestro"
DEFAULT_ENGINE_HOME = Path("~/.maestro/bin")

_TERMINATE_GRACE_S = 5.0
_READER_JOIN_S = 5.0


@dataclass(frozen=True)
class EngineResult:
    args: List[str]
    output: str
    returncode: int
    duration_s: float
    timed_out: bool = False


def extend_search_path(base_path: Optional[str], engine_home: Optional[Path]) -> str:
    """Append the engine's install directory to a PATH string."""
    parts = [p for p in (base_path or "").split(os.pathsep) if p]
    if engine_home is not None:
        home = str(Path(engine_home).expanduser())
        if home not in parts:
            parts.append(home)
    return os.pathsep.join(parts)


class MaestroEngine:
    def __init__(
        self,
        *,
        binary: str = DEFAULT_ENGINE_BINARY,
        engine_home: Optional[Path] = DEFAULT_ENGINE_HOME,
        extra_args: Sequence[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._binary = binary
        self._engine_home = engine_home
        self._extra_args = list(extra_args)
        self._environ = dict(os.environ if environ is None else environ)

    def process_env(self) -> dict[str, str]:
        env = dict(self._environ)
        env["PATH"] = extend_search_path(env.get("PATH"), self._engine_home)
        return env

    def resolve_binary(self, env: Optional[Mapping[str, str]] = None) -> str:
        env = env if env is not None else self.process_env()
        resolved = shutil.which(self._binary, path=env.get("PATH"))
        if resolved is None:
            raise ProcessError(
                f"automation engine not found: {self._binary!r} "
                f"(searched PATH including {self._engine_home})"
            )
        return resolved

    def build_command(self, flow_path: Path, *, device_id: str, binary: Optional[str] = None) -> List[str]:
        cmd = [binary or self._binary, "test"]
        if device_id:
            cmd += ["--udid", device_id]
        cmd += self._extra_args
        cmd.append(str(flow_path))
        return cmd

    def run(
        self,
        flow_path: Path,
        *,
        device_id: str,
        log_sink: TextIO,
        timeout_s: float,
    ) -> EngineResult:
        env = self.process_env()
        cmd = self.build_command(flow_path, device_id=device_id, binary=self.resolve_binary(env))
        logger.info("starting engine: %s", " ".join(cmd))

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                cwd=str(Path(flow_path).parent),
            )
        except OSError as e:
            raise ProcessError(f"failed to launch engine {cmd[0]!r}: {e}") from e

        chunks: list[str] = []
        sink_lock = threading.Lock()
        detached = threading.Event()

        def _pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                # Once detached, the caller may already have closed log_sink.
                with sink_lock:
                    if detached.is_set():
                        return
                    chunks.append(line)
                    log_sink.write(line)
                    log_sink.flush()

        reader = threading.Thread(target=_pump, name="engine-output", daemon=True)
        reader.start()

        timed_out = False
        try:
            returncode = proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("engine timed out after %.1fs; terminating pid=%s", timeout_s, proc.pid)
            proc.terminate()
            try:
                returncode = proc.wait(timeout=_TERMINATE_GRACE_S)
            except subprocess.TimeoutExpired:
                proc.kill()
                returncode = proc.wait()
        reader.join(timeout=_READER_JOIN_S)
        if reader.is_alive():
            with sink_lock:
                detached.set()
            logger.warning(
                "engine output pipe still open after exit (a child process holds it); "
                "later output is not recorded"
            )

        result = EngineResult(
            args=cmd,
            output="".join(chunks),
            returncode=int(returncode),
            duration_s=time.monotonic() - started,
            timed_out=timed_out,
        )
        logger.info("engine exited rc=%s timed_out=%s in %.1fs", result.returncode, timed_out, result.duration_s)

        if not timed_out and result.returncode < 0:
            raise ProcessError(
                f"engine crashed (signal {-result.returncode}): {' '.join(cmd)}"
            )
        return result
