"""adb wrapper for the device-side artifacts of a run.

Only what the harness needs around an engine run:
  * device connectivity preflight (`adb get-state`)
  * screenshots (`adb exec-out screencap -p`, with a file-based fallback)
  * screen recording (`adb shell screenrecord`) and pulling the result

Installing or provisioning the app is not handled here.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from flow_harness.errors import ProcessError

logger = logging.getLogger(__name__)

_PNG_MAGIC = b"\x89PNG"


class AndroidControllerError(ProcessError):
    """Raised when an adb operation fails."""


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class AdbBinaryResult:
    args: list[str]
    stdout: bytes
    stderr: bytes
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ScreenRecording:
    remote_path: str
    process: subprocess.Popen
    started_at: float


class AndroidController:
    """Thin wrapper around adb bound to one device serial."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._timeout_s = timeout_s

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def _run(self, cmd: list[str], *, text: bool, timeout_s: float | None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=text,
                timeout=self._timeout_s if timeout_s is None else float(timeout_s),
            )
        except subprocess.TimeoutExpired as e:
            raise AndroidControllerError(f"adb command timed out: {' '.join(cmd)}") from e
        except OSError as e:
            raise AndroidControllerError(f"failed to launch adb {cmd[0]!r}: {e}") from e

    def adb(self, *args: str, timeout_s: float | None = None, check: bool = True) -> AdbResult:
        cmd = self._base_cmd() + list(args)
        proc = self._run(cmd, text=True, timeout_s=timeout_s)
        result = AdbResult(
            args=cmd,
            stdout=proc.stdout,
            stderr=proc.stderr,
            returncode=proc.returncode,
        )
        if check and not result.ok():
            raise AndroidControllerError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def adb_binary(
        self, *args: str, timeout_s: float | None = None, check: bool = True
    ) -> AdbBinaryResult:
        cmd = self._base_cmd() + list(args)
        proc = self._run(cmd, text=False, timeout_s=timeout_s)
        result = AdbBinaryResult(
            args=cmd,
            stdout=proc.stdout,
            stderr=proc.stderr,
            returncode=proc.returncode,
        )
        if check and not result.ok():
            stderr = result.stderr.decode("utf-8", errors="replace")
            raise AndroidControllerError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stderr: {stderr}"
            )
        return result

    def adb_shell(self, command: str, *, timeout_s: float | None = None, check: bool = True) -> AdbResult:
        return self.adb("shell", command, timeout_s=timeout_s, check=check)

    def get_state(self) -> str:
        res = self.adb("get-state", check=False)
        return (res.stdout or "").strip() if res.ok() else ""

    def require_device(self) -> None:
        state = self.get_state()
        if state != "device":
            target = self._serial or "<default>"
            raise AndroidControllerError(
                f"device {target} not connected (adb get-state: {state or 'unavailable'})"
            )

    def pull_file(
        self, src: str, dst: str | Path, *, timeout_s: float | None = None, check: bool = True
    ) -> AdbResult:
        return self.adb("pull", src, str(dst), timeout_s=timeout_s, check=check)

    def remove_file(self, remote: str) -> None:
        self.adb_shell(f"rm -f {shlex.quote(remote)}", check=False)

    def screencap(self, *, timeout_s: float | None = None) -> bytes:
        """Return a screenshot PNG (via `adb exec-out screencap -p`)."""

        res = self.adb_binary("exec-out", "screencap", "-p", timeout_s=timeout_s, check=False)
        if res.ok() and res.stdout.startswith(_PNG_MAGIC):
            return res.stdout

        # Fallback to file-based screenshot.
        remote = "/sdcard/__flow_harness_screencap.png"
        cap = self.adb_shell(
            f"screencap -p {shlex.quote(remote)}",
            timeout_s=timeout_s,
            check=False,
        )
        if not cap.ok():
            stderr = (res.stderr or b"").decode("utf-8", errors="replace")
            raise AndroidControllerError(
                "screencap failed via exec-out and shell fallback\n"
                f"exec-out rc={res.returncode} stderr={stderr[:500]}\n"
                f"shell rc={cap.returncode} stderr={(cap.stderr or '')[:500]}"
            )

        with tempfile.TemporaryDirectory() as tmp:
            tmp_path = Path(tmp) / "screencap.png"
            try:
                pull = self.pull_file(remote, tmp_path, timeout_s=timeout_s, check=False)
                if not pull.ok() or not tmp_path.exists():
                    raise AndroidControllerError(f"adb pull failed: {pull.stderr.strip()}")
                data = tmp_path.read_bytes()
            finally:
                self.remove_file(remote)

        if not data.startswith(_PNG_MAGIC):
            raise AndroidControllerError("screencap produced non-PNG bytes")
        return data

    def screencap_to_file(self, path: Path, *, timeout_s: float | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.screencap(timeout_s=timeout_s))
        return path

    def start_screenrecord(self, remote_path: str) -> ScreenRecording:
        cmd = self._base_cmd() + ["shell", "screenrecord", "--bugreport", remote_path]
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
            )
        except OSError as e:
            raise AndroidControllerError(f"failed to start screenrecord: {e}") from e
        logger.info("screen recording started (pid=%s, remote=%s)", proc.pid, remote_path)
        return ScreenRecording(remote_path=remote_path, process=proc, started_at=time.monotonic())

    def stop_screenrecord(self, recording: ScreenRecording, *, settle_s: float = 2.0) -> None:
        # SIGINT lets screenrecord finalize the mp4 container on the device.
        self.adb_shell("pkill -INT screenrecord", check=False)
        try:
            recording.process.wait(timeout=10.0)
        except subprocess.TimeoutExpired:
            recording.process.terminate()
            try:
                recording.process.wait(timeout=5.0)
            except subprocess.TimeoutExpired:
                recording.process.kill()
                recording.process.wait()
        logger.info(
            "screen recording stopped after %.1fs (remote=%s)",
            time.monotonic() - recording.started_at,
            recording.remote_path,
        )
        if settle_s > 0:
            time.sleep(settle_s)

    def pull_recording(self, recording: ScreenRecording, dst: Path) -> Path:
        try:
            self.pull_file(recording.remote_path, dst, timeout_s=120.0)
        finally:
            self.remove_file(recording.remote_path)
        return dst
