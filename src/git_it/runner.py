import logging
import os
import signal
import subprocess
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

from .constants import APP_NAME, KILL_GRACE_SECONDS, REAP_TIMEOUT_SECONDS

logger = logging.getLogger(APP_NAME)


class RunStatus(Enum):
    """How a command invocation ended."""

    EXITED = "exited"
    TIMED_OUT = "timed-out"
    SPAWN_FAILED = "spawn-failed"
    KILL_FAILED = "kill-failed"


@dataclass
class RunResult:
    """Outcome of a single command execution.

    Attributes:
        argv (list[str]): The program and arguments that were run.
        status (RunStatus): How the invocation ended.
        returncode (int | None): Exit status, when the process was reaped.
        stdout (str): Captured standard output (best-effort on timeout).
        stderr (str): Captured standard error (best-effort on timeout).
        elapsed (float): Wall-clock seconds between spawn and completion.
        pid (int | None): The process ID, None if the spawn failed.
        error (str): Reason for a spawn or kill failure.
    """

    argv: list[str]
    status: RunStatus
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0
    pid: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        """True if the process ran to completion with exit status 0."""
        return self.status is RunStatus.EXITED and self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    def describe(self) -> str:
        """A one-line summary suitable for log messages."""
        if self.status is RunStatus.EXITED:
            return f"exited with status {self.returncode} after {self.elapsed:.1f}s"
        if self.status is RunStatus.TIMED_OUT:
            return f"timed out after {self.elapsed:.1f}s and was terminated"
        if self.status is RunStatus.SPAWN_FAILED:
            return f"could not be started: {self.error}"
        return f"timed out and could not be killed: {self.error}"


def _signal_group(proc: subprocess.Popen, sig: signal.Signals) -> None:
    """Sends ``sig`` to the process group led by ``proc``."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass  # Group already gone.
    except OSError as e:
        logger.warning(f"Could not send {sig.name} to process group {proc.pid}: {e}")


def _terminate(proc: subprocess.Popen) -> bool:
    """Terminates a timed-out process and its whole group, then reaps it.

    The group gets SIGTERM first and SIGKILL if the process is still alive
    after a grace period.

    Args:
        proc (subprocess.Popen): The process to stop.

    Returns:
        bool: Whether the process was reaped.
    """
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
        return True
    except subprocess.TimeoutExpired:
        pass

    _signal_group(proc, signal.SIGKILL)
    try:
        proc.wait(timeout=REAP_TIMEOUT_SECONDS)
        return True
    except subprocess.TimeoutExpired:
        return False


def _read_back(stream: IO[bytes]) -> str:
    """Returns everything written to a capture file so far."""
    stream.seek(0)
    return stream.read().decode(errors="replace")


def run(
    program: str,
    args: Sequence[str] = (),
    timeout: float = 0,
    cwd: Path | None = None,
) -> RunResult:
    """Executes an external command and waits for it to exit or time out.

    The child runs in its own session, so a terminal interrupt aimed at the
    daemon never reaches it, and on timeout the whole process group can be
    terminated at once. Output goes to temporary files rather than pipes:
    the wait ends when the child exits, even if processes it started in the
    background keep its output open.

    Args:
        program (str): The executable to run.
        args (Sequence[str], optional): Arguments passed to the program.
        timeout (float, optional): Seconds before the process is terminated.
            0 means no timeout. Defaults to 0.
        cwd (Path | None, optional): Working directory for the process.

    Returns:
        RunResult: The outcome. Spawn and kill failures are reported through
        the result status rather than raised.
    """
    argv = [program, *args]
    logger.debug(f"RUN {' '.join(argv)} (timeout: {timeout or 'none'})")
    start = time.monotonic()

    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            return RunResult(
                argv,
                RunStatus.SPAWN_FAILED,
                elapsed=time.monotonic() - start,
                error=str(e),
            )

        try:
            proc.wait(timeout=timeout or None)
        except subprocess.TimeoutExpired:
            reaped = _terminate(proc)
            elapsed = time.monotonic() - start
            if not reaped:
                logger.error(
                    f"KILL ERROR: pid {proc.pid} ({' '.join(argv)}) "
                    "did not exit after SIGKILL."
                )
                return RunResult(
                    argv,
                    RunStatus.KILL_FAILED,
                    elapsed=elapsed,
                    pid=proc.pid,
                    error=f"pid {proc.pid} did not exit after SIGKILL",
                )
            return RunResult(
                argv,
                RunStatus.TIMED_OUT,
                returncode=proc.returncode,
                stdout=_read_back(out),
                stderr=_read_back(err),
                elapsed=elapsed,
                pid=proc.pid,
            )
        except BaseException:
            # Never leave a child behind, whatever interrupted the wait.
            if proc.poll() is None:
                _terminate(proc)
            raise

        elapsed = time.monotonic() - start
        return RunResult(
            argv,
            RunStatus.EXITED,
            returncode=proc.returncode,
            stdout=_read_back(out),
            stderr=_read_back(err),
            elapsed=elapsed,
            pid=proc.pid,
        )
