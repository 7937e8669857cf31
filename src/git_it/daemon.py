import atexit
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import Config, RebuildCommand
from .constants import (
    APP_NAME,
    LOG_BACKUP_COUNT,
    LOG_FILE,
    MAX_LOG_SIZE,
    PID_FILE,
    STATE_DIR,
)
from .errors import GitError, NoUpstreamError
from .git_wrapper import GitRepo
from .pipeline import FailedAtStep, RebuildOutcome, rebuild

logger = logging.getLogger(APP_NAME)

RebuildFn = Callable[..., RebuildOutcome]

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LoopState(Enum):
    """States of the reconcile loop. STOPPED is terminal."""

    IDLE = "idle"
    COMPARING = "comparing"
    RESETTING = "resetting"
    PULLING = "pulling"
    REBUILDING = "rebuilding"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RepoSnapshot:
    """Branch and commit identifiers captured for one comparison."""

    branch: str
    local: str
    remote: str

    @property
    def in_sync(self) -> bool:
        return self.local == self.remote


@dataclass
class ErrorCounters:
    """Consecutive failure counts, reset by the matching kind of success."""

    git_errors: int = 0
    build_errors: int = 0


def _short(sha: str) -> str:
    return sha[:10]


def _limit_reached(count: int, threshold: int) -> bool:
    return threshold > 0 and count >= threshold


class Reconciler:
    """Runs reconcile cycles: compare heads, then reset, pull and rebuild.

    One instance owns the error counters for the daemon's lifetime. Cycles must
    not overlap; the Lifecycle guarantees that by calling `run_cycle`
    synchronously.

    Attributes:
        config (Config): The loaded configuration.
        repo (GitRepo): The git probe for the watched working tree.
        branch (str): The branch resolved at startup.
        counters (ErrorCounters): Consecutive git and build failures.
        state (LoopState): The current state.
        stop_reason (str | None): Why the loop stopped, once STOPPED.
    """

    def __init__(
        self,
        config: Config,
        repo: GitRepo,
        branch: str,
        rebuild_fn: RebuildFn = rebuild,
    ):
        self.config = config
        self.repo = repo
        self.branch = branch
        self.counters = ErrorCounters()
        self.state = LoopState.IDLE
        self.stop_reason: str | None = None
        self._rebuild = rebuild_fn

    @property
    def stopped(self) -> bool:
        return self.state is LoopState.STOPPED

    def _transition(self, state: LoopState) -> LoopState:
        logger.debug(f"STATE: {self.state.name} -> {state.name}")
        self.state = state
        return state

    def _stop(self, reason: str) -> LoopState:
        self.stop_reason = reason
        logger.critical(f"STOPPED: {reason}")
        return self._transition(LoopState.STOPPED)

    def snapshot(self) -> RepoSnapshot:
        """Captures the local and remote heads of the tracked branch.

        Raises:
            GitError: If either head cannot be resolved.
        """
        local = self.repo.local_head()
        remote = self.repo.remote_head(self.branch)
        return RepoSnapshot(self.branch, local, remote)

    def _git_failed(self, action: str, error: GitError) -> LoopState:
        self.counters.git_errors += 1
        threshold = self.config.git.consecutive_git_errors_before_stop
        logger.error(
            f"GIT ERROR ({action}): {error} "
            f"[consecutive git errors: {self.counters.git_errors}/{threshold or '-'}]"
        )
        if isinstance(error, NoUpstreamError):
            logger.error(
                f"CONFIG ERROR: {self.branch} has no upstream to compare against."
            )
        if _limit_reached(self.counters.git_errors, threshold):
            return self._stop(
                f"{self.counters.git_errors} consecutive git errors "
                f"(last: {action} failed: {error})"
            )
        return self._transition(LoopState.IDLE)

    def _rebuild_finished(self, outcome: RebuildOutcome) -> LoopState:
        if not isinstance(outcome, FailedAtStep):
            if self.counters.build_errors:
                logger.info("REBUILD: Recovered, build error counter reset.")
            self.counters.build_errors = 0
            return self._transition(LoopState.IDLE)

        self.counters.build_errors += 1
        threshold = self.config.rebuild.consecutive_build_errors_before_stop
        logger.error(
            f"BUILD ERROR at step {outcome.index + 1} ({outcome.command}): "
            f"{outcome.reason} "
            f"[consecutive build errors: {self.counters.build_errors}/{threshold or '-'}]"
        )
        if _limit_reached(self.counters.build_errors, threshold):
            return self._stop(
                f"{self.counters.build_errors} consecutive build errors "
                f"(last: step {outcome.index + 1} '{outcome.command}': {outcome.reason})"
            )
        return self._transition(LoopState.IDLE)

    def run_cycle(self) -> LoopState:
        """Runs one reconcile cycle.

        Returns:
            LoopState: IDLE when the daemon should keep polling, STOPPED when
            an error threshold was reached (now or in an earlier cycle).
        """
        if self.stopped:
            return LoopState.STOPPED

        self._transition(LoopState.COMPARING)
        try:
            snap = self.snapshot()
        except GitError as e:
            return self._git_failed("compare", e)

        if snap.in_sync:
            logger.info(
                f"Same hash on {snap.branch} ({_short(snap.local)}), nothing changed."
            )
            self.counters.git_errors = 0
            return self._transition(LoopState.IDLE)

        logger.info(
            f"CHANGED {snap.branch}: local {_short(snap.local)}, "
            f"remote {_short(snap.remote)}."
        )

        if self.config.git.reset_before_pull:
            self._transition(LoopState.RESETTING)
            logger.info("RESET: Resetting local branch...")
            try:
                self.repo.hard_reset()
            except GitError as e:
                return self._git_failed("reset", e)
            logger.info("RESET: Local branch reset.")

        self._transition(LoopState.PULLING)
        logger.info("PULL: Updating local branch...")
        try:
            self.repo.pull()
        except GitError as e:
            return self._git_failed("pull", e)
        self.counters.git_errors = 0
        logger.info("PULL: Local branch updated.")

        self._transition(LoopState.REBUILDING)
        outcome = self._rebuild(
            self.config.rebuild.commands, cwd=self.config.context_path
        )
        return self._rebuild_finished(outcome)


class Lifecycle:
    """Drives the reconciler from a repeating timer until a signal or a stop.

    Each loop iteration handles exactly one event: either the shutdown event is
    set, or the next tick is due and one cycle runs synchronously. Ticks that
    fall due while a cycle is still running are coalesced into the next one.

    Attributes:
        reconciler (Reconciler): The cycle to run on every tick.
        interval (float): Seconds between ticks.
        shutdown (threading.Event): Set by the signal handlers.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        interval: float,
        shutdown: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reconciler = reconciler
        self.interval = interval
        self.shutdown = shutdown or threading.Event()
        self.received_signal: int | None = None
        self._clock = clock

    def request_shutdown(self, signum: int, _frame: FrameType | None = None) -> None:
        """Signal handler: asks the loop to exit before the next cycle."""
        self.received_signal = signum
        self.shutdown.set()

    @contextmanager
    def signal_handlers(
        self, signals: Sequence[signal.Signals] = SHUTDOWN_SIGNALS
    ) -> Iterator[None]:
        """Routes termination signals to `request_shutdown` while active."""
        previous = {sig: signal.signal(sig, self.request_shutdown) for sig in signals}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _next_deadline(self, deadline: float) -> float:
        """Schedules the tick after ``deadline``, dropping ticks already missed."""
        now = self._clock()
        next_deadline = deadline + self.interval
        if next_deadline <= now:
            missed = int((now - deadline) // self.interval)
            logger.debug(f"Cycle overran the interval, skipping {missed} tick(s).")
            next_deadline = deadline + (missed + 1) * self.interval
        return next_deadline

    def _shutdown_message(self) -> str:
        if self.received_signal is None:
            return "Shutdown requested."
        return f"{signal.Signals(self.received_signal).name} received."

    def run(self) -> int:
        """Polls until shutdown or until the reconciler stops.

        Returns:
            int: 0 after a shutdown request, 1 if the reconciler stopped.
        """
        with self.signal_handlers():
            deadline = self._clock() + self.interval
            while True:
                timeout = max(0.0, deadline - self._clock())
                if self.shutdown.wait(timeout=timeout):
                    logger.info(f"{self._shutdown_message()} git-it stopped. Exiting...")
                    return 0

                state = self.reconciler.run_cycle()
                if state is LoopState.STOPPED:
                    logger.error("Polling stopped. Exiting...")
                    return 1
                deadline = self._next_deadline(deadline)


def setup_logging(interactive: bool, verbose: bool = False) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout only. If False, logs to
                            stderr and to a rotating file.
        verbose (bool, optional): Enables debug output. Defaults to False.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        # In daemon mode, rotate logs to file.
        try:
            STATE_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=MAX_LOG_SIZE,
                backupCount=LOG_BACKUP_COUNT,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def write_pid_file(path: Path = PID_FILE) -> None:
    """Records the daemon's PID, removing the file again at exit."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(str(os.getpid()))
        atexit.register(lambda: path.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def run_rebuild_once(
    config: Config, steps: Sequence[RebuildCommand] | None = None
) -> int:
    """Runs the rebuild pipeline a single time without polling (dry run).

    Returns:
        int: 0 if every step succeeded, 1 otherwise.
    """
    outcome = rebuild(
        config.rebuild.commands if steps is None else steps,
        cwd=config.context_path,
    )
    if isinstance(outcome, FailedAtStep):
        logger.error(f"Dry run failed at step {outcome.index + 1}: {outcome.reason}")
        return 1
    return 0


def main(config: Config, interactive: bool = False) -> int:
    """The polling daemon entry point.

    Resolves the tracked branch (fatal if impossible), then polls until a
    termination signal arrives or an error threshold is reached.

    Args:
        config (Config): The loaded configuration.
        interactive (bool, optional): Log to stdout instead of stderr and the
            log file. Defaults to False.

    Returns:
        int: The process exit status.
    """
    repo = GitRepo.from_config(config)
    try:
        branch = repo.current_branch()
    except GitError as e:
        logger.critical(f"FATAL: Could not determine the branch to track: {e}")
        return 1
    logger.info(f"Checked on branch {branch}.")

    if not interactive:
        write_pid_file()

    interval = config.general.check_interval_seconds
    logger.info(f"Polling {config.context_path} every {interval}s...")
    lifecycle = Lifecycle(Reconciler(config, repo, branch), interval)
    return lifecycle.run()
