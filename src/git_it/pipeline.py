"""Rebuild pipeline: runs the configured steps in order after a pull.

Each step is a command string split on whitespace into a program and its
arguments. This is not a shell: quotes, globs, pipes, redirections and
variables are passed through literally. Wrap the step in `sh -c` style scripts
if you need them.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import RebuildCommand
from .constants import APP_NAME
from .errors import (
    BuildFailureError,
    BuildTimeoutError,
    GitItError,
    ProcessKillError,
    ProcessSpawnError,
)
from .runner import RunResult, RunStatus, run

logger = logging.getLogger(APP_NAME)

Runner = Callable[..., RunResult]


@dataclass(frozen=True)
class AllSucceeded:
    """Every step exited with status 0 (or there were no steps)."""

    steps: int = 0


@dataclass(frozen=True)
class FailedAtStep:
    """The pipeline stopped at the first failing step.

    Attributes:
        index (int): Zero-based position of the failing step.
        command (str): The step's command string.
        reason (GitItError): Why it failed.
    """

    index: int
    command: str
    reason: GitItError


RebuildOutcome = AllSucceeded | FailedAtStep


def split_command(command: str) -> tuple[str, list[str]]:
    """Splits a step's command string into program and arguments.

    Raises:
        BuildFailureError: If the command string is blank.
    """
    parts = command.split()
    if not parts:
        raise BuildFailureError("Empty rebuild command")
    return parts[0], parts[1:]


def _failure(result: RunResult, timeout: int) -> GitItError:
    """Maps a failed run to the error that explains it."""
    if result.status is RunStatus.TIMED_OUT:
        return BuildTimeoutError(f"'{result.command}' exceeded its {timeout}s timeout")
    if result.status is RunStatus.SPAWN_FAILED:
        return ProcessSpawnError(
            f"'{result.command}' could not be started: {result.error}"
        )
    if result.status is RunStatus.KILL_FAILED:
        return ProcessKillError(f"'{result.command}' timed out and {result.error}")
    return BuildFailureError(
        f"'{result.command}' exited with status {result.returncode}"
    )


def rebuild(
    steps: Sequence[RebuildCommand],
    cwd: Path | None = None,
    runner: Runner = run,
) -> RebuildOutcome:
    """Runs the rebuild steps strictly in order, stopping at the first failure.

    Args:
        steps (Sequence[RebuildCommand]): The steps to run. May be empty.
        cwd (Path | None, optional): Working directory for every step.
        runner (Runner, optional): Command runner, replaceable in tests.

    Returns:
        RebuildOutcome: `AllSucceeded`, or `FailedAtStep` naming the step.
    """
    total = len(steps)
    if not steps:
        logger.info("REBUILD: No rebuild commands configured. Nothing to do.")
        return AllSucceeded(0)

    logger.info(f"REBUILD: Running {total} step(s)...")
    for index, step in enumerate(steps):
        label = f"step {index + 1}/{total}"
        try:
            program, args = split_command(step.command)
        except BuildFailureError as e:
            logger.error(f"REBUILD FAILED at {label}: {e}")
            return FailedAtStep(index, step.command, e)

        logger.info(f"REBUILD {label}: {step.command}")
        result = runner(program, args, timeout=step.timeout, cwd=cwd)

        if not result.ok:
            reason = _failure(result, step.timeout)
            logger.error(f"REBUILD FAILED at {label}: {reason}")
            if result.stdout.strip():
                logger.error(f"Build output:\n{result.stdout.rstrip()}")
            if result.stderr.strip():
                logger.error(f"Build errors:\n{result.stderr.rstrip()}")
            return FailedAtStep(index, step.command, reason)

        logger.info(f"REBUILD {label}: done in {result.elapsed:.1f}s")
        if result.stdout.strip():
            logger.debug(f"Build output:\n{result.stdout.rstrip()}")

    logger.info(f"REBUILD: All {total} step(s) succeeded.")
    return AllSucceeded(total)
