"""git-it: Rebuild a working tree whenever its upstream branch moves.

This package provides the command-line interface, the polling daemon, and the
git, command-runner and rebuild-pipeline building blocks it drives.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    pipeline,
    runner,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "pipeline",
    "runner",
]
