import logging
from collections.abc import Callable
from pathlib import Path

from .config import Config
from .constants import APP_NAME
from .errors import (
    GitError,
    GitOperationError,
    GitProbeError,
    NoUpstreamError,
    ProcessKillError,
    ProcessSpawnError,
)
from .runner import RunResult, RunStatus, run

logger = logging.getLogger(APP_NAME)

Runner = Callable[..., RunResult]


class GitRepo:
    """A wrapper around the Git command-line interface for the watched working tree.

    Every command goes through the command runner with either the local or
    the origin timeout. Read-only queries raise `GitProbeError` on failure,
    mutating operations raise `GitOperationError`.

    Attributes:
        path (Path): The working tree the commands run in.
        binary (str): The git executable.
        local_timeout (float): Timeout for commands that stay on this machine.
        origin_timeout (float): Timeout for commands that talk to the remote.
    """

    def __init__(
        self,
        path: Path,
        binary: str = "git",
        local_timeout: float = 0,
        origin_timeout: float = 0,
        runner: Runner = run,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The working tree to operate on.
            binary (str, optional): The git executable. Defaults to "git".
            local_timeout (float, optional): Seconds allowed for local commands.
                0 means no timeout.
            origin_timeout (float, optional): Seconds allowed for network
                commands. 0 means no timeout.
            runner (Runner, optional): Command runner, replaceable in tests.
        """
        self.path = path
        self.binary = binary
        self.local_timeout = local_timeout
        self.origin_timeout = origin_timeout
        self._runner = runner

    @classmethod
    def from_config(cls, config: Config, runner: Runner = run) -> "GitRepo":
        """Builds a GitRepo from the loaded configuration."""
        return cls(
            config.context_path,
            binary=config.git_binary,
            local_timeout=config.git.local_commands_timeout,
            origin_timeout=config.git.origin_commands_timeout,
            runner=runner,
        )

    def _exec(self, args: list[str], timeout: float) -> RunResult:
        return self._runner(self.binary, args, timeout=timeout, cwd=self.path)

    def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        error_cls: type[GitError] = GitProbeError,
    ) -> str:
        """Executes a git command and returns its stripped stdout.

        Args:
            args (list[str]): Arguments passed to git.
            timeout (float | None, optional): Overrides the local timeout.
            error_cls (type[GitError], optional): Exception raised on failure.

        Raises:
            GitError: An instance of ``error_cls`` if the command did not exit
                with status 0.
        """
        if timeout is None:
            timeout = self.local_timeout
        result = self._exec(args, timeout)
        if not result.ok:
            raise self._error(result, error_cls)
        return result.stdout.strip()

    @staticmethod
    def _error(result: RunResult, error_cls: type[GitError]) -> GitError:
        stderr = result.stderr.strip()
        message = f"Git error: '{result.command}' {result.describe()}"
        if stderr:
            message += f": {stderr}"
        error = error_cls(message, command=result.command, stderr=stderr)
        if result.status is RunStatus.SPAWN_FAILED:
            error.__cause__ = ProcessSpawnError(result.error)
        elif result.status is RunStatus.KILL_FAILED:
            error.__cause__ = ProcessKillError(result.error)
        return error

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Raises:
            GitProbeError: If git fails or HEAD is detached.
        """
        branch = self._run(["rev-parse", "--abbrev-ref", "HEAD"])
        if not branch or branch == "HEAD":
            raise GitProbeError(
                "HEAD is detached; check out a branch to track",
                command="rev-parse --abbrev-ref HEAD",
            )
        return branch

    def local_head(self) -> str:
        """Resolves the commit currently checked out."""
        return self._run(["rev-parse", "HEAD"])

    def _config_value(self, key: str) -> str | None:
        """Reads a git config value, returning None if it is not set."""
        result = self._exec(["config", "--get", key], self.local_timeout)
        # `git config --get` exits with status 1 when the key is missing.
        if result.status is RunStatus.EXITED and result.returncode == 1:
            return None
        if not result.ok:
            raise self._error(result, GitProbeError)
        return result.stdout.strip() or None

    def upstream(self, branch: str) -> tuple[str, str]:
        """Resolves the upstream of a branch, i.e. what `<branch>@{upstream}` names.

        Args:
            branch (str): The local branch.

        Returns:
            tuple[str, str]: The remote name and the ref on that remote
            (e.g. ("origin", "refs/heads/main")).

        Raises:
            NoUpstreamError: If the branch does not track anything.
        """
        remote = self._config_value(f"branch.{branch}.remote")
        merge = self._config_value(f"branch.{branch}.merge")
        if not remote or not merge:
            raise NoUpstreamError(
                f"No upstream configured for branch '{branch}'. "
                f"Run 'git branch --set-upstream-to=<remote>/{branch}'.",
                command=f"config --get branch.{branch}.remote",
            )
        return remote, merge

    def remote_head(self, branch: str) -> str:
        """Asks the remote for the current commit of the branch's upstream.

        The query is read-only: no local ref is updated.

        Args:
            branch (str): The local branch whose upstream is checked.

        Returns:
            str: The full SHA-1 of the upstream ref on the remote.

        Raises:
            NoUpstreamError: If the branch has no upstream.
            GitProbeError: If the remote cannot be queried or lacks the ref.
        """
        remote, merge = self.upstream(branch)
        output = self._run(["ls-remote", remote, merge], timeout=self.origin_timeout)
        for line in output.splitlines():
            sha, _, ref = line.partition("\t")
            if ref.strip() == merge:
                return sha.strip()
        raise GitProbeError(
            f"Upstream ref {merge} not found on remote '{remote}'",
            command=f"ls-remote {remote} {merge}",
        )

    def pull(self) -> None:
        """Pulls the upstream changes into the working tree.

        Raises:
            GitOperationError: If the pull fails or times out.
        """
        self._run(["pull"], timeout=self.origin_timeout, error_cls=GitOperationError)

    def hard_reset(self) -> None:
        """Discards uncommitted changes (`git reset --hard`).

        Raises:
            GitOperationError: If the reset fails or times out.
        """
        self._run(["reset", "--hard"], error_cls=GitOperationError)
