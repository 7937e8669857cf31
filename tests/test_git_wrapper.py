"""Tests for the git state probe."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_it.config import Config, GeneralConfig, GitConfig
from git_it.errors import (
    GitOperationError,
    GitProbeError,
    NoUpstreamError,
    ProcessKillError,
    ProcessSpawnError,
)
from git_it.git_wrapper import GitRepo
from git_it.runner import RunResult, RunStatus

SHA = "3f786850e387550fdab836ed7e6dc881de23001b"


def _ok(stdout: str = "") -> RunResult:
    return RunResult(["git"], RunStatus.EXITED, returncode=0, stdout=stdout)


def _exit(code: int, stderr: str = "") -> RunResult:
    return RunResult(["git"], RunStatus.EXITED, returncode=code, stderr=stderr)


@pytest.fixture
def runner() -> MagicMock:
    """A command runner stub answering git invocations by their arguments."""
    answers = {
        ("rev-parse", "--abbrev-ref", "HEAD"): _ok("main\n"),
        ("rev-parse", "HEAD"): _ok(f"{SHA}\n"),
        ("config", "--get", "branch.main.remote"): _ok("origin\n"),
        ("config", "--get", "branch.main.merge"): _ok("refs/heads/main\n"),
        ("ls-remote", "origin", "refs/heads/main"): _ok(
            f"{SHA}\trefs/heads/main\n"
            "0000000000000000000000000000000000000000\trefs/heads/main-old\n"
        ),
        ("pull",): _ok(),
        ("reset", "--hard"): _ok(),
    }

    def answer(program: str, args: list[str], **kwargs: object) -> RunResult:
        return answers.get(tuple(args), _exit(128, "fatal: unexpected"))

    mock = MagicMock(side_effect=answer)
    mock.answers = answers
    return mock


@pytest.fixture
def repo(tmp_path: Path, runner: MagicMock) -> GitRepo:
    return GitRepo(
        tmp_path, binary="git", local_timeout=2, origin_timeout=10, runner=runner
    )


def test_probe_reads_branch_and_heads(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies the happy path of every read-only query."""
    assert repo.current_branch() == "main"
    assert repo.local_head() == SHA
    assert repo.upstream("main") == ("origin", "refs/heads/main")
    assert repo.remote_head("main") == SHA


def test_timeouts_follow_command_kind(
    repo: GitRepo, runner: MagicMock, tmp_path: Path
) -> None:
    """Verifies that network commands use the origin timeout, others the local one."""
    repo.local_head()
    runner.assert_called_with("git", ["rev-parse", "HEAD"], timeout=2, cwd=tmp_path)

    repo.remote_head("main")
    runner.assert_called_with(
        "git", ["ls-remote", "origin", "refs/heads/main"], timeout=10, cwd=tmp_path
    )

    repo.pull()
    runner.assert_called_with("git", ["pull"], timeout=10, cwd=tmp_path)

    repo.hard_reset()
    runner.assert_called_with("git", ["reset", "--hard"], timeout=2, cwd=tmp_path)


def test_detached_head_is_a_probe_error(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies that a detached HEAD cannot be tracked."""
    runner.answers[("rev-parse", "--abbrev-ref", "HEAD")] = _ok("HEAD\n")

    with pytest.raises(GitProbeError, match="detached"):
        repo.current_branch()


def test_missing_upstream_is_reported(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies that a branch without upstream raises instead of returning ''."""
    runner.answers[("config", "--get", "branch.main.merge")] = _exit(1)

    with pytest.raises(NoUpstreamError, match="No upstream configured"):
        repo.remote_head("main")

    # The ls-remote call is never attempted.
    assert all(call.args[1][0] != "ls-remote" for call in runner.call_args_list)


def test_upstream_ref_missing_on_remote(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies that an empty ls-remote answer is a probe error."""
    runner.answers[("ls-remote", "origin", "refs/heads/main")] = _ok("")

    with pytest.raises(GitProbeError, match="not found on remote 'origin'"):
        repo.remote_head("main")


def test_failed_query_carries_stderr(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies that git's error message is kept for the logs."""
    runner.answers[("rev-parse", "HEAD")] = _exit(128, "fatal: not a git repository")

    with pytest.raises(GitProbeError) as exc_info:
        repo.local_head()

    assert exc_info.value.stderr == "fatal: not a git repository"
    assert "not a git repository" in str(exc_info.value)


def test_pull_and_reset_failures_are_operation_errors(
    repo: GitRepo, runner: MagicMock
) -> None:
    """Verifies that mutating commands raise GitOperationError."""
    runner.answers[("pull",)] = RunResult(
        ["git", "pull"], RunStatus.TIMED_OUT, elapsed=10.0
    )
    runner.answers[("reset", "--hard")] = _exit(1, "error: unable to unlink")

    with pytest.raises(GitOperationError, match="timed out"):
        repo.pull()
    with pytest.raises(GitOperationError, match="unable to unlink"):
        repo.hard_reset()


def test_spawn_and_kill_failures_are_chained(repo: GitRepo, runner: MagicMock) -> None:
    """Verifies that process-level failures surface as the git error's cause."""
    runner.answers[("rev-parse", "HEAD")] = RunResult(
        ["git"], RunStatus.SPAWN_FAILED, error="No such file or directory: 'git'"
    )
    runner.answers[("pull",)] = RunResult(
        ["git", "pull"], RunStatus.KILL_FAILED, error="pid 42 did not exit"
    )

    with pytest.raises(GitProbeError) as probe_exc:
        repo.local_head()
    assert isinstance(probe_exc.value.__cause__, ProcessSpawnError)

    with pytest.raises(GitOperationError) as op_exc:
        repo.pull()
    assert isinstance(op_exc.value.__cause__, ProcessKillError)


def test_from_config_uses_binary_override(runner: MagicMock) -> None:
    """Verifies that the configured binary, path and timeouts are applied."""
    conf = Config(
        general=GeneralConfig(context_path="/srv/app"),
        git=GitConfig(
            binary_path="/opt/git/bin/git",
            local_commands_timeout=5,
            origin_commands_timeout=0,
        ),
    )

    repo = GitRepo.from_config(conf, runner=runner)

    assert repo.path == Path("/srv/app")
    assert repo.binary == "/opt/git/bin/git"
    assert repo.local_timeout == 5
    assert repo.origin_timeout == 0
