"""Exception hierarchy shared by the probe, the pipeline and the daemon loop."""


class GitItError(Exception):
    """Base class for every error raised by git-it."""


class ConfigLoadError(GitItError):
    """Raised when a configuration file cannot be read or parsed."""


class GitError(GitItError):
    """Base class for failures of a git command.

    Attributes:
        command (str): The git invocation that failed, for log context.
        stderr (str): Whatever the command wrote to stderr (may be empty).
    """

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class GitProbeError(GitError):
    """Raised when a read-only query (branch, hashes, upstream) fails."""


class NoUpstreamError(GitProbeError):
    """Raised when the tracked branch has no upstream configured."""


class GitOperationError(GitError):
    """Raised when a mutating operation (pull, reset) fails."""


class BuildFailureError(GitItError):
    """A rebuild step exited with a non-zero status or could not be parsed."""


class BuildTimeoutError(BuildFailureError):
    """A rebuild step exceeded its timeout and was terminated."""


class ProcessSpawnError(GitItError):
    """The operating system refused to start a process."""


class ProcessKillError(GitItError):
    """A timed-out process survived SIGKILL and could not be reaped."""
