"""Tests for the Command Line Interface (CLI) module."""

import io
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from git_it import cli
from git_it.cli import StartupMode
from git_it.config import Config


@pytest.fixture
def setup_logging(mocker: MagicMock) -> MagicMock:
    """Keeps the CLI from reconfiguring the real logger."""
    return mocker.patch("git_it.cli.daemon.setup_logging")


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        ([], StartupMode.POLL),
        (["-gc"], StartupMode.GENERATE_CONFIG),
        (["--generate-config", "-f"], StartupMode.GENERATE_CONFIG),
        (["-dr"], StartupMode.DRY_RUN),
        (["--dry-run", "-c", "other.json"], StartupMode.DRY_RUN),
        (["--list-config"], StartupMode.LIST_CONFIG),
        (["-v", "-c", "other.json"], StartupMode.POLL),
    ],
)
def test_resolve_mode(argv: list[str], expected: StartupMode) -> None:
    """Verifies that each flag selects exactly one startup mode."""
    args = cli.build_parser().parse_args(argv)
    assert cli.resolve_mode(args) is expected


def test_modes_are_mutually_exclusive(capsys: pytest.CaptureFixture) -> None:
    """Verifies that two mode flags at once are rejected by the parser."""
    with pytest.raises(SystemExit) as exc_info:
        cli.build_parser().parse_args(["-gc", "-dr"])

    assert exc_info.value.code == 2
    assert "not allowed with" in capsys.readouterr().err


def test_generate_config_writes_defaults(
    tmp_path: Path, setup_logging: MagicMock
) -> None:
    """Verifies that the generated file reloads as the default configuration.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        setup_logging (MagicMock): The patched logging setup.
    """
    path = tmp_path / "gitit.json"

    assert cli.run(["-gc", "-c", str(path)]) == 0

    assert Config.load(path) == Config()
    assert json.loads(path.read_text())["general"]["checkIntervalSeconds"] == 10
    setup_logging.assert_called_once_with(interactive=True, verbose=False)


def test_generate_config_refuses_to_overwrite(
    tmp_path: Path, setup_logging: MagicMock
) -> None:
    """Verifies that an existing file is only replaced with --force."""
    path = tmp_path / "gitit.json"
    path.write_text('{"general": {"checkIntervalSeconds": 99}}')

    assert cli.run(["-gc", "-c", str(path)]) == 1
    assert "99" in path.read_text()

    assert cli.run(["-gc", "-f", "-c", str(path)]) == 0
    assert Config.load(path) == Config()


def test_generate_config_reports_write_errors(tmp_path: Path) -> None:
    """Verifies that an unwritable destination is an error, not a traceback."""
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    path = blocker / "gitit.json"

    assert cli.generate_config(path) == 1
    assert not path.exists()


def test_dry_run_dispatches_once(
    tmp_path: Path, mocker: MagicMock, setup_logging: MagicMock
) -> None:
    """Verifies that dry-run runs the pipeline once and returns its status."""
    path = tmp_path / "gitit.json"
    Config().save(path)
    mock_once = mocker.patch("git_it.cli.daemon.run_rebuild_once", return_value=1)
    mock_main = mocker.patch("git_it.cli.daemon.main")

    assert cli.run(["-dr", "-c", str(path)]) == 1

    mock_once.assert_called_once_with(Config())
    mock_main.assert_not_called()
    setup_logging.assert_called_once_with(interactive=True, verbose=False)


def test_poll_mode_starts_daemon(
    tmp_path: Path, mocker: MagicMock, setup_logging: MagicMock
) -> None:
    """Verifies that the default mode loads the config and starts polling."""
    path = tmp_path / "gitit.json"
    path.write_text(json.dumps({"general": {"checkIntervalSeconds": 30}}))
    mock_main = mocker.patch("git_it.cli.daemon.main", return_value=0)

    assert cli.run(["-v", "-c", str(path)]) == 0

    config = mock_main.call_args.args[0]
    assert config.general.check_interval_seconds == 30
    setup_logging.assert_called_once_with(interactive=False, verbose=True)


def test_poll_mode_propagates_stop_status(
    mocker: MagicMock, setup_logging: MagicMock
) -> None:
    """Verifies that a stopped loop becomes a non-zero exit status."""
    mocker.patch("git_it.cli.daemon.main", return_value=1)
    mocker.patch("git_it.cli.Config.load", return_value=Config())

    assert cli.run([]) == 1


def test_list_config_shows_every_key(
    mocker: MagicMock, setup_logging: MagicMock
) -> None:
    """Verifies that the schema table lists each key with its default."""
    out = io.StringIO()
    mocker.patch("git_it.cli.console", Console(file=out, width=200))

    assert cli.run(["--list-config"]) == 0

    text = out.getvalue()
    for key in (
        "checkIntervalSeconds",
        "contextPath",
        "binaryPath",
        "consecutiveGitErrorsBeforeStop",
        "localCommandsTimeout",
        "originCommandsTimeout",
        "resetBeforePull",
        "consecutiveBuildErrorsBeforeStop",
        "commands",
    ):
        assert key in text
    assert "git --version" in text
    setup_logging.assert_not_called()


def test_main_exits_with_run_status(mocker: MagicMock) -> None:
    """Verifies that the console script exits with the dispatched status."""
    mocker.patch("git_it.cli.run", return_value=3)

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 3


def test_generate_config_help_mentions_force() -> None:
    """Verifies that the help text explains when an existing file is replaced."""
    help_text = cli.build_parser().format_help()

    assert "--force" in " ".join(help_text.split())
    action = next(
        a for a in cli.build_parser()._actions if a.dest == "generate_config"
    )
    assert "kept unless --force is given" in action.help
