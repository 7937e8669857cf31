import argparse
import json
import logging
import sys
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon
from .config import Config, to_camel
from .constants import APP_NAME, DEFAULT_CONFIG_FILE

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)


class StartupMode(Enum):
    """What the process does after parsing its arguments."""

    GENERATE_CONFIG = "generate-config"
    DRY_RUN = "dry-run"
    LIST_CONFIG = "list-config"
    POLL = "poll"


# (section, attribute, type, description) for the schema table.
CONFIG_REFERENCE = [
    (
        "general",
        "check_interval_seconds",
        "int | str",
        "Seconds between checks (e.g. 10, '30s', '5m').",
    ),
    (
        "general",
        "context_path",
        "str",
        "Working tree the git and rebuild commands run in.",
    ),
    (
        "git",
        "binary_path",
        "str",
        "Git executable to use. Empty uses 'git' from PATH.",
    ),
    (
        "git",
        "consecutive_git_errors_before_stop",
        "int",
        "Failed git cycles in a row before stopping. 0 never stops.",
    ),
    (
        "git",
        "local_commands_timeout",
        "int | str",
        "Timeout for local git commands. 0 disables it.",
    ),
    (
        "git",
        "origin_commands_timeout",
        "int | str",
        "Timeout for git commands reaching the remote. 0 disables it.",
    ),
    (
        "git",
        "reset_before_pull",
        "bool",
        "Run 'git reset --hard' before every pull.",
    ),
    (
        "rebuild",
        "consecutive_build_errors_before_stop",
        "int",
        "Failed rebuilds in a row before stopping. 0 never stops.",
    ),
    (
        "rebuild",
        "commands",
        "list",
        "Steps run in order: {command, timeout}. Split on whitespace, not a shell.",
    ),
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Poll a git branch and rebuild when upstream changes.",
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "-gc",
        "--generate-config",
        action="store_true",
        help=(
            "Write the default configuration file and exit. An existing file "
            "is kept unless --force is given"
        ),
    )
    modes.add_argument(
        "-dr",
        "--dry-run",
        action="store_true",
        help="Run the rebuild commands once and exit",
    )
    modes.add_argument(
        "--list-config",
        action="store_true",
        help="List all configuration options and their defaults",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Overwrite an existing file with --generate-config",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def resolve_mode(args: argparse.Namespace) -> StartupMode:
    """Maps parsed arguments to the single startup mode they select."""
    if args.generate_config:
        return StartupMode.GENERATE_CONFIG
    if args.dry_run:
        return StartupMode.DRY_RUN
    if args.list_config:
        return StartupMode.LIST_CONFIG
    return StartupMode.POLL


def generate_config(path: Path, force: bool = False) -> int:
    """Writes the default configuration to ``path``."""
    if path.exists() and not force:
        err_console.print(
            f"[bold red]ERROR:[/bold red] {path} already exists. "
            "Use --force to overwrite it."
        )
        return 1
    try:
        Config().save(path)
    except OSError as e:
        logger.error(f"Could not write configuration file {path}: {e}")
        err_console.print(f"[bold red]ERROR:[/bold red] Could not write {path}: {e}")
        return 1
    console.print(
        f"[bold green]SUCCESS:[/bold green] Default configuration written to {path}."
    )
    return 0


def dry_run(path: Path) -> int:
    """Runs the configured rebuild pipeline once."""
    config = Config.load(path)
    code = daemon.run_rebuild_once(config)
    if code == 0:
        console.print("[bold green]SUCCESS:[/bold green] Rebuild finished.")
    else:
        err_console.print(
            "[bold red]FAILED:[/bold red] Rebuild did not finish. See log above."
        )
    return code


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    defaults = Config().to_dict()

    table = Table(title="git-it Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    previous = None
    for section, attr, type_name, description in CONFIG_REFERENCE:
        key = to_camel(attr)
        default = json.dumps(defaults[section][key])
        table.add_row(
            section if section != previous else "", key, type_name, default, description
        )
        previous = section

    console.print(table)


def run(argv: list[str] | None = None) -> int:
    """Parses arguments, resolves the startup mode and dispatches to it.

    Returns:
        int: The process exit status.
    """
    args = build_parser().parse_args(argv)
    mode = resolve_mode(args)

    if mode is StartupMode.LIST_CONFIG:
        show_config_reference()
        return 0

    daemon.setup_logging(interactive=mode is not StartupMode.POLL, verbose=args.verbose)

    if mode is StartupMode.GENERATE_CONFIG:
        return generate_config(args.config, force=args.force)
    if mode is StartupMode.DRY_RUN:
        return dry_run(args.config)
    return daemon.main(Config.load(args.config))


def main() -> None:
    """Main entry point for the git-it CLI."""
    sys.exit(run())


if __name__ == "__main__":
    main()
