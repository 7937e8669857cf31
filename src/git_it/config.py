import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME, DEFAULT_CONFIG_FILE
from .errors import ConfigLoadError

logger = logging.getLogger(APP_NAME)

# Keys routed through parse_time, allowing values such as "30s" or "5m".
TIME_KEYS = {
    "check_interval_seconds",
    "local_commands_timeout",
    "origin_commands_timeout",
}
COUNT_KEYS = {
    "consecutive_git_errors_before_stop",
    "consecutive_build_errors_before_stop",
}


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def to_camel(name: str) -> str:
    """Maps a snake_case attribute name to its camelCase JSON key."""
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _coerce(key: str, value: Any) -> Any:
    """Validates one raw JSON value for the attribute ``key``.

    Raises:
        ValueError: If the value has the wrong type or is out of range.
    """
    if key in TIME_KEYS:
        seconds = parse_time(value)
        if seconds < 0:
            raise ValueError(f"must not be negative (got {seconds})")
        if key == "check_interval_seconds" and seconds == 0:
            raise ValueError("must be greater than 0")
        return seconds
    if key in COUNT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"expected a non-negative integer (got {value!r})")
        return value
    if key == "reset_before_pull":
        if not isinstance(value, bool):
            raise ValueError(f"expected true or false (got {value!r})")
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected a string (got {value!r})")
    return value


@dataclass(frozen=True)
class GeneralConfig:
    """Polling settings.

    Attributes:
        check_interval_seconds (int): Seconds between two reconcile cycles.
        context_path (str): Working tree the git and rebuild commands run in.
    """

    check_interval_seconds: int = 10
    context_path: str = "."


@dataclass(frozen=True)
class GitConfig:
    """Git invocation settings.

    Attributes:
        binary_path (str): Explicit git executable; empty means `git` from PATH.
        consecutive_git_errors_before_stop (int): Failed git cycles in a row
            before the daemon stops. 0 never stops.
        local_commands_timeout (int): Timeout for repository-local commands.
        origin_commands_timeout (int): Timeout for commands that reach the remote.
        reset_before_pull (bool): Discard local changes before every pull.
    """

    binary_path: str = ""
    consecutive_git_errors_before_stop: int = 3
    local_commands_timeout: int = 2
    origin_commands_timeout: int = 10
    reset_before_pull: bool = True


@dataclass(frozen=True)
class RebuildCommand:
    """A single rebuild step.

    Attributes:
        command (str): Program and arguments separated by whitespace.
        timeout (int): Seconds before the step is killed. 0 means no timeout.
    """

    command: str
    timeout: int = 0


@dataclass(frozen=True)
class RebuildConfig:
    """Rebuild pipeline settings.

    Attributes:
        consecutive_build_errors_before_stop (int): Failed rebuilds in a row
            before the daemon stops. 0 never stops.
        commands (tuple[RebuildCommand, ...]): Steps, executed in order.
    """

    consecutive_build_errors_before_stop: int = 5
    commands: tuple[RebuildCommand, ...] = (RebuildCommand("git --version", 0),)


@dataclass(frozen=True)
class Config:
    """Global configuration aggregator.

    Attributes:
        general (GeneralConfig): Polling settings.
        git (GitConfig): Git settings.
        rebuild (RebuildConfig): Rebuild pipeline settings.
    """

    general: GeneralConfig = field(default_factory=GeneralConfig)
    git: GitConfig = field(default_factory=GitConfig)
    rebuild: RebuildConfig = field(default_factory=RebuildConfig)

    @property
    def git_binary(self) -> str:
        """The git executable to invoke."""
        return self.git.binary_path or "git"

    @property
    def context_path(self) -> Path:
        """The working tree as a Path."""
        return Path(self.general.context_path)

    @classmethod
    def load(cls, path: Path = DEFAULT_CONFIG_FILE) -> "Config":
        """Loads the configuration file, falling back to defaults on any error.

        Args:
            path (Path): Location of the JSON configuration file.

        Returns:
            Config: The loaded configuration, or the defaults if the file is
            missing or unreadable.
        """
        logger.info(f"Loading configuration from {path}...")
        try:
            data = read_config_file(path)
        except ConfigLoadError as e:
            logger.warning(f"{e}. Using default configuration.")
            return cls()

        config = cls.from_dict(data)
        logger.info(f"Configuration loaded from {path}.")
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a configuration from parsed JSON, merging over the defaults.

        Unknown keys are reported and ignored. Invalid values fall back to the
        field's default.
        """
        instance = cls()

        unknown = set(data) - {"general", "git", "rebuild"}
        if unknown:
            logger.warning(
                f"Unknown config sections: {', '.join(sorted(unknown))}. Ignoring."
            )

        general = _section(data, "general")
        git = _section(data, "git")
        rebuild = _section(data, "rebuild")

        instance = replace(
            instance,
            general=_update_dataclass("general", instance.general, general),
            git=_update_dataclass("git", instance.git, git),
        )

        commands = rebuild.pop("commands", None)
        rebuild_section = _update_dataclass("rebuild", instance.rebuild, rebuild)
        if commands is not None:
            rebuild_section = replace(rebuild_section, commands=_parse_commands(commands))

        return replace(instance, rebuild=rebuild_section)

    def to_dict(self) -> dict[str, Any]:
        """Serializes the configuration to the JSON file layout."""
        return {
            "general": _dump_dataclass(self.general),
            "git": _dump_dataclass(self.git),
            "rebuild": {
                to_camel("consecutive_build_errors_before_stop"): (
                    self.rebuild.consecutive_build_errors_before_stop
                ),
                "commands": [
                    {"command": cmd.command, "timeout": cmd.timeout}
                    for cmd in self.rebuild.commands
                ],
            },
        }

    def save(self, path: Path = DEFAULT_CONFIG_FILE) -> None:
        """Writes the configuration as indented JSON.

        Raises:
            OSError: If the file cannot be written.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=4)
            f.write("\n")
        logger.info(f"Configuration file written to {path}.")


def read_config_file(path: Path) -> dict[str, Any]:
    """Reads and parses a JSON configuration file.

    Raises:
        ConfigLoadError: If the file is missing, unreadable, not valid JSON or
            not a JSON object.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigLoadError(f"Config file {path} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigLoadError(f"Config syntax error in {path}: {e}") from e
    except OSError as e:
        raise ConfigLoadError(f"Could not read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigLoadError(f"Config file {path} must contain a JSON object")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        logger.warning(f"Config section [{name}] must be an object. Ignoring.")
        return {}
    return dict(value)


def _dump_dataclass(instance: Any) -> dict[str, Any]:
    return {to_camel(f.name): getattr(instance, f.name) for f in fields(instance)}


def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
    """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
    by_key = {to_camel(f.name): f.name for f in fields(instance)}
    filtered_updates = {}

    # 1. Catch and warn about typos / unknown keys
    invalid_keys = set(updates) - set(by_key)
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in [{section_name}]: "
            f"{', '.join(sorted(invalid_keys))}. Ignoring."
        )

    # 2. Process valid keys
    for k, v in updates.items():
        if k not in by_key:
            continue
        try:
            filtered_updates[by_key[k]] = _coerce(by_key[k], v)
        except ValueError as e:
            logger.warning(
                f"Config error in [{section_name}].{k}: {e}. Falling back to default."
            )

    return replace(instance, **filtered_updates)


def _parse_commands(raw: Any) -> tuple[RebuildCommand, ...]:
    """Parses the rebuild.commands list, dropping malformed entries."""
    if not isinstance(raw, list):
        logger.warning("Config error in [rebuild].commands: expected a list. Ignoring.")
        return RebuildConfig().commands

    commands = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or not isinstance(item.get("command"), str):
            logger.warning(
                f"Config error in [rebuild].commands[{i}]: "
                "expected an object with a 'command' string. Skipping."
            )
            continue
        timeout = 0
        if "timeout" in item:
            try:
                timeout = parse_time(item["timeout"])
                if timeout < 0:
                    raise ValueError(f"must not be negative (got {timeout})")
            except ValueError as e:
                logger.warning(
                    f"Config error in [rebuild].commands[{i}].timeout: {e}. "
                    "Using no timeout."
                )
                timeout = 0
        commands.append(RebuildCommand(item["command"], timeout))
    return tuple(commands)
