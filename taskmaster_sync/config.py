"""Settings for taskmaster-sync.

Values are merged from four sources, later ones winning:

    1. :class:`Config` defaults
    2. The ``[taskmaster-sync]`` section of the first ``config.ini`` found
       (working directory, then ``$XDG_CONFIG_HOME``, ``%APPDATA%`` on Windows,
       or ``~/.config``)
    3. ``TASKMASTER_SYNC_<FIELD>`` environment variables, e.g.
       ``TASKMASTER_SYNC_PORT`` or ``TASKMASTER_SYNC_DEBOUNCE_SECONDS``
    4. Command-line arguments that are not None

``TASKMASTER_SYNC_REPOSITORIES`` (and the ``repositories`` ini key) take a
comma-separated list. Booleans accept true/1/yes/on. Everything is validated
before the server starts; problems surface as ``ValueError``.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

CONFIG_SECTION = "taskmaster-sync"
CONFIG_FILENAME = "config.ini"
ENV_PREFIX = "TASKMASTER_SYNC_"

TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class Config:
    """Resolved server settings.

    Attributes:
        host (str): Interface the WebSocket server binds to.
        port (int): WebSocket server port.
        enabled (bool): When False, repository registration is refused.
        debounce_seconds (float): Quiet period after the last file event before
            ``tasks.json`` is read.
        max_repositories (int): Upper bound on monitored repositories.
        max_consecutive_errors (int): Drop a repository after this many watch
            errors in a row; 0 never drops.
        use_polling (bool): Use watchdog's polling observer.
        polling_interval (float): Seconds between polls.
        repositories (List[str]): Absolute repository paths monitored on startup.
        log_file (Optional[str]): Absolute log file path.
        log_level (str): Logging level name.
    """

    host: str = "127.0.0.1"
    port: int = 3001
    enabled: bool = True
    debounce_seconds: float = 0.5
    max_repositories: int = 10
    max_consecutive_errors: int = 0
    use_polling: bool = False
    polling_interval: float = 0.1
    repositories: List[str] = field(default_factory=list)
    log_file: Optional[str] = None
    log_level: str = "INFO"


def _get_config_file_paths() -> List[str]:
    """Candidate config files, most specific first."""
    if os.environ.get("XDG_CONFIG_HOME"):
        user_dir = os.path.expanduser(os.environ["XDG_CONFIG_HOME"])
    elif os.name == "nt" and os.environ.get("APPDATA"):
        user_dir = os.path.expanduser(os.environ["APPDATA"])
    else:
        user_dir = os.path.join(os.path.expanduser("~"), ".config")
    return [CONFIG_FILENAME, os.path.join(user_dir, CONFIG_SECTION, CONFIG_FILENAME)]


def _read_config_file() -> Dict[str, str]:
    for path in _get_config_file_paths():
        if not os.path.isfile(path):
            continue
        logger.debug(f"Reading settings from {path}")
        parser = ConfigParser(interpolation=None)
        try:
            parser.read(path, encoding="utf-8-sig")
        except (ConfigParserError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to parse config file {path}: {e}")
            return {}
        if CONFIG_SECTION not in parser:
            return {}
        return {
            key.replace("-", "_"): value
            for key, value in parser[CONFIG_SECTION].items()
            if value
        }
    return {}


def _validate_log_path(path_str: str) -> str:
    """Return the absolute form of ``path_str`` after proving it is writable.

    Raises:
        ValueError: The parent directory is missing, the path is not a regular
            file, or it cannot be opened for appending.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        parent = path.parent.resolve(strict=True)
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ValueError(f"Invalid path (parent directory not found): {path}") from e

    resolved = parent / path.name
    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _normalize_repositories(value: Any) -> List[str]:
    """Turn a comma-separated string or list into absolute repository paths."""
    if isinstance(value, str):
        raw = [p.strip() for p in value.split(",")]
    else:
        raw = [str(p).strip() for p in value]

    repositories: List[str] = []
    for item in raw:
        if not item:
            continue
        resolved = os.path.abspath(os.path.expanduser(item))
        if resolved not in repositories:
            repositories.append(resolved)
    return repositories


# (key, converter, type name, bound check, complaint when the check fails)
_NUMERIC_RULES: List[tuple] = [
    ("port", int, "integer", lambda v: 1 <= v <= 65535, "Port must be between 1 and 65535"),
    ("debounce_seconds", float, "float", lambda v: v >= 0, "debounce_seconds must be non-negative"),
    ("max_repositories", int, "integer", lambda v: v >= 1, "max_repositories must be at least 1"),
    (
        "max_consecutive_errors",
        int,
        "integer",
        lambda v: v >= 0,
        "max_consecutive_errors must be non-negative",
    ),
    ("polling_interval", float, "float", lambda v: v > 0, "polling_interval must be positive"),
]


def _coerce_number(
    values: Dict[str, Any], key: str, convert: Callable[[Any], Any], type_name: str
) -> Any:
    try:
        return convert(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {type_name} for {key}: {values[key]}") from e


def load_config(args: Dict[str, Any]) -> Config:
    """Merge every settings source and validate the result.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, usually
            ``vars(parser.parse_args())``. None values fall through to lower
            sources; keys that are not Config fields (``debug``) are dropped.

    Raises:
        ValueError: A number is malformed or out of range, the log level is
            unknown, or the log file cannot be written.

    Examples:
        >>> load_config({"port": 9999}).port
        9999
        >>> load_config({}).max_repositories
        10
    """
    names = [f.name for f in fields(Config)]
    defaults = Config()
    values: Dict[str, Any] = {name: getattr(defaults, name) for name in names}

    values.update(_read_config_file())
    for name in names:
        env_value = os.getenv(ENV_PREFIX + name.upper())
        if env_value:
            values[name] = env_value
    values.update({key: value for key, value in args.items() if value is not None})

    for key, convert, type_name, in_range, complaint in _NUMERIC_RULES:
        values[key] = _coerce_number(values, key, convert, type_name)
        if not in_range(values[key]):
            raise ValueError(f"{complaint}, got {values[key]}")

    for flag in ("enabled", "use_polling"):
        if isinstance(values[flag], str):
            values[flag] = values[flag].lower() in TRUE_VALUES

    values["repositories"] = _normalize_repositories(values["repositories"] or [])

    if values["log_file"]:
        values["log_file"] = _validate_log_path(str(values["log_file"]))

    if args.get("debug"):
        values["log_level"] = "DEBUG"
    values["log_level"] = str(values["log_level"]).upper()
    if not isinstance(getattr(logging, values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {values['log_level']}")

    return Config(**{name: values[name] for name in names})
