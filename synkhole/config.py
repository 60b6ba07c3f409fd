"""Configuration management for synkhole.

This module provides dataclasses for configuration and functions for
parsing/formatting TOML configuration files.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import tomllib

from synkhole.storage import resolve_storage_root


class ConfigurationError(Exception):
    """Raised when configuration file is missing or malformed."""
    pass


class ValidationError(Exception):
    """Raised when configuration values have invalid types or values."""
    pass


# Supported synchronizer primitives
SYNCHRONIZER_TYPES = ("rsync", "copy")


@dataclass
class Settings:
    """
    Plain settings handed to the backup pipeline.

    storage_dir is namespaced per machine by host_identity; an empty
    host_identity means "use this host's fully qualified name".
    """
    sources: List[Path]
    storage_dir: Path
    max_age_days: int = 30
    host_identity: str = ""

    @property
    def storage_root(self) -> Path:
        return resolve_storage_root(self.storage_dir, self.host_identity or None)


@dataclass
class SynchronizerConfig:
    """Configuration for the synchronizer primitive."""
    type: str = "rsync"  # "rsync" or "copy"
    rsync_path: str = "rsync"
    timeout_seconds: int = 3600
    extra_args: List[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/synkhole.log"
    )
    error_log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/synkhole.err"
    )
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass
class LockConfig:
    """
    Configuration for the run lock.

    Without an explicit lock_file the lock sits beside the storage root, so
    every configuration and user writing to that root shares it.
    """
    lock_file: Optional[Path] = None
    timeout_seconds: int = 5


@dataclass
class Configuration:
    """Main configuration for synkhole."""
    settings: Settings
    synchronizer: SynchronizerConfig = field(default_factory=SynchronizerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    lock: LockConfig = field(default_factory=LockConfig)


# Default config file path
DEFAULT_CONFIG_PATH = Path.home() / ".config/synkhole/config.toml"

# Required keys in the [main] section
REQUIRED_KEYS = ["storage_dir", "sources"]


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int; a boolean is never a valid integer setting
    if expected_type is int and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path))


def _parse_settings(main_data: Dict[str, Any]) -> Settings:
    """Parse the [main] section into Settings."""
    for key in REQUIRED_KEYS:
        if key not in main_data:
            raise ConfigurationError(f"Missing required configuration key: '{key}'")

    storage_dir = main_data["storage_dir"]
    _validate_type(storage_dir, str, "storage_dir")

    sources = main_data["sources"]
    _validate_type(sources, list, "sources")
    if not sources:
        raise ValidationError("Key 'sources' must list at least one directory")
    for i, src in enumerate(sources):
        _validate_type(src, str, f"sources[{i}]")

    max_age_days = main_data.get("max_age_days", 30)
    _validate_type(max_age_days, int, "max_age_days")
    if max_age_days < 0:
        raise ValidationError(
            f"Key 'max_age_days' must not be negative, got {max_age_days}"
        )

    host_identity = main_data.get("host_identity", "")
    _validate_type(host_identity, str, "host_identity")
    if "/" in host_identity or host_identity in (".", ".."):
        raise ValidationError(
            f"Key 'host_identity' must be a single path component, got '{host_identity}'"
        )

    return Settings(
        sources=[_expand(s) for s in sources],
        storage_dir=_expand(storage_dir),
        max_age_days=max_age_days,
        host_identity=host_identity,
    )


def _parse_synchronizer_config(data: Dict[str, Any]) -> SynchronizerConfig:
    """Parse synchronizer configuration from dict."""
    sync_data = data.get("synchronizer", {})

    sync_type = sync_data.get("type", "rsync")
    _validate_type(sync_type, str, "synchronizer.type")
    if sync_type not in SYNCHRONIZER_TYPES:
        raise ValidationError(
            f"Key 'synchronizer.type' must be one of {', '.join(SYNCHRONIZER_TYPES)}, "
            f"got '{sync_type}'"
        )

    rsync_path = sync_data.get("rsync_path", "rsync")
    _validate_type(rsync_path, str, "synchronizer.rsync_path")

    timeout = sync_data.get("timeout_seconds", 3600)
    _validate_type(timeout, int, "synchronizer.timeout_seconds")

    extra_args = sync_data.get("extra_args", [])
    _validate_type(extra_args, list, "synchronizer.extra_args")
    for i, arg in enumerate(extra_args):
        _validate_type(arg, str, f"synchronizer.extra_args[{i}]")

    return SynchronizerConfig(
        type=sync_type,
        rsync_path=rsync_path,
        timeout_seconds=timeout,
        extra_args=list(extra_args),
    )


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})

    level = logging_data.get("level", "INFO")
    _validate_type(level, str, "logging.level")

    log_file = logging_data.get(
        "log_file",
        str(Path.home() / ".local/log/synkhole.log")
    )
    _validate_type(log_file, str, "logging.log_file")

    error_log_file = logging_data.get(
        "error_log_file",
        str(Path.home() / ".local/log/synkhole.err")
    )
    _validate_type(error_log_file, str, "logging.error_log_file")

    log_max_size_mb = logging_data.get("log_max_size_mb", 10)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")

    log_backup_count = logging_data.get("log_backup_count", 5)
    _validate_type(log_backup_count, int, "logging.log_backup_count")

    return LoggingConfig(
        level=level,
        log_file=_expand(log_file),
        error_log_file=_expand(error_log_file),
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def _parse_lock_config(data: Dict[str, Any]) -> LockConfig:
    """Parse lock configuration from dict."""
    lock_data = data.get("lock", {})

    lock_file = lock_data.get("lock_file")
    if lock_file is not None:
        _validate_type(lock_file, str, "lock.lock_file")

    timeout = lock_data.get("timeout_seconds", 5)
    _validate_type(timeout, int, "lock.timeout_seconds")

    return LockConfig(
        lock_file=_expand(lock_file) if lock_file is not None else None,
        timeout_seconds=timeout,
    )


def parse_config_string(toml_content: str) -> Configuration:
    """
    Parse TOML string into Configuration object.

    Args:
        toml_content: TOML formatted string

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If TOML is malformed or a required key is missing
        ValidationError: If a value has the wrong type or is out of range
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    # Main section may be nested under [main] or at root
    main_data = data.get("main", data)

    return Configuration(
        settings=_parse_settings(main_data),
        synchronizer=_parse_synchronizer_config(data),
        logging=_parse_logging_config(data),
        lock=_parse_lock_config(data),
    )


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Parse TOML configuration file into Configuration object.

    Args:
        config_path: Path to config file. Defaults to ~/.config/synkhole/config.toml

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If file doesn't exist or required key missing
        ValidationError: If value has wrong type
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        )

    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(
            f"Error reading configuration file {config_path}: {e}"
        )

    return parse_config_string(content)


def _escape_toml_string(s: str) -> str:
    """Escape a string for TOML basic string format."""
    # Must escape backslashes first, then quotes
    return s.replace("\\", "\\\\").replace('"', '\\"')


def _format_string_list(values: List[str]) -> List[str]:
    if not values:
        return ["[]"]
    lines = ["["]
    for value in values:
        lines.append(f'    "{_escape_toml_string(value)}",')
    lines.append("]")
    return lines


def format_config(config: Configuration) -> str:
    """
    Format Configuration object back to TOML string.

    Args:
        config: Configuration object to format

    Returns:
        TOML formatted string
    """
    settings = config.settings
    lines = []

    lines.append("[main]")
    lines.append(f'storage_dir = "{_escape_toml_string(str(settings.storage_dir))}"')
    source_lines = _format_string_list([str(s) for s in settings.sources])
    lines.append(f"sources = {source_lines[0]}")
    lines.extend(source_lines[1:])
    lines.append(f"max_age_days = {settings.max_age_days}")
    if settings.host_identity:
        lines.append(f'host_identity = "{_escape_toml_string(settings.host_identity)}"')
    lines.append("")

    lines.append("[synchronizer]")
    lines.append(f'type = "{_escape_toml_string(config.synchronizer.type)}"')
    lines.append(f'rsync_path = "{_escape_toml_string(config.synchronizer.rsync_path)}"')
    lines.append(f"timeout_seconds = {config.synchronizer.timeout_seconds}")
    arg_lines = _format_string_list(config.synchronizer.extra_args)
    lines.append(f"extra_args = {arg_lines[0]}")
    lines.extend(arg_lines[1:])
    lines.append("")

    lines.append("[logging]")
    lines.append(f'level = "{_escape_toml_string(config.logging.level)}"')
    lines.append(f'log_file = "{_escape_toml_string(str(config.logging.log_file))}"')
    lines.append(f'error_log_file = "{_escape_toml_string(str(config.logging.error_log_file))}"')
    lines.append(f"log_max_size_mb = {config.logging.log_max_size_mb}")
    lines.append(f"log_backup_count = {config.logging.log_backup_count}")
    lines.append("")

    lines.append("[lock]")
    if config.lock.lock_file is not None:
        lines.append(f'lock_file = "{_escape_toml_string(str(config.lock.lock_file))}"')
    lines.append(f"timeout_seconds = {config.lock.timeout_seconds}")

    return "\n".join(lines)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `synkhole init`.

    Returns:
        TOML formatted string with default configuration
    """
    return '''# synkhole configuration file

[main]
# Snapshots are stored under <storage_dir>/<host_identity>/
storage_dir = "/mnt/backups"

# Directories to back up; symlinks are resolved to their targets
sources = [
    "/etc",
    "~/projects",
]

# Snapshots older than this many days are removed after each run
max_age_days = 30

# Defaults to the fully qualified host name
# host_identity = "myhost.example.org"

[synchronizer]
# "rsync" (recommended) or "copy" (pure Python, no rsync needed)
type = "rsync"
rsync_path = "rsync"
timeout_seconds = 3600
extra_args = []

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "~/.local/log/synkhole.log"
error_log_file = "~/.local/log/synkhole.err"
log_max_size_mb = 10
log_backup_count = 5

[lock]
# Only one run per storage root may be active at a time. By default the
# lock file is <storage_dir>/.<host_identity>.lock, shared by every
# configuration and user backing up into the same storage root.
# lock_file = "~/.cache/synkhole/synkhole.lock"
timeout_seconds = 5
'''
