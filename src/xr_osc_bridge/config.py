"""Configuration management for xr-osc-bridge.

This module provides TOML-based configuration support with CLI override capability.
The bundled default.toml has one table per process role: ``[server]`` for the
relay and ``[client]`` for the capture client.

Configuration priority: CLI args > user config > default config
"""

from __future__ import annotations

import argparse
import importlib.resources
import sys
import tomllib
from dataclasses import dataclass, fields
from dataclasses import replace as dataclass_replace
from pathlib import Path
from typing import Any, NamedTuple, TypeVar

from .simulator import MovementPattern
from .types import StreamId

SERVER_SECTION = "server"
CLIENT_SECTION = "client"

VALID_LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
MOVEMENT_PATTERNS = [p.value for p in MovementPattern]


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


class DefaultConfigError(Exception):
    """Raised when default configuration cannot be loaded.

    This is a fatal error that prevents startup.
    """

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to load default configuration: {message}")


class ConfigOverride(NamedTuple):
    """A configuration value that differs from the bundled default."""

    key: str
    default_value: Any
    new_value: Any


@dataclass
class ServerConfig:
    """Relay server settings. Defaults come from the ``[server]`` table."""

    # Transport listener
    bind_host: str
    listen_port: int

    # OSC destinations
    osc_target_host: str
    osc_hmd_host: str | None
    osc_hmd_port: int
    osc_controller0_host: str | None
    osc_controller0_port: int
    osc_controller1_host: str | None
    osc_controller1_port: int
    channel_reconnect_delay: float

    # Limits
    max_payload_bytes: int
    transport_max_message_bytes: int
    enforce_arity: bool

    # Timing
    heartbeat_interval: float
    heartbeat_timeout: float
    client_timeout: float
    status_log_interval: float
    poll_timeout: int

    # Diagnostics
    log_osc_messages: bool
    log_sample_rate: float
    curve_secret_key_file: str | None

    # Logging settings
    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None

    def destination_host(self, device: StreamId) -> str:
        host = getattr(self, f"osc_{device.token}_host")
        return host or self.osc_target_host

    def destination_port(self, device: StreamId) -> int:
        return getattr(self, f"osc_{device.token}_port")


@dataclass
class ClientConfig:
    """Capture client settings. Defaults come from the ``[client]`` table."""

    server_host: str
    server_port: int

    send_interval: float
    sample_rate_hz: float
    frame_rate_hz: float
    monitored_button_count: int
    streaming_enabled: bool

    reconnect_delay: float
    connect_timeout: float
    max_inbound_bytes: int
    heartbeat_interval: float
    heartbeat_timeout: float
    curve_server_public_key_file: str | None

    movement_pattern: str
    session_cycle: float
    status_interval: float

    log_dir: str | None
    log_level_console: str
    log_json_console: bool
    log_rotation: str | None
    log_retention: str | None

    @property
    def endpoint(self) -> str:
        if not self.server_host:
            return ""
        return f"tcp://{self.server_host}:{self.server_port}"


ConfigT = TypeVar("ConfigT", ServerConfig, ClientConfig)

_SECTION_TYPES: dict[str, type] = {
    SERVER_SECTION: ServerConfig,
    CLIENT_SECTION: ClientConfig,
}

# Empty strings in these keys mean "not set"
_OPTIONAL_KEYS: set[str] = {
    "osc_hmd_host",
    "osc_controller0_host",
    "osc_controller1_host",
    "curve_secret_key_file",
    "curve_server_public_key_file",
    "log_dir",
    "log_rotation",
    "log_retention",
}


def _valid_keys(section: str) -> set[str]:
    return {f.name for f in fields(_SECTION_TYPES[section])}


def load_default_toml_data() -> dict[str, Any]:
    """Load the default.toml data from the bundled package resource.

    Raises:
        DefaultConfigError: If default.toml cannot be found or parsed.
    """
    try:
        files = importlib.resources.files("xr_osc_bridge")
        content = files.joinpath("default.toml").read_bytes()
        return tomllib.loads(content.decode("utf-8"))
    except FileNotFoundError as e:
        raise DefaultConfigError(f"default.toml not found in package: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise DefaultConfigError(f"Invalid TOML syntax in default.toml: {e}") from e
    except Exception as e:
        raise DefaultConfigError(f"Failed to read default.toml: {e}") from e


def load_config_from_toml(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        tomllib.TOMLDecodeError: If the TOML syntax is invalid.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def process_toml_config(section_data: dict[str, Any], section: str) -> dict[str, Any]:
    """Keep the known keys of one TOML table, normalising empty optionals to None."""
    valid = _valid_keys(section)
    result: dict[str, Any] = {}
    for key, value in section_data.items():
        if key not in valid:
            continue
        if key in _OPTIONAL_KEYS and value == "":
            value = None
        result[key] = value
    return result


def get_unknown_keys(toml_data: dict[str, Any]) -> list[str]:
    """Detect unknown tables and keys, reported as ``table.key``."""
    unknown: list[str] = []
    for section, section_data in toml_data.items():
        if section not in _SECTION_TYPES or not isinstance(section_data, dict):
            unknown.append(section)
            continue
        valid = _valid_keys(section)
        unknown.extend(f"{section}.{key}" for key in section_data if key not in valid)
    return unknown


def _check_port(errors: list[str], name: str, port: Any) -> None:
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        errors.append(f"{name} must be between 1 and 65535, got {port}")


def _check_positive(errors: list[str], name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        errors.append(f"{name} must be positive, got {value}")


def _check_log_level(errors: list[str], level: str) -> None:
    if str(level).upper() not in VALID_LOG_LEVELS:
        errors.append(f"log_level_console must be one of {VALID_LOG_LEVELS}, got {level}")


def validate_server_config(config: ServerConfig) -> list[str]:
    """Validate relay settings. Returns a list of errors, empty when valid."""
    errors: list[str] = []

    for name in ("listen_port", "osc_hmd_port", "osc_controller0_port", "osc_controller1_port"):
        _check_port(errors, name, getattr(config, name))

    ports = [config.destination_port(d) for d in StreamId]
    if len(set(ports)) != len(ports):
        errors.append(f"OSC destination ports must be distinct, got {ports}")

    if not config.osc_target_host:
        errors.append("osc_target_host must not be empty")

    for name in (
        "channel_reconnect_delay",
        "heartbeat_interval",
        "heartbeat_timeout",
        "client_timeout",
        "status_log_interval",
        "poll_timeout",
        "max_payload_bytes",
        "transport_max_message_bytes",
    ):
        _check_positive(errors, name, getattr(config, name))

    if (
        isinstance(config.max_payload_bytes, int)
        and isinstance(config.transport_max_message_bytes, int)
        and config.transport_max_message_bytes < config.max_payload_bytes
    ):
        errors.append(
            f"transport_max_message_bytes ({config.transport_max_message_bytes}) must not be "
            f"smaller than max_payload_bytes ({config.max_payload_bytes})"
        )

    if not 0.0 <= config.log_sample_rate <= 1.0:
        errors.append(f"log_sample_rate must be between 0 and 1, got {config.log_sample_rate}")

    _check_log_level(errors, config.log_level_console)
    return errors


def validate_client_config(config: ClientConfig) -> list[str]:
    """Validate capture client settings. Returns a list of errors."""
    errors: list[str] = []

    _check_port(errors, "server_port", config.server_port)
    for name in (
        "send_interval",
        "sample_rate_hz",
        "frame_rate_hz",
        "reconnect_delay",
        "connect_timeout",
        "max_inbound_bytes",
        "heartbeat_interval",
        "heartbeat_timeout",
        "status_interval",
    ):
        _check_positive(errors, name, getattr(config, name))

    if config.monitored_button_count < 0:
        errors.append(
            f"monitored_button_count must not be negative, got {config.monitored_button_count}"
        )
    if config.session_cycle < 0:
        errors.append(f"session_cycle must not be negative, got {config.session_cycle}")
    if config.movement_pattern not in MOVEMENT_PATTERNS:
        errors.append(
            f"movement_pattern must be one of {MOVEMENT_PATTERNS}, got {config.movement_pattern}"
        )

    _check_log_level(errors, config.log_level_console)
    return errors


def validate_config(config: ServerConfig | ClientConfig) -> list[str]:
    if isinstance(config, ServerConfig):
        return validate_server_config(config)
    return validate_client_config(config)


def load_default_config(section: str = SERVER_SECTION) -> Any:
    """Build the config for ``section`` from the bundled default.toml.

    Raises:
        DefaultConfigError: If default.toml cannot be loaded or is incomplete.
    """
    config_cls = _SECTION_TYPES[section]
    try:
        toml_data = load_default_toml_data()
        section_data = toml_data.get(section)
        if not isinstance(section_data, dict):
            raise DefaultConfigError(f"Missing [{section}] table in default.toml")
        config_data = process_toml_config(section_data, section)

        missing = _valid_keys(section) - set(config_data.keys())
        if missing:
            raise DefaultConfigError(
                f"Missing required fields in default.toml [{section}]: "
                f"{', '.join(sorted(missing))}"
            )
        return config_cls(**config_data)
    except DefaultConfigError:
        raise
    except TypeError as e:
        raise DefaultConfigError(f"Invalid field types in default.toml: {e}") from e


def _merge_logging_args(updates: dict[str, Any], args: argparse.Namespace) -> None:
    if getattr(args, "log_dir", None) is not None:
        updates["log_dir"] = str(args.log_dir)
    if getattr(args, "log_level_console", None) is not None:
        updates["log_level_console"] = args.log_level_console
    if getattr(args, "log_json_console", False):
        updates["log_json_console"] = True
    if getattr(args, "log_rotation", None) is not None:
        updates["log_rotation"] = args.log_rotation
    if getattr(args, "log_retention", None) is not None:
        updates["log_retention"] = args.log_retention


def merge_server_cli_args(config: ServerConfig, args: argparse.Namespace) -> ServerConfig:
    """Apply explicitly given server CLI flags on top of ``config``."""
    updates: dict[str, Any] = {}

    cli_map = {
        "bind_host": "bind_host",
        "port": "listen_port",
        "osc_host": "osc_target_host",
        "hmd_port": "osc_hmd_port",
        "controller0_port": "osc_controller0_port",
        "controller1_port": "osc_controller1_port",
    }
    for arg_name, key in cli_map.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            updates[key] = value

    if getattr(args, "log_osc_messages", False):
        updates["log_osc_messages"] = True

    _merge_logging_args(updates, args)

    if not updates:
        return config
    return dataclass_replace(config, **updates)


def merge_client_cli_args(config: ClientConfig, args: argparse.Namespace) -> ClientConfig:
    """Apply explicitly given client CLI flags on top of ``config``."""
    updates: dict[str, Any] = {}

    cli_map = {
        "server": "server_host",
        "port": "server_port",
        "pattern": "movement_pattern",
        "session_cycle": "session_cycle",
    }
    for arg_name, key in cli_map.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            updates[key] = value

    if getattr(args, "enable_streaming", False):
        updates["streaming_enabled"] = True

    _merge_logging_args(updates, args)

    if not updates:
        return config
    return dataclass_replace(config, **updates)


def merge_cli_args(config: ConfigT, args: argparse.Namespace) -> ConfigT:
    if isinstance(config, ServerConfig):
        return merge_server_cli_args(config, args)
    return merge_client_cli_args(config, args)


def create_config_from_args(
    args: argparse.Namespace, section: str = SERVER_SECTION
) -> tuple[Any, list[ConfigOverride]]:
    """Create the ``section`` config from CLI arguments with layered loading.

    Returns:
        Tuple of (config instance, list of ConfigOverride from the user file).

    Raises:
        DefaultConfigError: If default.toml cannot be loaded (fatal).
        FileNotFoundError: If specified user config file does not exist.
        tomllib.TOMLDecodeError: If config file has invalid TOML syntax.
        ConfigurationError: If configuration validation fails.
    """
    config = load_default_config(section)
    overrides: list[ConfigOverride] = []

    if getattr(args, "config", None) is not None:
        user_config_path = Path(args.config)
        toml_data = load_config_from_toml(user_config_path)

        # stderr: logging is not configured yet
        unknown = get_unknown_keys(toml_data)
        if unknown:
            print(f"WARNING: Unknown keys in {user_config_path}:", file=sys.stderr)
            for key in unknown:
                print(f"  - {key}", file=sys.stderr)

        section_data = toml_data.get(section)
        config_data = (
            process_toml_config(section_data, section) if isinstance(section_data, dict) else {}
        )
        if config_data:
            for key, new_value in config_data.items():
                default_value = getattr(config, key)
                if default_value != new_value:
                    overrides.append(ConfigOverride(key, default_value, new_value))
            config = dataclass_replace(config, **config_data)

    config = merge_cli_args(config, args)

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(errors)

    return config, overrides


def get_version() -> str:
    """
    Return the package version.
    Priority:
      1) importlib.metadata for 'xr-osc-bridge' (when installed)
      2) parse nearest pyproject.toml (when running from source)
      3) 'unknown'
    """
    import importlib.metadata as im

    try:
        return im.version("xr-osc-bridge")
    except im.PackageNotFoundError:
        for dist in im.packages_distributions().get("xr_osc_bridge", []):
            try:
                return im.version(dist)
            except im.PackageNotFoundError:
                pass

    for parent in Path(__file__).resolve().parents:
        toml_path = parent / "pyproject.toml"
        if toml_path.exists():
            data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
            v = (data.get("project") or {}).get("version")
            if v:
                return v
            break

    return "unknown"


def add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    """Logging flags shared by the relay and the capture client."""
    parser.add_argument("--log-dir", type=Path, help="Directory for rotated JSON log files")
    parser.add_argument(
        "--log-level-console",
        help="Console log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument(
        "--log-json-console", action="store_true", help="Emit console logs as JSON"
    )
    parser.add_argument("--log-rotation", help="loguru rotation rule, e.g. '10 MB' or '1 day'")
    parser.add_argument("--log-retention", help="loguru retention rule, e.g. '7 days'")


def load_config_or_exit(args: argparse.Namespace, section: str) -> tuple[Any, list[ConfigOverride]]:
    """Layered config load; reports problems on stderr and exits with status 1."""
    try:
        return create_config_from_args(args, section)
    except DefaultConfigError as e:
        print(f"FATAL: {e}", file=sys.stderr)
    except FileNotFoundError as e:
        print(f"ERROR: Config file not found: {e}", file=sys.stderr)
    except tomllib.TOMLDecodeError as e:
        print(f"ERROR: Invalid TOML in config file: {e}", file=sys.stderr)
    except ConfigurationError as e:
        print("ERROR: Invalid configuration:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
    sys.exit(1)
