"""Process-wide loguru setup shared by the relay and the capture client."""

import logging
import sys
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

from loguru import logger

LOG_ROTATION_SIZE = "10 MB"
LOG_RETENTION_MAX_FILES = 20
LOG_FILENAME_TEMPLATE = "xr-osc-bridge-{role}.log"
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[role]}</cyan> | {message}"
)

RotationRule = str | int | float | timedelta | Callable[[Any, Any], bool]
RetentionRule = str | int | float | timedelta | Callable[[list[Any]], Any]


class InterceptHandler(logging.Handler):
    """Redirect stdlib logging (pyzmq, asyncio, warnings) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except (ValueError, TypeError):
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def log_file_name(role: str) -> str:
    return LOG_FILENAME_TEMPLATE.format(role=role)


def keep_newest_files(logs: list[Any], keep: int = LOG_RETENTION_MAX_FILES) -> list[Path]:
    """Retention policy: delete all but the ``keep`` most recent log files.

    Returns the paths that were removed.
    """
    dated: list[tuple[float, Path]] = []
    for path in logs:
        try:
            p = Path(path)
            dated.append((p.stat().st_mtime, p))
        except (OSError, TypeError, ValueError):
            continue

    dated.sort(key=lambda item: item[0], reverse=True)
    removed: list[Path] = []
    for _, path in dated[keep:]:
        try:
            path.unlink()
        except OSError as exc:
            logger.debug(f"Retention skip for {path}: {exc}")
            continue
        removed.append(path)
    return removed


def configure_logging(
    log_dir: Path | None,
    role: str = "server",
    console_level: str = "INFO",
    console_json: bool = False,
    rotation: RotationRule | None = None,
    retention: RetentionRule | None = None,
) -> Path | None:
    """
    Install the console sink and, when ``log_dir`` is set, a rotated JSON file sink.

    Args:
        log_dir: Directory for ``xr-osc-bridge-<role>.log``; file logging is off when None.
        role: "server" or "client"; tags every record and names the log file.
        console_level: Console level string (e.g., INFO/DEBUG).
        console_json: Emit console records as JSON instead of coloured text.
        rotation: loguru rotation rule; defaults to 10 MB.
        retention: loguru retention rule; defaults to keeping the newest 20 files.

    Returns:
        The log file path when a file sink was installed, else None.
    """
    logger.remove()
    logger.configure(extra={"role": role})

    console_kwargs: dict[str, Any] = {
        "level": console_level.upper(),
        "serialize": console_json,
        "enqueue": True,
        "backtrace": False,
        "diagnose": False,
    }
    if not console_json:
        console_kwargs["format"] = CONSOLE_FORMAT
    logger.add(sys.stderr, **console_kwargs)

    log_file: Path | None = None
    if log_dir is not None:
        log_dir_path = Path(log_dir)
        try:
            log_dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Failed to create log directory {log_dir_path}: {exc}")
        else:
            log_file = log_dir_path / log_file_name(role)
            logger.add(
                log_file,
                level="DEBUG",
                serialize=True,
                rotation=rotation if rotation is not None else LOG_ROTATION_SIZE,
                retention=retention if retention is not None else keep_newest_files,
                enqueue=True,
                backtrace=False,
                diagnose=False,
            )
            logger.info(f"File logging enabled at {log_file}")

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.NOTSET, force=True)
    logging.captureWarnings(True)
    return log_file
