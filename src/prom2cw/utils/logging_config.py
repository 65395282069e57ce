"""Logging setup shared by the bridge and its tests."""

from __future__ import annotations

import sys
from contextlib import suppress
from typing import Any

from loguru import logger

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class LoggingConfig:
    """Configures loguru once for the whole process."""

    _configured = False
    _log_level = "INFO"
    _log_file: str | None = None

    @classmethod
    def configure(cls, log_level: str = "INFO", log_file: str | None = None) -> None:
        """Install the console sink and, optionally, a rotating file sink.

        Args:
            log_level: Minimum level to emit (TRACE, DEBUG, INFO, WARNING, ERROR).
            log_file: Path of a log file to write in addition to stdout.

        Raises:
            ValueError: If ``log_level`` is not a loguru level name.

        """
        if cls._configured:
            return

        level = log_level.strip().upper()
        if level not in LOG_LEVELS:
            msg = f"unknown log level {log_level!r}, expected one of {', '.join(LOG_LEVELS)}"
            raise ValueError(msg)

        cls._log_level = level
        cls._log_file = log_file

        logger.remove()
        logger.add(sys.stdout, level=level, format=cls._console_formatter, serialize=False)

        if log_file:
            logger.add(
                log_file,
                level=level,
                rotation="10 MB",
                retention="7 days",
                format=cls._file_formatter,
            )
            logger.info("File logging enabled", log_file=log_file)

        cls._configured = True
        logger.debug("Logging configuration applied", level=level)

    @staticmethod
    def _escape(value: Any) -> str:
        # loguru treats the returned format as a template
        return str(value).replace("{", "{{").replace("}", "}}").replace("<", r"\<")

    @classmethod
    def format_extra(cls, extra: dict[str, Any], *, colorize: bool = False) -> str:
        """Render structured log context as ``key=value | key=value``."""
        pairs: list[str] = []
        for key, value in extra.items():
            safe_key, safe_value = cls._escape(key), cls._escape(value)
            if colorize:
                pairs.append(f"<cyan>{safe_key}</cyan>=<magenta>{safe_value}</magenta>")
            else:
                pairs.append(f"{safe_key}={safe_value}")
        return " | ".join(pairs)

    @classmethod
    def _format(cls, record: Any, *, colorize: bool) -> str:
        time_format = "%m-%d %H:%M:%S" if colorize else "%Y-%m-%d %H:%M:%S"
        time_part = record["time"].strftime(time_format)
        level_part = f"{record['level'].name: <8}"
        location_part = f"{record['name']}:{record['function']}:{record['line']}"
        message_part = cls._escape(record["message"])

        if colorize:
            line = (
                f"<green>{time_part}</green> | <level>{level_part}</level> | "
                f"<cyan>{location_part}</cyan> | <level>{message_part}</level>"
            )
        else:
            line = f"{time_part} | {level_part} | {location_part} | {message_part}"

        if record["extra"]:
            line += " | " + cls.format_extra(record["extra"], colorize=colorize)
        if record["exception"]:
            line += "\n{exception}"
        return line + "\n"

    @classmethod
    def _console_formatter(cls, record: Any) -> str:
        return cls._format(record, colorize=True)

    @classmethod
    def _file_formatter(cls, record: Any) -> str:
        return cls._format(record, colorize=False)

    @classmethod
    def is_configured(cls) -> bool:
        """Check if logging has been configured."""
        return cls._configured

    @classmethod
    def reset(cls) -> None:
        """Reset logging configuration state.

        This is primarily useful for testing purposes.
        """
        cls._configured = False
        cls._log_level = "INFO"
        cls._log_file = None
        with suppress(ValueError):
            logger.remove()
