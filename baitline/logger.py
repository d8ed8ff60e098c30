"""Central logging configuration for the package."""

from __future__ import annotations

import json
import logging
import re
import sys
from dataclasses import dataclass
from datetime import datetime

TRACE = 5
PANIC = 60

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(PANIC, "PANIC")

_LEVELS = {
    "panic": PANIC,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_LEVEL_NAMES = {
    PANIC: "panic",
    logging.CRITICAL: "fatal",
    logging.ERROR: "error",
    logging.WARNING: "warning",
    logging.INFO: "info",
    logging.DEBUG: "debug",
    TRACE: "trace",
}

_PLAIN = re.compile(r"[A-Za-z0-9\-._/@^+]*")

LOGGER = logging.getLogger("baitline")


class InvalidLevelError(ValueError):
    """Raised when a configured log level is not recognised."""


@dataclass
class LogConfig:
    """Logging options: an optional file to append to and a level name."""

    filename: str = ""
    level: str = ""


def _quote(text: str) -> str:
    if _PLAIN.fullmatch(text):
        return text
    return json.dumps(text, ensure_ascii=False)


class _TextFormatter(logging.Formatter):
    """Formats records as key=value pairs with the time, level and message."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")
        level = _LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        parts = [f'time="{stamp}"', f"level={level}", f"msg={_quote(record.getMessage())}"]
        fields = getattr(record, "fields", None) or {}
        parts.extend(f"{key}={_quote(str(fields[key]))}" for key in sorted(fields))
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


_installed: list[logging.Handler] = []


def _install(handlers: list[logging.Handler]) -> None:
    formatter = _TextFormatter()
    for handler in _installed:
        LOGGER.removeHandler(handler)
        handler.close()
    _installed.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        LOGGER.addHandler(handler)
        _installed.append(handler)


def parse_level(name: str) -> int:
    """Return the logging level for a name such as "debug" or "warn"."""
    try:
        return _LEVELS[name.lower()]
    except KeyError:
        raise InvalidLevelError(f"not a valid log level: {name!r}") from None


def setup(config: LogConfig) -> None:
    """Apply the level and output file from the configuration.

    An empty level means info. With a filename, records go to both stderr
    and the file, which is opened for appending and created if missing.
    """
    level = parse_level(config.level) if config.level else logging.INFO
    LOGGER.setLevel(level)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.filename:
        handlers.append(logging.FileHandler(config.filename, mode="a", encoding="utf-8"))
    _install(handlers)


LOGGER.setLevel(logging.INFO)
_install([logging.StreamHandler(sys.stderr)])