"""Console logging set up from a filter specification."""

from __future__ import annotations

import logging
import sys

TRACE = 5
OFF = logging.CRITICAL + 10

logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": OFF,
}

_LEVEL_NAMES = {
    TRACE: "TRACE",
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}

_COLOURS = {
    TRACE: "\x1b[35m",
    logging.DEBUG: "\x1b[34m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31m",
}
_RESET = "\x1b[0m"


class _ConsoleFormatter(logging.Formatter):
    def __init__(self, ansi: bool) -> None:
        super().__init__()
        self._ansi = ansi

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%Y-%m-%dT%H:%M:%S")
        level = f"{_LEVEL_NAMES.get(record.levelno, record.levelname):>5}"
        if self._ansi:
            level = f"{_COLOURS.get(record.levelno, '')}{level}{_RESET}"
        line = f"{timestamp} {level} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class _ConsoleHandler(logging.StreamHandler):
    pass


def _parse_level(text: str) -> int:
    try:
        return _LEVELS[text.strip().lower()]
    except KeyError:
        raise ValueError(f"invalid log level: {text!r}") from None


def _parse_filter(spec: str) -> tuple[int, dict[str, int]]:
    default: int | None = None
    targets: dict[str, int] = {}
    directives = [part.strip() for part in spec.split(",") if part.strip()]

    for directive in directives:
        target, sep, level = directive.rpartition("=")
        if sep:
            if not target.strip():
                raise ValueError(f"invalid log directive: {directive!r}")
            targets[target.strip().replace("::", ".")] = _parse_level(level)
        elif directive.lower() in _LEVELS:
            default = _LEVELS[directive.lower()]
        else:
            targets[directive.replace("::", ".")] = TRACE

    if default is None:
        default = OFF if directives else logging.ERROR
    return default, targets


def configure_logging(log_level: str) -> logging.Handler:
    """Install a console handler filtered by a spec such as "info" or "quincy=debug,warn"."""
    default, targets = _parse_filter(log_level)

    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, _ConsoleHandler)]:
        root.removeHandler(handler)

    handler = _ConsoleHandler(sys.stdout)
    handler.setFormatter(_ConsoleFormatter(ansi=True))
    root.addHandler(handler)
    root.setLevel(default)

    for target, level in targets.items():
        logging.getLogger(target).setLevel(level)

    return handler