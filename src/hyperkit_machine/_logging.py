"""Centralized logging for hyperkit-machine.

Library logging conventions:
- NullHandler on the library root logger
- No other handlers unless an entry point calls configure_logging()
- HYPERKIT_MACHINE_LOG_LEVEL env var controls the level

Modules attach machine context through ``extra={...}`` (machine, pid, ip,
cmd, identifier, ...). The CLI handler renders it after the message:

    INFO [2026-02-25 10:02:54] hyperkit_machine.driver - Machine started machine=default ip=192.168.64.2

Lifecycle operations run on the caller's thread and the CLI exits right
after them, so records are written straight to stderr.
"""

import logging
import os
import shlex

import click

LIBRARY_LOGGER_NAME: str = "hyperkit_machine"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = os.environ.get("HYPERKIT_MACHINE_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and unknown names
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

_LEVEL_COLORS = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


def _render_value(value: object) -> str:
    if isinstance(value, (list, tuple)):
        return shlex.quote(shlex.join(str(v) for v in value))
    return shlex.quote(str(value))


class ContextFormatter(logging.Formatter):
    """Standard line format followed by the record's ``extra`` fields as key=value."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{key}={_render_value(value)}"
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        ]
        if not context:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} {' '.join(context)}{sep}{tail}"


class _ClickHandler(logging.Handler):
    """Writes to stderr via click.echo; warnings and errors are colored.

    click.echo() strips ANSI codes when stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            color = _LEVEL_COLORS.get(record.levelno)
            click.echo(click.style(msg, fg=color, dim=color is None), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All hyperkit_machine modules use this instead of logging.getLogger()
    so the logger hierarchy stays under LIBRARY_LOGGER_NAME.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds the click handler if none exists (idempotent), then sets the
    log level. Consumers that configure their own handlers are unaffected.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _ClickHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_ClickHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
