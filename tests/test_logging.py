"""Tests for the context formatter and CLI logging configuration."""

import logging
import sys

import pytest

from hyperkit_machine._logging import LIBRARY_LOGGER_NAME, ContextFormatter, configure_logging, get_logger


def make_record(msg: str = "Machine started", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("hyperkit_machine.driver", logging.INFO, __file__, 1, msg, (), None)
    record.__dict__.update(extra)
    return record


class TestContextFormatter:
    def test_plain_message(self) -> None:
        line = ContextFormatter().format(make_record())
        assert line.startswith("INFO [")
        assert line.endswith("hyperkit_machine.driver - Machine started")

    def test_extra_fields_are_appended(self) -> None:
        line = ContextFormatter().format(make_record(machine="default", ip="192.168.64.2", pid=4321))
        assert line.endswith("Machine started machine=default ip=192.168.64.2 pid=4321")

    def test_command_lists_are_shell_joined(self) -> None:
        line = ContextFormatter().format(make_record("Running", cmd=["/sbin/nfsd", "update"]))
        assert line.endswith("Running cmd='/sbin/nfsd update'")

    def test_context_stays_on_first_line_with_traceback(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "hyperkit_machine.driver", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        record.machine = "default"
        first, _, rest = ContextFormatter().format(record).partition("\n")
        assert first.endswith("failed machine=default")
        assert "ValueError: boom" in rest


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_library_logger(self):
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        handlers, level = list(lib_logger.handlers), lib_logger.level
        lib_logger.handlers[:] = [h for h in handlers if isinstance(h, logging.NullHandler)]
        yield
        lib_logger.handlers[:] = handlers
        lib_logger.setLevel(level)

    def test_idempotent(self) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        before = len(lib_logger.handlers)
        configure_logging(level=logging.DEBUG)
        configure_logging(level=logging.DEBUG)
        assert len(lib_logger.handlers) == before + 1
        assert lib_logger.level == logging.DEBUG

    def test_quiet_wins_over_level(self) -> None:
        configure_logging(level=logging.DEBUG, quiet=True)
        assert logging.getLogger(LIBRARY_LOGGER_NAME).level == logging.ERROR

    def test_records_reach_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level=logging.INFO)
        get_logger("hyperkit_machine.driver").warning("hyperkit pid file still exists", extra={"pid": 777})
        err = capsys.readouterr().err
        assert "hyperkit pid file still exists pid=777" in err
