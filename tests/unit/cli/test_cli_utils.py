"""Unit tests for CLI utilities."""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from buildmatrix.build.checks import CheckResult
from buildmatrix.cli_utils import (
    LOG_FILENAME,
    ErrorFormatter,
    PathValidator,
    ResultPrinter,
    SystemSelector,
    setup_logging,
)


@pytest.fixture
def clean_logger():
    yield logging.getLogger("buildmatrix")
    logger = logging.getLogger("buildmatrix")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_only_by_default(self, tmp_path, clean_logger):
        log_file = setup_logging(tmp_path / "logs")

        logging.getLogger("buildmatrix.build.orchestrator").info("matrix started")

        assert log_file == tmp_path / "logs" / LOG_FILENAME
        assert len(clean_logger.handlers) == 1
        for handler in clean_logger.handlers:
            handler.flush()
        assert "buildmatrix.build.orchestrator - INFO - matrix started" in log_file.read_text()

    def test_verbose_adds_console(self, tmp_path, clean_logger):
        setup_logging(tmp_path, verbose=True)

        assert len(clean_logger.handlers) == 2

    def test_repeated_setup_does_not_duplicate(self, tmp_path, clean_logger):
        setup_logging(tmp_path)
        setup_logging(tmp_path)

        assert len(clean_logger.handlers) == 1


class TestSystemSelector:
    """Tests for SystemSelector."""

    def test_all_systems(self):
        assert SystemSelector.select(["x86_64-linux"], all_systems=True) is None

    def test_explicit(self):
        assert SystemSelector.select(["aarch64-darwin", "x86_64-linux"], False) == ["aarch64-darwin", "x86_64-linux"]

    def test_defaults_to_host(self):
        with patch("buildmatrix.cli_utils.current_system", return_value="aarch64-darwin"):
            assert SystemSelector.select([], False) == ["aarch64-darwin"]
            assert SystemSelector.select(None, False) == ["aarch64-darwin"]


class TestErrorFormatter:
    """Tests for ErrorFormatter."""

    def test_print_error(self, capsys):
        ErrorFormatter.print_error("Build failed", "details here")

        out = capsys.readouterr().out
        assert "✗ Build failed" in out
        assert "details here" in out

    def test_usage_error_exit_code(self):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_usage_error("Configuration error", ValueError("bad jobs"))
        assert exc_info.value.code == 2

    def test_keyboard_interrupt_exit_code(self):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_keyboard_interrupt()
        assert exc_info.value.code == 130

    def test_unexpected_error_verbose_traceback(self, capsys):
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            with pytest.raises(SystemExit) as exc_info:
                ErrorFormatter.handle_unexpected_error(e, verbose=True)

        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "RuntimeError: boom" in out
        assert "Traceback:" in out


class TestPathValidator:
    def test_valid(self, tmp_path):
        PathValidator.validate_project_dir(tmp_path)

    def test_not_a_directory(self, tmp_path):
        path = tmp_path / "Cargo.toml"
        path.write_text("")

        with pytest.raises(SystemExit) as exc_info:
            PathValidator.validate_project_dir(path)
        assert exc_info.value.code == 2

    def test_missing(self):
        with pytest.raises(SystemExit) as exc_info:
            PathValidator.validate_project_dir(Path("/definitely/not/here"))
        assert exc_info.value.code == 2


class TestResultPrinter:
    def test_failed_check_shows_diagnostic(self, capsys):
        results = [
            CheckResult("clippy", "x86_64-linux", False, "error: unused variable `x`\n", 1.5),
            CheckResult("test", "x86_64-linux", True, "test result: ok", 0.25),
        ]

        ResultPrinter.print_checks(results)

        out = capsys.readouterr().out
        assert "clippy" in out
        assert "unused variable `x`" in out
        assert "test result: ok" not in out

    def test_verbose_shows_passing_output(self, capsys):
        ResultPrinter.print_checks([CheckResult("test", "x86_64-linux", True, "test result: ok")], verbose=True)

        assert "test result: ok" in capsys.readouterr().out
