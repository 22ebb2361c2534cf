"""CLI utility functions for buildmatrix.

This module provides common utilities used across CLI commands including:
- System selection (current host, explicit list, or every system)
- Logging setup
- Error handling and formatting
- Result reporting
"""

import logging
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Sequence

from buildmatrix.build.checks import CheckResult
from buildmatrix.build.outputs import ExportedOutputs
from buildmatrix.config import current_system

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "buildmatrix.log"


def setup_logging(log_dir: Path, verbose: bool = False) -> Path:
    """Setup logging for a CLI run.

    Everything at INFO and above goes to a rotating log file under log_dir;
    with verbose the same records are also echoed to stderr.

    Args:
        log_dir: Directory for buildmatrix.log
        verbose: Also log to the console

    Returns:
        Path of the log file
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    logger = logging.getLogger("buildmatrix")
    logger.setLevel(logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    return log_file


class SystemSelector:
    """Chooses the systems a command runs for."""

    @staticmethod
    def select(systems: Optional[Sequence[str]], all_systems: bool) -> Optional[List[str]]:
        """Resolve --system / --all-systems.

        Args:
            systems: Systems given with --system (may be empty or None)
            all_systems: Whether --all-systems was given

        Returns:
            Explicit systems, or None to use every configured system

        Raises:
            PlatformError: If the host system cannot be detected
        """
        if all_systems:
            return None
        if systems:
            return list(systems)
        return [current_system()]


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str, verbose: bool = False) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "Configuration error", "Build failed")
            message: Error message details
            verbose: Whether to print verbose output (e.g., traceback)
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}✗ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def handle_file_not_found(error: FileNotFoundError) -> None:
        """Handle FileNotFoundError with standard formatting."""
        ErrorFormatter.print_error("Error: File not found", str(error))
        print("Make sure you're in a Cargo project directory (Cargo.toml, optional buildmatrix.ini).")
        sys.exit(1)

    @staticmethod
    def handle_permission_error(error: PermissionError) -> None:
        """Handle PermissionError with standard formatting."""
        ErrorFormatter.print_error("Error: Permission denied", str(error))
        sys.exit(1)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Build interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_usage_error(title: str, error: Exception) -> None:
        """Handle invalid configuration or arguments (exit code 2)."""
        ErrorFormatter.print_error(title, str(error))
        sys.exit(2)

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)
        if not project_dir.is_dir():
            print(f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(2)


class ResultPrinter:
    """Prints run results."""

    @staticmethod
    def print_checks(results: Sequence[CheckResult], verbose: bool = False) -> None:
        for result in results:
            mark = f"{ErrorFormatter.GREEN}✓" if result.success else f"{ErrorFormatter.RED}✗"
            print(f"  {mark} {result.name}{ErrorFormatter.RESET} ({result.duration:.2f}s)")
            if (verbose or not result.success) and result.diagnostic:
                for line in result.diagnostic.rstrip().splitlines():
                    print(f"      {line}")

    @staticmethod
    def print_outputs(outputs: ExportedOutputs, verbose: bool = False) -> None:
        """Print per-system packages, check results and failures."""
        for system, platform_outputs in outputs.per_system.items():
            print(f"{system}:")
            package = platform_outputs.packages.get("default")
            if package is not None:
                for binary in package.binaries:
                    print(f"  package: {binary}")
            ResultPrinter.print_checks(list(platform_outputs.checks.values()), verbose)

        for failure in outputs.failures:
            ErrorFormatter.print_error(f"{failure.platform}: {failure.stage} failed", failure.message)
            if failure.checks:
                ResultPrinter.print_checks(failure.checks, verbose)
