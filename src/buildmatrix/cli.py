"""
Command-line interface for buildmatrix.

This module provides the `buildmatrix` CLI tool for building, checking,
formatting and developing a Cargo package across a platform matrix.
"""

import argparse
import json
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from buildmatrix import __version__
from buildmatrix.build.checks import CheckRegistryError
from buildmatrix.build.formatter import FormatterError
from buildmatrix.build.orchestrator import MatrixOrchestrator
from buildmatrix.build.outputs import AggregationIncompleteError, OverlayError
from buildmatrix.cli_utils import (
    ErrorFormatter,
    PathValidator,
    ResultPrinter,
    SystemSelector,
    setup_logging,
)
from buildmatrix.config import MatrixConfig, MatrixConfigError, PlatformError
from buildmatrix.packages import Cache, DependencyCache, ToolchainError


@dataclass
class MatrixArgs:
    """Options shared by every command."""

    project_dir: Path
    systems: List[str] = field(default_factory=list)
    all_systems: bool = False
    strict: Optional[bool] = None
    jobs: Optional[int] = None
    verbose: bool = False


@dataclass
class BuildArgs(MatrixArgs):
    """Arguments for the build command."""


@dataclass
class RunArgs(MatrixArgs):
    """Arguments for the run command."""

    app_args: List[str] = field(default_factory=list)


@dataclass
class CheckArgs(MatrixArgs):
    """Arguments for the check command."""

    names: List[str] = field(default_factory=list)


@dataclass
class FmtArgs(MatrixArgs):
    """Arguments for the fmt command."""

    check: bool = False


@dataclass
class DevelopArgs(MatrixArgs):
    """Arguments for the develop command."""

    command: Optional[str] = None


@dataclass
class CacheArgs(MatrixArgs):
    """Arguments for the cache command."""

    action: str = "list"
    keys: List[str] = field(default_factory=list)


def _orchestrator(args: MatrixArgs) -> MatrixOrchestrator:
    project_dir = args.project_dir.resolve()
    config = MatrixConfig.load(project_dir)
    cache = Cache(project_dir)
    setup_logging(cache.log_dir, args.verbose)
    return MatrixOrchestrator(
        project_dir,
        config=config,
        cache=cache,
        jobs=args.jobs,
        strict=args.strict,
        verbose=args.verbose,
    )


def _run_guarded(args: MatrixArgs, body) -> None:
    """Run a command body, mapping errors to exit codes."""
    try:
        body()
    except (MatrixConfigError, CheckRegistryError, PlatformError) as e:
        ErrorFormatter.handle_usage_error("Configuration error", e)
    except AggregationIncompleteError as e:
        ErrorFormatter.print_error("Outputs incomplete (strict mode)", str(e))
        sys.exit(1)
    except OverlayError as e:
        ErrorFormatter.print_error("No app to run", str(e))
        sys.exit(1)
    except ToolchainError as e:
        ErrorFormatter.print_error("Toolchain unavailable", str(e))
        sys.exit(1)
    except FormatterError as e:
        ErrorFormatter.print_error("Formatter failed", str(e))
        sys.exit(1)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def build_command(args: BuildArgs) -> None:
    """Build the package.

    Examples:
        buildmatrix build                        # Build for the current system
        buildmatrix build --system aarch64-linux # Build for one system
        buildmatrix build --all-systems          # Build every configured system
    """
    print(f"buildmatrix v{__version__}")
    print()

    def body() -> None:
        orchestrator = _orchestrator(args)
        systems = SystemSelector.select(args.systems, args.all_systems)
        start_time = time.time()
        outputs = orchestrator.run(systems=systems, build_package=True, run_checks=False)
        ResultPrinter.print_outputs(outputs, args.verbose)
        if not outputs.success:
            ErrorFormatter.print_error("Build failed!", f"{len(outputs.failures)} system(s) failed")
            sys.exit(1)
        ErrorFormatter.print_success("Build successful!")
        print(f"Build time: {time.time() - start_time:.2f}s")
        sys.exit(0)

    _run_guarded(args, body)


def run_command(args: RunArgs) -> None:
    """Build the package for one system and run its app.

    Examples:
        buildmatrix run                 # Build and run for the current system
        buildmatrix run -- --help       # Pass arguments to the app
    """

    def body() -> None:
        orchestrator = _orchestrator(args)
        systems = SystemSelector.select(args.systems, False)
        outputs = orchestrator.run(systems=systems[:1], build_package=True, run_checks=False)
        if outputs.failures:
            ResultPrinter.print_outputs(outputs, args.verbose)
            sys.exit(1)
        app = outputs.overlay.resolve(systems[0])
        sys.exit(subprocess.call(app.command(args.app_args)))

    _run_guarded(args, body)


def check_command(args: CheckArgs) -> None:
    """Run checks.

    Examples:
        buildmatrix check                 # Every check on the current system
        buildmatrix check clippy test     # Selected checks
        buildmatrix check --all-systems   # Every check on every system
    """
    print(f"buildmatrix v{__version__}")
    print()

    def body() -> None:
        orchestrator = _orchestrator(args)
        systems = SystemSelector.select(args.systems, args.all_systems)
        outputs = orchestrator.run(
            systems=systems,
            build_package=False,
            checks=args.names or None,
        )
        ResultPrinter.print_outputs(outputs, args.verbose)
        if not outputs.success:
            failed = len(outputs.failed_checks) + len(outputs.failures)
            ErrorFormatter.print_error("Checks failed!", f"{failed} failure(s)")
            sys.exit(1)
        ErrorFormatter.print_success("All checks passed!")
        sys.exit(0)

    _run_guarded(args, body)


def fmt_command(args: FmtArgs) -> None:
    """Format the project's files.

    Examples:
        buildmatrix fmt           # Rewrite files in place
        buildmatrix fmt --check   # Report files that would change
    """

    def body() -> None:
        orchestrator = _orchestrator(args)
        report = orchestrator.formatter.run(check=args.check)
        print(report.summary())
        if args.check and report.changed:
            sys.exit(1)
        sys.exit(0)

    _run_guarded(args, body)


def develop_command(args: DevelopArgs) -> None:
    """Enter the development shell.

    Examples:
        buildmatrix develop                       # Interactive shell
        buildmatrix develop -c "sqlx migrate run" # Run one command
    """

    def body() -> None:
        orchestrator = _orchestrator(args)
        system = SystemSelector.select(args.systems, False)[0]
        shell = orchestrator.dev_shell(system)
        command = shlex.split(args.command) if args.command else None
        sys.exit(shell.enter(command))

    _run_guarded(args, body)


def show_command(args: MatrixArgs) -> None:
    """Print the outputs a run would export as JSON."""

    def body() -> None:
        orchestrator = _orchestrator(args)
        systems = args.systems or None
        print(json.dumps(orchestrator.describe(systems), indent=2))
        sys.exit(0)

    _run_guarded(args, body)


def cache_command(args: CacheArgs) -> None:
    """List, clear or evict dependency cache entries, or clean build outputs."""

    def body() -> None:
        cache = Cache(args.project_dir.resolve())
        deps_cache = DependencyCache(cache)
        if args.action == "clean":
            if args.systems:
                systems = list(args.systems)
            elif cache.build_root.exists():
                systems = sorted(child.name for child in cache.build_root.iterdir() if child.is_dir())
            else:
                systems = []
            for system in systems:
                cache.clean_build(system)
            print(f"Removed build outputs for {len(systems)} system(s) from {cache.build_root}")
        elif args.action == "evict":
            if not args.keys:
                ErrorFormatter.handle_usage_error("Missing cache keys", ValueError("evict needs at least one KEY"))
            try:
                missing = [key for key in args.keys if not deps_cache.evict(key)]
            except ValueError as e:
                ErrorFormatter.handle_usage_error("Invalid cache key", e)
            print(f"Evicted {len(args.keys) - len(missing)} dependency cache entries from {cache.deps_dir}")
            if missing:
                ErrorFormatter.print_error("Unknown cache keys", ", ".join(missing))
                sys.exit(1)
        elif args.action == "clear":
            removed = deps_cache.clear()
            print(f"Removed {removed} dependency cache entries from {cache.deps_dir}")
        else:
            entries = deps_cache.entries()
            for key in entries:
                print(key)
            print(f"{len(entries)} entries in {cache.deps_dir}")
        sys.exit(0)

    _run_guarded(args, body)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "-s",
        "--system",
        dest="systems",
        action="append",
        default=[],
        help="System to run for, e.g. x86_64-linux (repeatable; default: current system)",
    )
    parser.add_argument(
        "--all-systems",
        action="store_true",
        help="Run for every configured system",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        default=None,
        help="Fail the run if any system produces no outputs",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Systems built in parallel (default: CPU count)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def _common_kwargs(parsed_args: argparse.Namespace) -> dict:
    return {
        "project_dir": parsed_args.project_dir,
        "systems": parsed_args.systems,
        "all_systems": parsed_args.all_systems,
        "strict": parsed_args.strict,
        "jobs": parsed_args.jobs,
        "verbose": parsed_args.verbose,
    }


def main(argv: Optional[List[str]] = None) -> None:
    """buildmatrix - per-platform build matrix for a Cargo package."""
    parser = argparse.ArgumentParser(
        prog="buildmatrix",
        description="buildmatrix - per-platform build matrix for a Cargo package",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"buildmatrix {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    build_parser = subparsers.add_parser("build", help="Build the package")
    _add_common_arguments(build_parser)

    run_parser = subparsers.add_parser("run", help="Build and run the app (arguments after --)")
    _add_common_arguments(run_parser)
    run_parser.add_argument("app_args", nargs=argparse.REMAINDER, help="Arguments passed to the app")

    check_parser = subparsers.add_parser("check", help="Run checks")
    _add_common_arguments(check_parser)
    check_parser.add_argument("names", nargs="*", help="Check names (default: all)")

    fmt_parser = subparsers.add_parser("fmt", help="Format the project's files")
    _add_common_arguments(fmt_parser)
    fmt_parser.add_argument(
        "--check",
        action="store_true",
        help="Only report files that would change",
    )

    develop_parser = subparsers.add_parser("develop", help="Enter the development shell")
    _add_common_arguments(develop_parser)
    develop_parser.add_argument(
        "-c",
        "--command",
        dest="command_line",
        default=None,
        help="Run this command instead of an interactive shell",
    )

    show_parser = subparsers.add_parser("show", help="Print the exported outputs as JSON")
    _add_common_arguments(show_parser)

    cache_parser = subparsers.add_parser("cache", help="Manage the dependency cache and build outputs")
    _add_common_arguments(cache_parser)
    cache_parser.add_argument(
        "action",
        choices=["list", "clear", "evict", "clean"],
        help="list, clear or evict dependency cache entries, or clean build outputs",
    )
    cache_parser.add_argument("keys", nargs="*", help="Dependency cache keys (evict only)")

    # Parse arguments
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    if parsed_args.jobs is not None and parsed_args.jobs < 1:
        parser.error("--jobs must be at least 1")

    if parsed_args.command == "cache" and parsed_args.keys and parsed_args.action != "evict":
        parser.error(f"cache {parsed_args.action} takes no keys")

    PathValidator.validate_project_dir(parsed_args.project_dir)
    common = _common_kwargs(parsed_args)

    # Execute command
    if parsed_args.command == "build":
        build_command(BuildArgs(**common))
    elif parsed_args.command == "run":
        app_args = list(parsed_args.app_args)
        if app_args and app_args[0] == "--":
            app_args = app_args[1:]
        run_command(RunArgs(**common, app_args=app_args))
    elif parsed_args.command == "check":
        check_command(CheckArgs(**common, names=parsed_args.names))
    elif parsed_args.command == "fmt":
        fmt_command(FmtArgs(**common, check=parsed_args.check))
    elif parsed_args.command == "develop":
        develop_command(DevelopArgs(**common, command=parsed_args.command_line))
    elif parsed_args.command == "show":
        show_command(MatrixArgs(**common))
    elif parsed_args.command == "cache":
        cache_command(CacheArgs(**common, action=parsed_args.action, keys=parsed_args.keys))


if __name__ == "__main__":
    main()
