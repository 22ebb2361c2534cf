"""
Check registry and check execution.

This module handles:
- Registering named checks of four kinds (lint, test, format-check,
  vulnerability-audit) plus the whole-tree formatting conformance check
- Binding checks to a platform's build arguments and dependency artifact
- Running checks concurrently, turning every failure into a CheckResult

A failing check never prevents other checks from running; nothing raised
inside a check escapes run().
"""

import logging
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from ..config.platforms import PlatformError, rust_os_arch
from ..packages.advisories import AdvisoryDatabase, AdvisoryDatabaseError, read_lockfile
from .command_executor import BuildCancelledError, EngineError
from .engine import BuildEngine, CommonBuildArgs
from .formatter import FormatterCommand, FormatterError

if TYPE_CHECKING:
    from ..config.ini_parser import CheckSettings
    from ..packages.cache import DependencyArtifact

logger = logging.getLogger(__name__)


class CheckKind(Enum):
    """Kinds of checks."""

    LINT = "lint"
    TEST = "test"
    FORMAT = "format-check"
    AUDIT = "vulnerability-audit"
    FILES_FORMATTED = "files-formatted"


DEFAULT_CHECK_NAMES = {
    CheckKind.LINT: "clippy",
    CheckKind.TEST: "test",
    CheckKind.FORMAT: "fmt",
    CheckKind.AUDIT: "audit",
}


class CheckRegistryError(Exception):
    """Raised when a check is registered under a name already in use."""

    pass


class CheckFailure(Exception):
    """Raised by a check runner to fail with a diagnostic."""

    pass


@dataclass
class CheckContext:
    """Everything a check runner may use."""

    platform: str
    common_args: CommonBuildArgs
    cached_deps: "DependencyArtifact"
    work_dir: Path
    cancel_event: Optional[threading.Event] = None


# A runner returns its diagnostic output, or raises to fail
CheckRunner = Callable[[CheckContext], str]


@dataclass
class CheckResult:
    """Result of one check on one platform."""

    name: str
    platform: str
    success: bool
    diagnostic: str
    duration: float = 0.0
    kind: Optional[CheckKind] = None


@dataclass
class CheckDefinition:
    """A check bound to one platform's inputs."""

    name: str
    kind: CheckKind
    runner: CheckRunner
    context: CheckContext

    @property
    def platform(self) -> str:
        return self.context.platform

    def run(self) -> CheckResult:
        """Run the check. Never raises."""
        logger.info(f"[{self.platform}] check {self.name} started")
        start_time = time.time()
        success = False
        try:
            self.context.work_dir.mkdir(parents=True, exist_ok=True)
            diagnostic = self.runner(self.context)
            success = True
        except CheckFailure as e:
            diagnostic = str(e)
        except EngineError as e:
            diagnostic = str(e)
        except BuildCancelledError as e:
            diagnostic = f"Cancelled: {e}"
        except Exception:
            diagnostic = traceback.format_exc()

        duration = time.time() - start_time
        if success:
            logger.info(f"[{self.platform}] check {self.name} passed in {duration:.2f}s")
        else:
            logger.warning(f"[{self.platform}] check {self.name} failed in {duration:.2f}s")
        return CheckResult(
            name=self.name,
            platform=self.platform,
            success=success,
            diagnostic=diagnostic or "",
            duration=duration,
            kind=self.kind,
        )


@dataclass
class _Registration:
    kind: CheckKind
    name: str
    runner: CheckRunner


class CheckRegistry:
    """
    Named checks applied to every platform.

    Example usage:
        registry = CheckRegistry()
        registry.register(CheckKind.LINT, "clippy", lint_runner)
        definitions = registry.definitions("x86_64-linux", args, deps, work_root)
        results = run_checks(definitions)
    """

    def __init__(self):
        self._checks: Dict[str, _Registration] = {}

    def register(self, kind: CheckKind, name: str, runner: CheckRunner) -> None:
        """Register a check.

        Raises:
            CheckRegistryError: If name is empty or already registered
        """
        if not name:
            raise CheckRegistryError("Check name must not be empty")
        if name in self._checks:
            existing = self._checks[name].kind.value
            raise CheckRegistryError(
                f"Check name {name!r} is already registered for {existing}; "
                + f"cannot register it again for {kind.value}"
            )
        self._checks[name] = _Registration(kind=kind, name=name, runner=runner)

    def names(self) -> List[str]:
        return list(self._checks)

    def __contains__(self, name: object) -> bool:
        return name in self._checks

    def __len__(self) -> int:
        return len(self._checks)

    def definitions(
        self,
        platform: str,
        common_args: CommonBuildArgs,
        cached_deps: "DependencyArtifact",
        work_root: Path,
        cancel_event: Optional[threading.Event] = None,
        only: Optional[Iterable[str]] = None,
    ) -> List[CheckDefinition]:
        """Bind registered checks to a platform.

        Args:
            platform: System the checks run for
            common_args: Shared build arguments
            cached_deps: The platform's dependency artifact
            work_root: Directory under which each check gets <name>/
            cancel_event: Cancellation event forwarded to runners
            only: Restrict to these names (all when None)

        Raises:
            CheckRegistryError: If only names an unknown check
        """
        selected = list(self._checks)
        if only is not None:
            wanted = list(only)
            unknown = [name for name in wanted if name not in self._checks]
            if unknown:
                raise CheckRegistryError(
                    f"Unknown check(s): {', '.join(unknown)}. Available: {', '.join(self._checks)}"
                )
            selected = [name for name in selected if name in wanted]

        return [
            CheckDefinition(
                name=name,
                kind=self._checks[name].kind,
                runner=self._checks[name].runner,
                context=CheckContext(
                    platform=platform,
                    common_args=common_args,
                    cached_deps=cached_deps,
                    work_dir=Path(work_root) / name,
                    cancel_event=cancel_event,
                ),
            )
            for name in selected
        ]


def run_checks(definitions: List[CheckDefinition], max_workers: Optional[int] = None) -> List[CheckResult]:
    """Run checks concurrently and collect every result in definition order."""
    if not definitions:
        return []
    workers = max_workers or len(definitions)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="check") as executor:
        futures = [executor.submit(definition.run) for definition in definitions]
        return [future.result() for future in futures]


class VulnerabilityAudit:
    """
    Audits the source's Cargo.lock against an advisory database.

    The database is loaded at most once per instance, on first use, and
    shared by every platform. A load failure is remembered and fails every
    audit of the run.
    """

    def __init__(self, load_database: Callable[[], AdvisoryDatabase], ignore: Iterable[str] = ()):
        """
        Initialize the audit.

        Args:
            load_database: Returns the advisory database; may raise
                AdvisoryDatabaseError
            ignore: Advisory IDs or aliases excluded from failure consideration
        """
        self.load_database = load_database
        self.ignore = list(ignore)
        self._lock = threading.Lock()
        self._database: Optional[AdvisoryDatabase] = None
        self._error: Optional[Exception] = None

    def database(self) -> AdvisoryDatabase:
        with self._lock:
            if self._database is None and self._error is None:
                try:
                    self._database = self.load_database()
                except AdvisoryDatabaseError as e:
                    self._error = e
            if self._error is not None:
                raise CheckFailure(f"Advisory database unavailable: {self._error}")
            return self._database

    def __call__(self, context: CheckContext) -> str:
        source = context.common_args.source
        if "Cargo.lock" not in source:
            raise CheckFailure("No Cargo.lock in the source tree; cannot audit dependencies")

        try:
            packages = read_lockfile(source.root / "Cargo.lock")
        except AdvisoryDatabaseError as e:
            raise CheckFailure(str(e))

        try:
            target_os, target_arch = rust_os_arch(context.platform)
        except PlatformError:
            target_os, target_arch = None, None

        report = self.database().audit(packages, self.ignore, target_os, target_arch)
        summary = report.summary()
        if not report.success:
            raise CheckFailure(summary)
        return summary


def default_registry(
    engine: BuildEngine,
    names: Optional["CheckSettings"] = None,
    audit: Optional[VulnerabilityAudit] = None,
    formatter: Optional[FormatterCommand] = None,
    formatter_check_name: Optional[str] = None,
) -> CheckRegistry:
    """Registry holding lint, test, format-check and vulnerability-audit.

    Args:
        engine: Engine running lint, test and format-check
        names: Check names (defaults clippy, test, fmt, audit)
        audit: Audit runner (the audit check is omitted when None)
        formatter: Formatter command for the files-are-formatted check
        formatter_check_name: Name of that check

    Raises:
        CheckRegistryError: If two configured names collide
    """
    registry = CheckRegistry()

    def lint(ctx: CheckContext) -> str:
        return engine.lint(ctx.common_args, ctx.cached_deps, ctx.work_dir, ctx.cancel_event)

    def test(ctx: CheckContext) -> str:
        return engine.test(ctx.common_args, ctx.cached_deps, ctx.work_dir, ctx.cancel_event)

    def format_check(ctx: CheckContext) -> str:
        return engine.format_check(ctx.common_args, ctx.work_dir, ctx.cancel_event)

    registry.register(CheckKind.LINT, names.lint if names else DEFAULT_CHECK_NAMES[CheckKind.LINT], lint)
    registry.register(CheckKind.TEST, names.test if names else DEFAULT_CHECK_NAMES[CheckKind.TEST], test)
    registry.register(
        CheckKind.FORMAT, names.format if names else DEFAULT_CHECK_NAMES[CheckKind.FORMAT], format_check
    )
    if audit is not None:
        registry.register(CheckKind.AUDIT, names.audit if names else DEFAULT_CHECK_NAMES[CheckKind.AUDIT], audit)

    if formatter is not None:

        def files_formatted(ctx: CheckContext) -> str:
            try:
                report = formatter.run(check=True)
            except FormatterError as e:
                raise CheckFailure(str(e))
            if report.changed:
                raise CheckFailure(report.summary())
            return report.summary()

        registry.register(CheckKind.FILES_FORMATTED, formatter_check_name or "files-are-formatted", files_formatted)

    return registry

