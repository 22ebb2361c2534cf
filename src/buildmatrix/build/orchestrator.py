"""
Matrix orchestration for buildmatrix projects.

This module coordinates a run across every enumerated platform:
- Configuration (buildmatrix.ini) and platform enumeration
- Source filtering and fingerprinting (once per run)
- Toolchain resolution per platform
- Dependency-only build through the content-addressed cache
- Package build and checks, concurrently, once dependencies exist
- Dev shell description and output aggregation

Platforms run concurrently and independently. In strict mode the first
platform failure cancels the rest and the run raises
AggregationIncompleteError; in soft mode failures are reported alongside the
outputs of the platforms that succeeded.
"""

import logging
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import psutil

from ..config.ini_parser import MatrixConfig
from ..config.platforms import enumerate_platforms
from ..packages.advisories import AdvisoryDatabase
from ..packages.cache import Cache, DependencyBuildError, DependencyCache
from ..packages.toolchain import ToolchainDescriptor, ToolchainError, ToolchainResolver
from .checks import CheckRegistry, CheckRegistryError, VulnerabilityAudit, default_registry, run_checks
from .command_executor import BuildCancelledError
from .dev_shell import DevEnvironmentProvider, DevShell
from .engine import BuildEngine, CargoEngine, CommonBuildArgs
from .formatter import FormatterCommand, FormatterProvider
from .outputs import ExportedOutputs, OutputAggregator, PlatformFailure, PlatformResult, package_outputs
from .package_builder import PackageArtifact, PackageBuildError, PackageBuilder
from .source_scanner import FilteredSourceTree, SourceFingerprinter

logger = logging.getLogger(__name__)


def default_jobs() -> int:
    """Number of platforms built in parallel when not configured."""
    return psutil.cpu_count(logical=True) or 1


class MatrixOrchestrator:
    """
    Orchestrates builds and checks across the platform matrix.

    Phases per platform:
    1. Resolve the pinned toolchain
    2. Build (or reuse) the dependency-only artifact
    3. Build the package and run the checks concurrently
    4. Describe the dev shell

    Example usage:
        orchestrator = MatrixOrchestrator(Path("."))
        outputs = orchestrator.run()
        for failure in outputs.failures:
            print(failure)
    """

    def __init__(
        self,
        project_dir: Path,
        config: Optional[MatrixConfig] = None,
        engine: Optional[BuildEngine] = None,
        cache: Optional[Cache] = None,
        resolver: Optional[ToolchainResolver] = None,
        registry: Optional[CheckRegistry] = None,
        jobs: Optional[int] = None,
        strict: Optional[bool] = None,
        verbose: bool = False,
    ):
        """
        Initialize the orchestrator.

        Args:
            project_dir: Project root containing buildmatrix.ini and Cargo.toml
            config: Parsed configuration (loaded from project_dir if None)
            engine: Build engine (CargoEngine if None)
            cache: Cache layout (project cache if None)
            resolver: Toolchain resolver (channel-manifest resolver if None)
            registry: Check registry (the default four checks plus the
                formatting conformance check if None)
            jobs: Platforms built in parallel (config, then CPU count)
            strict: Override the configured strict mode
            verbose: Verbose engine output
        """
        self.project_dir = Path(project_dir).resolve()
        self.config = config or MatrixConfig.load(self.project_dir)
        self.cache = cache or Cache(self.project_dir)
        self.engine = engine or CargoEngine(test_runner=self.config.build.test_runner, verbose=verbose)
        self.resolver = resolver or ToolchainResolver(self.cache, self.config.toolchain)
        self.strict = self.config.strict if strict is None else strict
        self.jobs = jobs or self.config.jobs or default_jobs()
        self.verbose = verbose

        self.fingerprinter = SourceFingerprinter(self.project_dir, self.config.build.include)
        self.deps_cache = DependencyCache(self.cache, self.engine)
        self.builder = PackageBuilder(self.engine, self.cache.build_root, self.config.name)
        self.formatter: FormatterCommand = FormatterProvider(
            self.project_dir,
            self.config.formatter.extensions,
            self.config.formatter.command,
            timeout=self.config.formatter.timeout,
        ).command()
        self.dev_env = DevEnvironmentProvider(self.config.devshell)
        self.audit = VulnerabilityAudit(self._load_advisories, ignore=self.config.audit.ignore)
        self.registry = registry or default_registry(
            self.engine,
            names=self.config.checks,
            audit=self.audit,
            formatter=self.formatter,
            formatter_check_name=self.config.formatter.resolved_check_name(),
        )
        self.cancel_event = threading.Event()
        self._source: Optional[FilteredSourceTree] = None
        self._source_lock = threading.Lock()

    def _load_advisories(self) -> AdvisoryDatabase:
        return AdvisoryDatabase.from_location(self.cache, self.config.audit.database, self.project_dir)

    def platforms(self, systems: Optional[Sequence[str]] = None) -> List[str]:
        """Platforms of a run: explicit systems, else configured, else defaults."""
        return enumerate_platforms(systems if systems is not None else self.config.systems)

    def source(self) -> FilteredSourceTree:
        """Filtered build tree, computed once per orchestrator."""
        with self._source_lock:
            if self._source is None:
                self._source = self.fingerprinter.build_inputs()
                logger.info(f"Source tree: {len(self._source)} files, digest {self._source.digest[:12]}")
            return self._source

    def cancel(self) -> None:
        """Request cancellation of every running engine command."""
        self.cancel_event.set()

    def run(
        self,
        systems: Optional[Sequence[str]] = None,
        build_package: bool = True,
        checks: Optional[Sequence[str]] = None,
        run_checks: bool = True,
    ) -> ExportedOutputs:
        """Run the matrix.

        Args:
            systems: Platforms to run (configured or default systems when None)
            build_package: Build the package on every platform
            checks: Check names to run (all registered checks when None)
            run_checks: Run checks at all

        Returns:
            ExportedOutputs; in soft mode failed platforms are in .failures

        Raises:
            AggregationIncompleteError: In strict mode, if any platform failed
            CheckRegistryError: If checks names an unknown check
        """
        platforms = self.platforms(systems)
        selected = self._select_checks(checks) if run_checks else []
        start_time = time.time()
        self.cancel_event = threading.Event()

        aggregator = OutputAggregator(self.config.name, self.formatter, strict=self.strict)
        if not platforms:
            logger.info("No platforms enumerated, nothing to build")
            return aggregator.aggregate([], {})

        self.cache.ensure_directories()
        source = self.source()
        results: Dict[str, PlatformResult] = {}
        workers = min(self.jobs, len(platforms))
        logger.info(f"Running {len(platforms)} platforms with {workers} workers: {', '.join(platforms)}")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="platform") as executor:
            futures: Dict[Future, str] = {
                executor.submit(self._run_platform, platform, source, build_package, selected): platform
                for platform in platforms
            }
            try:
                for future in as_completed(futures):
                    platform = futures[future]
                    result = future.result()
                    results[platform] = result
                    if isinstance(result, PlatformFailure):
                        logger.error(str(result))
                        if self.strict and not self.cancel_event.is_set():
                            logger.warning("Strict mode: cancelling remaining platforms")
                            self.cancel()
            except BaseException:
                self.cancel()
                raise

        logger.info(f"Matrix finished in {time.time() - start_time:.2f}s")
        return aggregator.aggregate(platforms, results)

    def _select_checks(self, checks: Optional[Sequence[str]]) -> List[str]:
        if checks is None:
            return self.registry.names()
        unknown = [name for name in checks if name not in self.registry]
        if unknown:
            raise CheckRegistryError(
                f"Unknown check(s): {', '.join(unknown)}. Available: {', '.join(self.registry.names())}"
            )
        return list(checks)

    def resolve_toolchain(self, platform: str) -> ToolchainDescriptor:
        return self.resolver.resolve(platform)

    def _unexpected_failure(self, platform: str, stage: str) -> PlatformFailure:
        logger.exception(f"[{platform}] unexpected error during {stage}")
        return PlatformFailure(platform, stage, traceback.format_exc())

    def _run_platform(
        self,
        platform: str,
        source: FilteredSourceTree,
        build_package: bool,
        check_names: List[str],
    ) -> PlatformResult:
        cancel_event = self.cancel_event
        if cancel_event.is_set():
            return PlatformFailure(platform, "cancelled", "Cancelled before start")

        # Phase 1: toolchain
        try:
            toolchain = self.resolve_toolchain(platform)
        except ToolchainError as e:
            return PlatformFailure(platform, "toolchain", str(e))
        except Exception:
            return self._unexpected_failure(platform, "toolchain")

        args = CommonBuildArgs(source=source, toolchain=toolchain, extra_args=self.config.build.extra_args)

        # Phase 2: dependencies
        try:
            deps = self.deps_cache.build_deps_only(platform, toolchain, args, cancel_event)
        except DependencyBuildError as e:
            return PlatformFailure(platform, "deps", e.message)
        except BuildCancelledError as e:
            return PlatformFailure(platform, "deps", f"Cancelled: {e}")
        except Exception:
            return self._unexpected_failure(platform, "deps")

        # Phase 3: package and checks, concurrently
        definitions = self.registry.definitions(
            platform,
            args,
            deps,
            self.cache.get_build_dir(platform) / "checks",
            cancel_event=cancel_event,
            only=check_names,
        )
        artifact: Optional[PackageArtifact] = None
        failure: Optional[PlatformFailure] = None

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{platform}-package") as executor:
            package_future = (
                executor.submit(self.builder.build, platform, args, deps, cancel_event) if build_package else None
            )
            check_results = run_checks(definitions, max_workers=self.jobs)

            if package_future is not None:
                try:
                    artifact = package_future.result()
                except PackageBuildError as e:
                    failure = PlatformFailure(platform, "package", e.message)
                except BuildCancelledError as e:
                    failure = PlatformFailure(platform, "package", f"Cancelled: {e}")
                except Exception:
                    failure = self._unexpected_failure(platform, "package")

        if failure is not None:
            failure.checks = check_results
            return failure

        # Phase 4: dev shell
        try:
            dev_shell = self.dev_env.provide(platform, toolchain)
        except Exception:
            failure = self._unexpected_failure(platform, "devshell")
            failure.checks = check_results
            return failure

        return package_outputs(platform, artifact, check_results, dev_shell)

    def dev_shell(self, platform: str) -> DevShell:
        """Describe the dev shell for a platform.

        Raises:
            ToolchainError: If the toolchain cannot be resolved
        """
        return self.dev_env.provide(platform, self.resolve_toolchain(platform))

    def describe(self, systems: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Output attributes a run would export, without building anything."""
        platforms = self.platforms(systems)
        per_system = {
            platform: {
                "packages": ["default"],
                "apps": ["default"],
                "checks": self.registry.names(),
                "devShells": ["default"],
            }
            for platform in platforms
        }
        return {
            "name": self.config.name,
            "strict": self.strict,
            "systems": per_system,
            "overlay": {"name": self.config.name, "systems": platforms},
            "formatter": {"tool": self.formatter.tool, "extensions": list(self.formatter.extensions)},
            "toolchain": {
                "channel": self.config.toolchain.channel,
                "version": self.config.toolchain.version,
                "components": list(self.config.toolchain.components),
                "native_build_inputs": list(self.config.toolchain.native_build_inputs),
            },
            "devShell": {
                "tools": list(self.config.devshell.tools),
                "env": dict(self.config.devshell.env),
            },
            "dependencyCache": self.deps_cache.entries(),
        }
