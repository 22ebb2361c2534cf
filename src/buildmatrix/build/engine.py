"""
Build-engine interface and the Cargo engine.

The orchestrator decides what to build, in what order and with what caching;
the engine does the compiling. BuildEngine is the interface the orchestrator
consumes. CargoEngine drives cargo through `rustup run <toolchain>` and is
the engine used outside of tests.

Every engine method either returns normally or raises EngineError (or
BuildCancelledError) carrying the engine's own diagnostic, which callers
surface unmodified.
"""

import os
import shlex
import shutil
import stat
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .command_executor import CommandExecutor
from .source_scanner import FilteredSourceTree, write_dummy_sources

if TYPE_CHECKING:
    from ..packages.cache import DependencyArtifact
    from ..packages.toolchain import ToolchainDescriptor


@dataclass(frozen=True)
class CommonBuildArgs:
    """Parameters shared by the dependency build, package build and checks.

    Attributes:
        source: Filtered build tree
        toolchain: Pinned toolchain for the platform
        extra_args: Extra cargo arguments (shell syntax)
    """

    source: FilteredSourceTree
    toolchain: "ToolchainDescriptor"
    extra_args: str = ""

    @property
    def build_inputs(self) -> Tuple[str, ...]:
        """Toolchain plus native build inputs."""
        return self.toolchain.build_inputs

    @property
    def target(self) -> str:
        return self.toolchain.target

    @property
    def deps_source(self) -> FilteredSourceTree:
        """Dependency-relevant subset of the source."""
        return self.source.dependency_subset()

    def cache_inputs(self) -> Dict[str, Any]:
        """Argument set that feeds the dependency cache key (full source excluded)."""
        return {
            "build_inputs": list(self.build_inputs),
            "extra_args": self.extra_args,
            "target": self.target,
        }


class BuildEngine(ABC):
    """Interface to the external build engine."""

    name = "engine"

    @abstractmethod
    def build_deps_only(
        self, args: CommonBuildArgs, dest: Path, cancel_event: Optional[threading.Event] = None
    ) -> Path:
        """Compile dependencies only into dest and return dest."""

    @abstractmethod
    def build_package(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        dest: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Path]:
        """Build the package into dest and return the produced executables."""

    @abstractmethod
    def lint(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        work_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Run static analysis and return its output."""

    @abstractmethod
    def test(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        work_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Run the test suite and return its output."""

    @abstractmethod
    def format_check(
        self, args: CommonBuildArgs, work_dir: Path, cancel_event: Optional[threading.Event] = None
    ) -> str:
        """Verify source formatting without modifying files."""


class CargoEngine(BuildEngine):
    """
    Drives cargo for one pinned toolchain per call.

    Dependency builds run against the manifest subset with stub crate roots,
    so only third-party crates get compiled. Consumers of a cached artifact
    get a private copy of its target directory seeded into their work
    directory; the cached entry itself is never written to.

    Example usage:
        engine = CargoEngine(test_runner="nextest")
        engine.build_deps_only(args, Path("/tmp/deps"))
    """

    name = "cargo"

    def __init__(
        self,
        executor: Optional[CommandExecutor] = None,
        test_runner: str = "nextest",
        verbose: bool = False,
    ):
        """
        Initialize the cargo engine.

        Args:
            executor: Command executor (a default one is created if None)
            test_runner: 'nextest' for cargo-nextest, 'test' for cargo test
            verbose: Verbose command logging
        """
        self.executor = executor or CommandExecutor(verbose=verbose)
        self.test_runner = test_runner
        self.verbose = verbose

    def _cargo(self, args: CommonBuildArgs, *cargo_args: str) -> List[str]:
        return ["rustup", "run", args.toolchain.rustup_name, "cargo", *cargo_args]

    def _target_args(self, args: CommonBuildArgs) -> List[str]:
        return ["--target", args.target] if args.target else []

    def _extra(self, args: CommonBuildArgs) -> List[str]:
        return shlex.split(args.extra_args) if args.extra_args else []

    def _env(self, target_dir: Path) -> Dict[str, str]:
        env = dict(os.environ)
        env["CARGO_TARGET_DIR"] = str(target_dir)
        env["CARGO_TERM_COLOR"] = "never"
        return env

    def _run(
        self,
        cmd: List[str],
        cwd: Path,
        target_dir: Path,
        cancel_event: Optional[threading.Event],
        description: str,
    ) -> str:
        result = self.executor.run(
            cmd,
            cwd=cwd,
            env=self._env(target_dir),
            cancel_event=cancel_event,
            description=description,
        )
        return result.output

    def _seed_target_dir(self, deps: "DependencyArtifact", work_dir: Path) -> Path:
        target_dir = work_dir / "target"
        if target_dir.exists():
            shutil.rmtree(target_dir)
        if deps.path.exists():
            shutil.copytree(deps.path, target_dir, symlinks=True)
        else:
            target_dir.mkdir(parents=True)
        return target_dir

    def build_deps_only(
        self, args: CommonBuildArgs, dest: Path, cancel_event: Optional[threading.Event] = None
    ) -> Path:
        src_dir = dest.parent / "dummy-src"
        if src_dir.exists():
            shutil.rmtree(src_dir)
        args.deps_source.materialize(src_dir)
        write_dummy_sources(src_dir)
        dest.mkdir(parents=True, exist_ok=True)

        common = ["--release", "--locked", *self._target_args(args), *self._extra(args)]
        try:
            self._run(
                self._cargo(args, "check", "--all-targets", *common),
                src_dir, dest, cancel_event, "cargo check (deps)",
            )
            self._run(
                self._cargo(args, "build", *common),
                src_dir, dest, cancel_event, "cargo build (deps)",
            )
            self._run(
                self._cargo(args, "test", "--no-run", *common),
                src_dir, dest, cancel_event, "cargo test --no-run (deps)",
            )
        finally:
            shutil.rmtree(src_dir, ignore_errors=True)
        return dest

    def build_package(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        dest: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Path]:
        src_dir = args.source.materialize(dest / "src")
        target_dir = self._seed_target_dir(deps, dest)

        self._run(
            self._cargo(args, "build", "--release", "--locked", *self._target_args(args), *self._extra(args)),
            src_dir, target_dir, cancel_event, "cargo build",
        )

        release_dir = target_dir / args.target / "release" if args.target else target_dir / "release"
        bin_dir = dest / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        binaries = []
        for candidate in sorted(release_dir.iterdir()) if release_dir.exists() else []:
            if _is_executable(candidate):
                installed = bin_dir / candidate.name
                shutil.copy2(candidate, installed)
                binaries.append(installed)
        return binaries

    def lint(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        work_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        src_dir = args.source.materialize(work_dir / "src")
        target_dir = self._seed_target_dir(deps, work_dir)
        cmd = self._cargo(
            args, "clippy", "--release", "--locked", "--all-targets",
            *self._target_args(args), *self._extra(args), "--", "--deny", "warnings",
        )
        return self._run(cmd, src_dir, target_dir, cancel_event, "cargo clippy")

    def test(
        self,
        args: CommonBuildArgs,
        deps: "DependencyArtifact",
        work_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        src_dir = args.source.materialize(work_dir / "src")
        target_dir = self._seed_target_dir(deps, work_dir)
        if self.test_runner == "nextest":
            cargo_args = ["nextest", "run", "--release", "--locked"]
        else:
            cargo_args = ["test", "--release", "--locked"]
        cmd = self._cargo(args, *cargo_args, *self._target_args(args), *self._extra(args))
        return self._run(cmd, src_dir, target_dir, cancel_event, f"cargo {cargo_args[0]}")

    def format_check(
        self, args: CommonBuildArgs, work_dir: Path, cancel_event: Optional[threading.Event] = None
    ) -> str:
        src_dir = args.source.materialize(work_dir / "src")
        cmd = self._cargo(args, "fmt", "--all", "--", "--check")
        return self._run(cmd, src_dir, work_dir / "target", cancel_event, "cargo fmt --check")


def _is_executable(path: Path) -> bool:
    if not path.is_file():
        return False
    if path.suffix == ".exe":
        return True
    if path.suffix:
        # .d dependency files, .rlib, .so and friends
        return False
    return bool(path.stat().st_mode & stat.S_IXUSR)
