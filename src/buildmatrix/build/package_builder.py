"""
Package build for one platform.

This module builds the final package from the full filtered source, reusing
the cached dependency artifact so that only the package's own crate gets
compiled.
"""

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from .command_executor import EngineError
from .engine import BuildEngine, CommonBuildArgs

if TYPE_CHECKING:
    from ..packages.cache import DependencyArtifact

logger = logging.getLogger(__name__)


class PackageBuildError(Exception):
    """Raised when the package build fails for a platform."""

    def __init__(self, platform: str, message: str):
        super().__init__(message)
        self.platform = platform
        self.message = message


@dataclass(frozen=True)
class App:
    """Runnable entry point of a package.

    Attributes:
        name: App name (the project name)
        program: Path of the executable
        platform: System the executable was built for
    """

    name: str
    program: Path
    platform: str

    def command(self, args: Optional[List[str]] = None) -> List[str]:
        """Command line that runs the app with args."""
        return [str(self.program), *(args or [])]


@dataclass
class PackageArtifact:
    """Result of a package build."""

    name: str
    platform: str
    out_dir: Path
    binaries: List[Path] = field(default_factory=list)
    deps_key: str = ""
    build_time: float = 0.0

    @property
    def main_program(self) -> Optional[Path]:
        """Binary named after the package, else the only binary, else None."""
        for binary in self.binaries:
            if binary.stem == self.name:
                return binary
        if len(self.binaries) == 1:
            return self.binaries[0]
        return None

    def app(self) -> Optional[App]:
        program = self.main_program
        if program is None:
            return None
        return App(name=self.name, program=program, platform=self.platform)


class PackageBuilder:
    """
    Builds the package for one platform on top of cached dependencies.

    Example usage:
        builder = PackageBuilder(engine, cache.build_root, name="nez")
        artifact = builder.build("x86_64-linux", args, deps)
    """

    def __init__(self, engine: BuildEngine, out_root: Path, name: str):
        """
        Initialize the package builder.

        Args:
            engine: Build engine
            out_root: Directory under which <system>/package outputs go
            name: Package name
        """
        self.engine = engine
        self.out_root = Path(out_root)
        self.name = name

    def out_dir(self, platform: str) -> Path:
        return self.out_root / platform / "package"

    def build(
        self,
        platform: str,
        common_args: CommonBuildArgs,
        cached_deps: "DependencyArtifact",
        cancel_event: Optional[threading.Event] = None,
    ) -> PackageArtifact:
        """Build the package.

        Args:
            platform: System to build for
            common_args: Shared build arguments (full filtered source)
            cached_deps: Dependency artifact for the same platform and args
            cancel_event: Cancellation event forwarded to the engine

        Returns:
            PackageArtifact with the produced binaries

        Raises:
            PackageBuildError: If the engine fails
            BuildCancelledError: If the build is cancelled
        """
        out_dir = self.out_dir(platform)
        if out_dir.exists():
            shutil.rmtree(out_dir)
        out_dir.mkdir(parents=True)

        logger.info(f"[{platform}] building package {self.name} (deps {cached_deps.key[:12]})")
        start_time = time.time()
        try:
            binaries = self.engine.build_package(common_args, cached_deps, out_dir, cancel_event)
        except EngineError as e:
            raise PackageBuildError(platform, f"Package build failed: {e}") from e

        build_time = time.time() - start_time
        logger.info(f"[{platform}] package built in {build_time:.2f}s ({len(binaries)} binaries)")

        return PackageArtifact(
            name=self.name,
            platform=platform,
            out_dir=out_dir,
            binaries=list(binaries),
            deps_key=cached_deps.key,
            build_time=build_time,
        )
