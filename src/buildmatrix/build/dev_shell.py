"""
Interactive development environment.

A DevShell describes the environment a developer works in for one platform:
the pinned toolchain, native build inputs, auxiliary tools and environment
variables such as DATABASE_URL. Describing a shell has no side effects;
enter() spawns it.

Tools are written 'package' or 'package:binary' when the installed binary is
named differently (sqlx-cli installs 'sqlx').
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from ..config.ini_parser import DevShellSettings
from ..packages.toolchain import ToolchainDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DevTool:
    """Auxiliary tool available in the shell."""

    package: str
    binary: str

    @classmethod
    def parse(cls, spec: str) -> "DevTool":
        package, _, binary = spec.partition(":")
        package = package.strip()
        return cls(package=package, binary=binary.strip() or package)


@dataclass
class DevShell:
    """Development environment for one platform."""

    platform: str
    toolchain: ToolchainDescriptor
    tools: List[DevTool] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def native_build_inputs(self) -> List[str]:
        return list(self.toolchain.native_build_inputs)

    @property
    def packages(self) -> List[str]:
        """Everything the shell provides, toolchain first."""
        return list(self.toolchain.build_inputs) + [tool.package for tool in self.tools]

    def environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Shell variables merged over base (os.environ when None)."""
        merged = dict(os.environ if base is None else base)
        merged["RUSTUP_TOOLCHAIN"] = self.toolchain.rustup_name
        merged.update(self.env)
        return merged

    def missing_tools(self, path: Optional[str] = None) -> List[str]:
        """Binaries of the shell (cargo, rustup and tools) not found on PATH."""
        binaries = ["rustup", "cargo"] + [tool.binary for tool in self.tools]
        return [binary for binary in binaries if shutil.which(binary, path=path) is None]

    def enter(self, command: Optional[Sequence[str]] = None) -> int:
        """Run command (the user's shell when None) inside the environment.

        Returns:
            Exit code of the command
        """
        env = self.environment()
        argv = list(command) if command else [os.environ.get("SHELL", "/bin/sh")]
        for binary in self.missing_tools(env.get("PATH")):
            logger.warning(f"{binary} not found on PATH")
        logger.info(f"Entering dev shell for {self.platform}: {' '.join(argv)}")
        return subprocess.call(argv, env=env)

    def describe(self) -> Dict[str, object]:
        return {
            "toolchain": self.toolchain.rustup_name,
            "components": list(self.toolchain.components),
            "native_build_inputs": self.native_build_inputs,
            "tools": [tool.package for tool in self.tools],
            "env": dict(self.env),
        }


class DevEnvironmentProvider:
    """Builds DevShell descriptions from the devshell settings."""

    def __init__(self, settings: Optional[DevShellSettings] = None):
        self.settings = settings or DevShellSettings()

    def provide(self, platform: str, toolchain: ToolchainDescriptor) -> DevShell:
        return DevShell(
            platform=platform,
            toolchain=toolchain,
            tools=[DevTool.parse(spec) for spec in self.settings.tools],
            env=dict(self.settings.env),
        )
