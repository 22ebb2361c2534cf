"""Configuration parsing modules for buildmatrix."""

from .ini_parser import (
    AuditSettings,
    BuildSettings,
    CheckSettings,
    DevShellSettings,
    FormatterSettings,
    MatrixConfig,
    MatrixConfigError,
    ToolchainSettings,
)
from .platforms import (
    DEFAULT_SYSTEMS,
    PlatformError,
    current_system,
    enumerate_platforms,
    rust_os_arch,
    rust_target,
)

__all__ = [
    "MatrixConfig",
    "MatrixConfigError",
    "ToolchainSettings",
    "BuildSettings",
    "CheckSettings",
    "AuditSettings",
    "DevShellSettings",
    "FormatterSettings",
    "DEFAULT_SYSTEMS",
    "PlatformError",
    "current_system",
    "enumerate_platforms",
    "rust_os_arch",
    "rust_target",
]
