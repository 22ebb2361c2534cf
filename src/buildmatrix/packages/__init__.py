"""Package management for buildmatrix.

This module handles downloading, caching, and resolving external inputs:
Rust toolchain channel manifests, the security advisory database, and the
content-addressed store of dependency-only build artifacts.
"""

from .advisories import (
    Advisory,
    AdvisoryDatabase,
    AdvisoryDatabaseError,
    AuditFinding,
    AuditReport,
    LockedPackage,
    Version,
    VersionReq,
    read_lockfile,
)
from .cache import Cache, DependencyArtifact, DependencyBuildError, DependencyCache
from .downloader import ChecksumError, Downloader, DownloadError, ExtractionError
from .toolchain import ChannelManifest, ToolchainDescriptor, ToolchainError, ToolchainResolver

__all__ = [
    "Cache",
    "DependencyCache",
    "DependencyArtifact",
    "DependencyBuildError",
    "Downloader",
    "DownloadError",
    "ChecksumError",
    "ExtractionError",
    "ChannelManifest",
    "ToolchainDescriptor",
    "ToolchainError",
    "ToolchainResolver",
    "Advisory",
    "AdvisoryDatabase",
    "AdvisoryDatabaseError",
    "AuditFinding",
    "AuditReport",
    "LockedPackage",
    "Version",
    "VersionReq",
    "read_lockfile",
]
