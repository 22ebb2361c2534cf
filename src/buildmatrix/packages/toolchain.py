"""Toolchain resolution for Rust.

This module resolves a pinned Rust toolchain per system from the release
channel manifest published on the Rust distribution server
(channel-rust-<channel|version>.toml). A toolchain resolves only when the
rust package and every requested component are available for the system's
target triple.
"""

import logging
import threading
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..config.ini_parser import ToolchainSettings
from ..config.platforms import PlatformError, rust_target
from .cache import Cache
from .downloader import ChecksumError, Downloader, DownloadError

logger = logging.getLogger(__name__)

DIST_SERVER = "https://static.rust-lang.org/dist"


class ToolchainError(Exception):
    """Raised when a toolchain cannot be resolved for a system."""

    pass


@dataclass(frozen=True)
class ToolchainDescriptor:
    """Pinned toolchain for one system.

    Attributes:
        channel: Release channel ('stable', 'beta', 'nightly')
        version: Concrete release version, e.g. '1.80.0'
        date: Manifest date of the release
        target: Rust target triple
        components: Extra components (rust-src, rust-analyzer, ...)
        native_build_inputs: Tools needed to locate native dependencies
    """

    channel: str
    version: str
    date: str
    target: str
    components: Tuple[str, ...] = ()
    native_build_inputs: Tuple[str, ...] = ()

    @property
    def rustup_name(self) -> str:
        """Toolchain name understood by `rustup run`."""
        if self.channel == "nightly":
            return f"nightly-{self.date}"
        return self.version

    @property
    def build_inputs(self) -> Tuple[str, ...]:
        return (f"rust-{self.version}-{self.target}",) + tuple(self.native_build_inputs)

    def identity(self) -> Dict[str, Any]:
        """Values that identify this toolchain for caching."""
        return {
            "channel": self.channel,
            "version": self.version,
            "date": self.date,
            "target": self.target,
            "components": sorted(self.components),
            "native_build_inputs": list(self.native_build_inputs),
        }


class ChannelManifest:
    """Parsed Rust channel manifest."""

    def __init__(self, data: Dict[str, Any]):
        self.data = data

    @classmethod
    def from_text(cls, text: str) -> "ChannelManifest":
        try:
            return cls(tomllib.loads(text))
        except tomllib.TOMLDecodeError as e:
            raise ToolchainError(f"Invalid channel manifest: {e}")

    @classmethod
    def from_file(cls, path: Path) -> "ChannelManifest":
        return cls.from_text(Path(path).read_text(encoding="utf-8"))

    @property
    def date(self) -> str:
        return str(self.data.get("date", ""))

    @property
    def version(self) -> str:
        """Release version of the rust package, e.g. '1.80.0'."""
        rust = self.data.get("pkg", {}).get("rust", {})
        raw = str(rust.get("version", "")).strip()
        if not raw:
            raise ToolchainError("Channel manifest has no rust package version")
        # "1.80.0 (051478957 2024-07-21)"
        return raw.split()[0]

    def resolve_component(self, name: str) -> str:
        """Apply manifest renames (e.g. rust-analyzer -> rust-analyzer-preview)."""
        rename = self.data.get("renames", {}).get(name)
        if isinstance(rename, dict) and rename.get("to"):
            return str(rename["to"])
        return name

    def is_available(self, package: str, target: str) -> bool:
        """Whether a package is built for target (or for every target)."""
        pkg = self.data.get("pkg", {}).get(package)
        if not isinstance(pkg, dict):
            return False
        targets = pkg.get("target", {})
        entry = targets.get(target) or targets.get("*")
        return bool(entry and entry.get("available"))


class ToolchainResolver:
    """Resolves ToolchainDescriptors from channel manifests.

    Manifests are downloaded once per process and cached on disk. When the
    download fails but an earlier copy is cached, the cached copy is used and
    a warning is logged.
    """

    def __init__(
        self,
        cache: Cache,
        settings: Optional[ToolchainSettings] = None,
        downloader: Optional[Downloader] = None,
        show_progress: bool = False,
    ):
        """Initialize toolchain resolver.

        Args:
            cache: Cache instance for storing manifests
            settings: Requested channel, version and components
            downloader: Downloader (a default one is created if None)
            show_progress: Show download progress bars
        """
        self.cache = cache
        self.settings = settings or ToolchainSettings()
        self.downloader = downloader or Downloader()
        self.show_progress = show_progress
        self._lock = threading.Lock()
        self._manifest: Optional[ChannelManifest] = None

    @property
    def manifest_url(self) -> str:
        version = (self.settings.version or "latest").strip()
        if version in ("latest", self.settings.channel):
            return f"{DIST_SERVER}/channel-rust-{self.settings.channel}.toml"
        return f"{DIST_SERVER}/channel-rust-{version}.toml"

    def load_manifest(self) -> ChannelManifest:
        """Return the channel manifest, downloading it on first use.

        Raises:
            ToolchainError: If no manifest can be obtained
        """
        with self._lock:
            if self._manifest is not None:
                return self._manifest

            url = self.manifest_url
            manifest_path = self.cache.get_toolchain_manifest_path(url)

            try:
                checksum = self._fetch_checksum(url)
                self.downloader.download(url, manifest_path, checksum, show_progress=self.show_progress)
            except (DownloadError, ChecksumError) as e:
                if not manifest_path.exists():
                    raise ToolchainError(f"Cannot obtain channel manifest {url}: {e}")
                logger.warning(f"Using cached channel manifest, refresh failed: {e}")

            self._manifest = ChannelManifest.from_file(manifest_path)
            return self._manifest

    def _fetch_checksum(self, url: str) -> Optional[str]:
        text = self.downloader.fetch_text(f"{url}.sha256")
        parts = text.split()
        return parts[0] if parts else None

    def resolve(self, platform: str) -> ToolchainDescriptor:
        """Resolve the pinned toolchain for a system.

        Args:
            platform: System identifier, e.g. 'x86_64-linux'

        Returns:
            ToolchainDescriptor pinned to a concrete version

        Raises:
            ToolchainError: If the toolchain or a component is unavailable
        """
        try:
            target = rust_target(platform)
        except PlatformError as e:
            raise ToolchainError(str(e))

        manifest = self.load_manifest()
        version = manifest.version

        if not manifest.is_available("rust", target):
            raise ToolchainError(
                f"Rust {self.settings.channel} {version} is not available for {platform} ({target})"
            )

        missing: List[str] = []
        for component in self.settings.components:
            if not manifest.is_available(manifest.resolve_component(component), target):
                missing.append(component)
        if missing:
            raise ToolchainError(
                f"Components not available in Rust {version} for {platform} ({target}): "
                + ", ".join(missing)
            )

        descriptor = ToolchainDescriptor(
            channel=self.settings.channel,
            version=version,
            date=manifest.date,
            target=target,
            components=tuple(self.settings.components),
            native_build_inputs=tuple(self.settings.native_build_inputs),
        )
        logger.info(f"[{platform}] toolchain rust {version} ({manifest.date}) for {target}")
        return descriptor
