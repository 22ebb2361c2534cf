"""Cache management for buildmatrix.

This module provides the cache directory structure and the content-addressed
store of dependency-only build artifacts.

Cache Structure:
    .buildmatrix/
    ├── cache/
    │   ├── toolchains/
    │   │   └── {url_hash}/         # SHA256 hash of the channel manifest URL
    │   │       └── channel.toml    # Rust channel manifest
    │   ├── advisories/
    │   │   └── {url_hash}/
    │   │       └── db/             # Extracted advisory database
    │   └── deps/
    │       └── {key}/              # Dependency cache key (SHA256)
    │           ├── artifact/       # Engine output (cargo target dir)
    │           └── manifest.json   # Key and key inputs
    ├── build/
    │   └── {system}/
    │       ├── package/            # Package build output
    │       └── checks/{name}/      # Per-check work directories
    └── logs/

Dependency entries appear atomically: they are built in a private temporary
directory and renamed into place only after the engine succeeds, so a failed
or cancelled build leaves nothing behind for its key.
"""

import hashlib
import json
import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..build.command_executor import BuildCancelledError, EngineError
from ..build.source_scanner import FilteredSourceTree

if TYPE_CHECKING:
    from ..build.engine import BuildEngine, CommonBuildArgs
    from .toolchain import ToolchainDescriptor

logger = logging.getLogger(__name__)


class Cache:
    """Manages the buildmatrix cache directory structure.

    The cache can be located in the project directory (.buildmatrix/cache) or
    in a global location given by the BUILDMATRIX_CACHE_DIR environment
    variable.
    """

    def __init__(self, project_dir: Optional[Path] = None):
        """Initialize cache manager.

        Args:
            project_dir: Project directory. If None, uses current directory.
        """
        if project_dir is None:
            project_dir = Path.cwd()

        self.project_dir = Path(project_dir).resolve()

        cache_env = os.environ.get("BUILDMATRIX_CACHE_DIR")
        if cache_env:
            self.cache_root = Path(cache_env).resolve()
        else:
            self.cache_root = self.project_dir / ".buildmatrix" / "cache"

        self.build_root = self.project_dir / ".buildmatrix" / "build"
        self.log_dir = self.project_dir / ".buildmatrix" / "logs"

    @staticmethod
    def hash_url(url: str) -> str:
        """Generate a SHA256 hash of a URL for cache directory naming.

        Returns:
            First 16 characters of SHA256 hash (sufficient for uniqueness)
        """
        return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]

    @property
    def toolchains_dir(self) -> Path:
        """Directory for toolchain channel manifests."""
        return self.cache_root / "toolchains"

    @property
    def advisories_dir(self) -> Path:
        """Directory for extracted advisory databases."""
        return self.cache_root / "advisories"

    @property
    def deps_dir(self) -> Path:
        """Directory for dependency-only artifacts."""
        return self.cache_root / "deps"

    def get_build_dir(self, system: str) -> Path:
        """Get build directory for a system (e.g. 'x86_64-linux')."""
        return self.build_root / system

    def get_toolchain_manifest_path(self, url: str) -> Path:
        """Get path where a channel manifest downloaded from url is kept."""
        return self.toolchains_dir / self.hash_url(url) / "channel.toml"

    def get_advisory_db_dir(self, url: str) -> Path:
        """Get directory of the advisory database fetched from url."""
        return self.advisories_dir / self.hash_url(url)

    def ensure_directories(self) -> None:
        """Create all cache directories if they don't exist."""
        for directory in [
            self.toolchains_dir,
            self.advisories_dir,
            self.deps_dir,
        ]:
            directory.mkdir(parents=True, exist_ok=True)

    def clean_build(self, system: str) -> None:
        """Remove all build outputs for a system."""
        build_dir = self.get_build_dir(system)
        if build_dir.exists():
            shutil.rmtree(build_dir)


class DependencyBuildError(Exception):
    """Raised when the engine fails to build dependencies."""

    def __init__(self, platform: str, message: str):
        super().__init__(message)
        self.platform = platform
        self.message = message


@dataclass(frozen=True)
class DependencyArtifact:
    """Memoized dependency-only build result.

    Attributes:
        key: Content-addressed cache key
        path: Engine output directory (read-only for consumers)
        created_at: Unix timestamp of the build that produced it
    """

    key: str
    path: Path
    created_at: float = 0.0


class DependencyCache:
    """
    Content-addressed store of dependency-only artifacts.

    key = SHA256(canonical JSON of dependency tree digest, toolchain identity,
    build arguments without the full source). At most one engine build runs
    per key at a time; concurrent callers for the same key wait and get the
    artifact produced by the first.

    Example usage:
        deps_cache = DependencyCache(cache, engine)
        artifact = deps_cache.build_deps_only("x86_64-linux", toolchain, args)
    """

    MANIFEST = "manifest.json"
    ARTIFACT = "artifact"

    def __init__(self, cache: Cache, engine: Optional["BuildEngine"] = None):
        """
        Initialize the dependency cache.

        Args:
            cache: Cache layout
            engine: Build engine used on cache misses (None for maintenance
                only; building then raises ValueError)
        """
        self.cache = cache
        self.engine = engine
        self._locks_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    @staticmethod
    def key_inputs(
        deps_source: FilteredSourceTree, toolchain: "ToolchainDescriptor", args: "CommonBuildArgs"
    ) -> Dict[str, object]:
        return {
            "source": deps_source.digest,
            "toolchain": toolchain.identity(),
            "args": args.cache_inputs(),
        }

    @classmethod
    def compute_key(
        cls, deps_source: FilteredSourceTree, toolchain: "ToolchainDescriptor", args: "CommonBuildArgs"
    ) -> str:
        """Compute the cache key for a dependency build."""
        canonical = json.dumps(
            cls.key_inputs(deps_source, toolchain, args), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def _get_key_lock(self, key: str) -> threading.Lock:
        with self._locks_lock:
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    def entry_dir(self, key: str) -> Path:
        return self.cache.deps_dir / key

    def lookup(self, key: str) -> Optional[DependencyArtifact]:
        """Return the stored artifact for key, or None on a miss."""
        entry = self.entry_dir(key)
        manifest_path = entry / self.MANIFEST
        if not manifest_path.exists():
            return None

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable dependency cache entry {key}: {e}")
            return None

        if not isinstance(manifest, dict) or manifest.get("key") != key:
            logger.warning(f"Ignoring dependency cache entry {key} with mismatched manifest")
            return None

        return DependencyArtifact(
            key=key,
            path=entry / self.ARTIFACT,
            created_at=float(manifest.get("created_at", 0.0)),
        )

    def build_deps_only(
        self,
        platform: str,
        toolchain: "ToolchainDescriptor",
        args: "CommonBuildArgs",
        cancel_event: Optional[threading.Event] = None,
    ) -> DependencyArtifact:
        """Return the dependency artifact for (filtered source, toolchain, args).

        Args:
            platform: System the build is for (used in errors and logs)
            toolchain: Toolchain identity; must be the toolchain carried by args
            args: Common build arguments
            cancel_event: Cancellation event forwarded to the engine

        Returns:
            The cached or freshly built artifact

        Raises:
            DependencyBuildError: If the engine fails; nothing is stored
            BuildCancelledError: If cancelled; nothing is stored
        """
        if toolchain != args.toolchain:
            raise ValueError(f"{platform}: toolchain does not match the build arguments' toolchain")

        deps_source = args.deps_source
        key = self.compute_key(deps_source, toolchain, args)

        with self._get_key_lock(key):
            artifact = self.lookup(key)
            if artifact is not None:
                logger.info(f"[{platform}] dependency cache hit {key[:12]}")
                return artifact

            logger.info(f"[{platform}] dependency cache miss {key[:12]}, building dependencies")
            return self._build(key, platform, toolchain, args, cancel_event)

    def _build(
        self,
        key: str,
        platform: str,
        toolchain: "ToolchainDescriptor",
        args: "CommonBuildArgs",
        cancel_event: Optional[threading.Event],
    ) -> DependencyArtifact:
        if self.engine is None:
            raise ValueError("DependencyCache has no build engine")

        self.cache.deps_dir.mkdir(parents=True, exist_ok=True)
        temp_dir = self.cache.deps_dir / f".{key}.{uuid.uuid4().hex}.tmp"
        entry = self.entry_dir(key)

        try:
            temp_dir.mkdir(parents=True)
            self.engine.build_deps_only(args, temp_dir / self.ARTIFACT, cancel_event)

            created_at = time.time()
            manifest = {
                "key": key,
                "platform": platform,
                "inputs": self.key_inputs(args.deps_source, toolchain, args),
                "engine": self.engine.name,
                "files": sum(1 for path in (temp_dir / self.ARTIFACT).rglob("*") if path.is_file()),
                "created_at": created_at,
            }
            (temp_dir / self.MANIFEST).write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )

            if entry.exists():
                # Leftover without a readable manifest
                shutil.rmtree(entry)
            temp_dir.rename(entry)

        except BuildCancelledError:
            logger.warning(f"[{platform}] dependency build {key[:12]} cancelled, nothing cached")
            raise
        except EngineError as e:
            raise DependencyBuildError(platform, f"Dependency build failed: {e}") from e
        finally:
            if temp_dir.exists():
                shutil.rmtree(temp_dir, ignore_errors=True)

        return DependencyArtifact(key=key, path=entry / self.ARTIFACT, created_at=created_at)

    def entries(self) -> List[str]:
        """Keys of every complete entry."""
        if not self.cache.deps_dir.exists():
            return []
        return sorted(
            child.name
            for child in self.cache.deps_dir.iterdir()
            if child.is_dir() and not child.name.startswith(".") and (child / self.MANIFEST).exists()
        )

    def evict(self, key: str) -> bool:
        """Remove one entry. Returns True if it existed.

        Raises:
            ValueError: If key is not a SHA-256 hex digest
        """
        if len(key) != 64 or any(c not in "0123456789abcdef" for c in key):
            raise ValueError(f"Not a dependency cache key: {key!r}")
        with self._get_key_lock(key):
            entry = self.entry_dir(key)
            if not entry.exists():
                return False
            shutil.rmtree(entry)
            return True

    def clear(self) -> int:
        """Remove every entry and leftover temporary directory."""
        removed = 0
        if not self.cache.deps_dir.exists():
            return removed
        for child in self.cache.deps_dir.iterdir():
            if child.is_dir():
                shutil.rmtree(child)
                removed += 1
        return removed
