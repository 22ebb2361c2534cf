"""
Source tree filtering and fingerprinting.

This module handles:
- Selecting the build-relevant files of a Cargo project (sources, manifests,
  lockfile, cargo config) while skipping VCS metadata and build outputs
- Deriving the dependency-only subset (manifests and lockfile)
- Computing deterministic content digests used as cache key inputs
- Materializing a filtered tree into a work directory
- Writing stub targets so that only dependencies get compiled
"""

import fnmatch
import hashlib
import os
import shutil
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

# Directories never part of a build input
EXCLUDED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".jj",
    ".direnv",
    ".buildmatrix",
    "target",
    "result",
    "node_modules",
    "__pycache__",
}

BUILD_SUFFIXES = (".rs", ".toml")
BUILD_NAMES = {"Cargo.lock"}

# Files that decide which dependencies get built
MANIFEST_NAMES = {
    "Cargo.toml",
    "Cargo.lock",
    "rust-toolchain",
    "rust-toolchain.toml",
}

LIB_STUB = "#![allow(dead_code)]\n"
MAIN_STUB = "#![allow(dead_code)]\nfn main() {}\n"


def _is_cargo_config(rel_path: str) -> bool:
    parts = rel_path.split("/")
    return len(parts) >= 2 and parts[-2] == ".cargo" and parts[-1] in ("config", "config.toml")


def _is_manifest(rel_path: str) -> bool:
    return rel_path.rsplit("/", 1)[-1] in MANIFEST_NAMES or _is_cargo_config(rel_path)


def _hash_file(path: Path, chunk_size: int = 65536) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


@dataclass(frozen=True)
class FilteredSourceTree:
    """Build-relevant subset of a source tree.

    Attributes:
        root: Directory the relative paths are anchored at
        files: Sorted (posix relative path, SHA256 of content) pairs
    """

    root: Path
    files: Tuple[Tuple[str, str], ...]

    @property
    def digest(self) -> str:
        """Deterministic digest over paths and contents."""
        sha256 = hashlib.sha256()
        for rel_path, file_hash in self.files:
            sha256.update(rel_path.encode("utf-8"))
            sha256.update(b"\0")
            sha256.update(file_hash.encode("ascii"))
            sha256.update(b"\n")
        return sha256.hexdigest()

    @property
    def paths(self) -> List[str]:
        return [rel_path for rel_path, _ in self.files]

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, rel_path: object) -> bool:
        return any(rel_path == path for path, _ in self.files)

    def dependency_subset(self) -> "FilteredSourceTree":
        """Manifests, lockfile and cargo config only."""
        return FilteredSourceTree(
            root=self.root,
            files=tuple(entry for entry in self.files if _is_manifest(entry[0])),
        )

    def materialize(self, dest: Path) -> Path:
        """Copy the tree's files into dest, preserving relative layout.

        Args:
            dest: Destination directory (created if missing)

        Returns:
            The destination directory
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        for rel_path in self.paths:
            target = dest / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.root / rel_path, target)
        return dest


class SourceFingerprinter:
    """
    Derives filtered views of a Cargo project's source tree.

    The fingerprinter:
    1. Walks the project, pruning excluded directories
    2. Keeps *.rs, *.toml, Cargo.lock, .cargo/config and extra include globs
    3. Hashes every kept file
    4. Returns FilteredSourceTree views whose digests are stable across runs
    """

    def __init__(self, root: Path, include: Optional[Iterable[str]] = None):
        """
        Initialize source fingerprinter.

        Args:
            root: Project root directory
            include: Extra glob patterns (relative, posix) kept in the build tree,
                e.g. 'migrations/*.sql'
        """
        self.root = Path(root).resolve()
        self.include = list(include or [])

    def _wanted(self, rel_path: str) -> bool:
        name = rel_path.rsplit("/", 1)[-1]
        if name.endswith(BUILD_SUFFIXES) or name in BUILD_NAMES or _is_cargo_config(rel_path):
            return True
        return any(fnmatch.fnmatch(rel_path, pattern) for pattern in self.include)

    def _walk(self) -> List[str]:
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            # Prune in place so os.walk skips excluded directories
            dirnames[:] = sorted(
                d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith("result-")
            )
            rel_dir = Path(dirpath).relative_to(self.root)
            for filename in filenames:
                rel_path = (rel_dir / filename).as_posix()
                if self._wanted(rel_path):
                    found.append(rel_path)
        return sorted(found)

    def build_inputs(self) -> FilteredSourceTree:
        """Return the cleaned source tree used for package builds and checks."""
        files = tuple((rel_path, _hash_file(self.root / rel_path)) for rel_path in self._walk())
        return FilteredSourceTree(root=self.root, files=files)

    def dependency_inputs(self) -> FilteredSourceTree:
        """Return only the files relevant to dependency resolution."""
        return self.build_inputs().dependency_subset()


def write_dummy_sources(dest: Path) -> List[Path]:
    """Create stub crate roots next to every package manifest under dest.

    Only manifests are consulted so that the stubs, like the dependency cache
    key, do not depend on the package's own code. Existing files are left
    untouched.

    Args:
        dest: Directory holding a materialized dependency subset

    Returns:
        Paths of the stub files written
    """
    written: List[Path] = []
    for manifest in sorted(Path(dest).rglob("Cargo.toml")):
        try:
            data = tomllib.loads(manifest.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError:
            # Let cargo report the broken manifest
            continue

        package = data.get("package")
        if not isinstance(package, dict):
            # Virtual workspace root
            continue

        crate_dir = manifest.parent
        stubs = {}

        lib = data.get("lib") or {}
        stubs[lib.get("path", "src/lib.rs")] = LIB_STUB
        stubs["src/main.rs"] = MAIN_STUB

        build_script = package.get("build")
        if isinstance(build_script, str):
            stubs[build_script] = MAIN_STUB

        for table, default_dir in (("bin", "src/bin"), ("test", "tests"), ("bench", "benches"), ("example", "examples")):
            for target in data.get(table) or []:
                path = target.get("path")
                if not path and target.get("name"):
                    path = f"{default_dir}/{target['name']}.rs"
                if path:
                    stubs[path] = MAIN_STUB

        for rel_path, content in sorted(stubs.items()):
            stub_path = crate_dir / rel_path
            if stub_path.exists():
                continue
            stub_path.parent.mkdir(parents=True, exist_ok=True)
            stub_path.write_text(content, encoding="utf-8")
            written.append(stub_path)

    return written
