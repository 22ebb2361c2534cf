"""Security advisory database and Cargo.lock auditing.

This module handles:
- Loading RustSec-format advisories (crates/<name>/<ID>.md files whose
  metadata sits in a fenced ```toml block)
- Fetching the advisory database archive into the cache on every run
- Matching locked registry packages against advisories using semver
  requirements from the advisories' patched/unaffected lists

Advisory format:
    [advisory]
    id = "RUSTSEC-2023-0071"
    package = "rsa"
    aliases = ["CVE-2023-49092"]
    informational = "unmaintained"   # optional
    withdrawn = "2024-01-01"         # optional

    [affected]
    os = ["windows"]                 # optional
    arch = ["x86"]                   # optional

    [versions]
    patched = [">= 0.9.7"]
    unaffected = ["< 0.2.0"]
"""

import logging
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from functools import total_ordering
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .cache import Cache
from .downloader import ChecksumError, Downloader, DownloadError, ExtractionError

logger = logging.getLogger(__name__)

REGISTRY_SOURCE_PREFIXES = ("registry+", "sparse+")

_TOML_BLOCK = re.compile(r"```toml\s*\n(.*?)\n```", re.DOTALL)
_VERSION = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")
_COMPARATOR = re.compile(r"^(\^|~|=|>=|<=|>|<)?\s*(.+)$")


class AdvisoryDatabaseError(Exception):
    """Raised when the advisory database cannot be obtained or parsed."""

    pass


@total_ordering
@dataclass(frozen=True)
class Version:
    """Semantic version (build metadata ignored)."""

    major: int
    minor: int = 0
    patch: int = 0
    pre: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Version":
        match = _VERSION.match(text.strip())
        if not match:
            raise ValueError(f"Invalid version: {text!r}")
        major, minor, patch, pre = match.groups()
        return cls(
            int(major),
            int(minor or 0),
            int(patch or 0),
            tuple(pre.split(".")) if pre else (),
        )

    def _pre_key(self) -> Tuple:
        # A release sorts after all of its pre-releases
        if not self.pre:
            return (1,)
        parts = []
        for ident in self.pre:
            if ident.isdigit():
                parts.append((0, int(ident), ""))
            else:
                parts.append((1, 0, ident))
        return (0, tuple(parts))

    def __lt__(self, other: "Version") -> bool:
        if (self.major, self.minor, self.patch) != (other.major, other.minor, other.patch):
            return (self.major, self.minor, self.patch) < (other.major, other.minor, other.patch)
        return self._pre_key() < other._pre_key()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            text += "-" + ".".join(self.pre)
        return text


@dataclass(frozen=True)
class Comparator:
    """One version constraint such as '>= 1.2' or '^0.3.1'."""

    op: str
    version: Version
    # Number of components written (1 = '1', 2 = '1.2', 3 = '1.2.3')
    precision: int

    @classmethod
    def parse(cls, text: str) -> "Comparator":
        text = text.strip()
        match = _COMPARATOR.match(text)
        if not match:
            raise ValueError(f"Invalid version requirement: {text!r}")
        op, raw = match.groups()
        raw = raw.strip()
        if raw in ("*", "x", "X"):
            return cls("*", Version(0), 0)
        raw = re.sub(r"(\.[*xX])+$", "", raw)
        core = raw.split("-", 1)[0].split("+", 1)[0]
        precision = len(core.split("."))
        return cls(op or "^", Version.parse(raw), precision)

    def _next_partial(self) -> Version:
        """Smallest version above everything the written components match."""
        v = self.version
        if self.precision == 1:
            return Version(v.major + 1, 0, 0)
        return Version(v.major, v.minor + 1, 0)

    def _caret_upper(self) -> Version:
        v = self.version
        if v.major > 0 or self.precision == 1:
            return Version(v.major + 1, 0, 0)
        if v.minor > 0 or self.precision == 2:
            return Version(0, v.minor + 1, 0)
        return Version(0, 0, v.patch + 1)

    def matches(self, version: Version) -> bool:
        op, v = self.op, self.version
        partial = self.precision < 3
        if op == "*":
            return True
        if op == ">":
            return version >= self._next_partial() if partial else version > v
        if op == ">=":
            return version >= v
        if op == "<":
            return version < v
        if op == "<=":
            return version < self._next_partial() if partial else version <= v
        if op == "=":
            return v <= version < self._next_partial() if partial else version == v
        if op == "~":
            upper = Version(v.major + 1, 0, 0) if self.precision == 1 else Version(v.major, v.minor + 1, 0)
            return v <= version < upper
        return v <= version < self._caret_upper()


@dataclass(frozen=True)
class VersionReq:
    """Comma-separated conjunction of comparators."""

    comparators: Tuple[Comparator, ...]

    @classmethod
    def parse(cls, text: str) -> "VersionReq":
        parts = [part for part in text.split(",") if part.strip()]
        if not parts:
            raise ValueError("Empty version requirement")
        return cls(tuple(Comparator.parse(part) for part in parts))

    def matches(self, version: Version) -> bool:
        # Pre-releases only match requirements that mention a pre-release
        # of the same major.minor.patch
        if version.pre and not any(
            c.version.pre
            and (c.version.major, c.version.minor, c.version.patch)
            == (version.major, version.minor, version.patch)
            for c in self.comparators
        ):
            return False
        return all(c.matches(version) for c in self.comparators)


@dataclass
class Advisory:
    """One security advisory for a crate."""

    id: str
    package: str
    title: str = ""
    date: str = ""
    url: str = ""
    aliases: List[str] = field(default_factory=list)
    informational: Optional[str] = None
    withdrawn: Optional[str] = None
    patched: List[VersionReq] = field(default_factory=list)
    unaffected: List[VersionReq] = field(default_factory=list)
    affected_os: List[str] = field(default_factory=list)
    affected_arch: List[str] = field(default_factory=list)

    @classmethod
    def from_markdown(cls, text: str, source: str = "<advisory>") -> "Advisory":
        """Parse an advisory markdown file.

        Raises:
            AdvisoryDatabaseError: If the metadata block is missing or invalid
        """
        match = _TOML_BLOCK.search(text)
        if not match:
            raise AdvisoryDatabaseError(f"{source}: no toml metadata block")
        try:
            data = tomllib.loads(match.group(1))
        except tomllib.TOMLDecodeError as e:
            raise AdvisoryDatabaseError(f"{source}: invalid metadata: {e}")

        meta = data.get("advisory") or {}
        if not meta.get("id") or not meta.get("package"):
            raise AdvisoryDatabaseError(f"{source}: advisory without id or package")

        versions = data.get("versions") or {}
        affected = data.get("affected") or {}
        try:
            patched = [VersionReq.parse(req) for req in versions.get("patched") or []]
            unaffected = [VersionReq.parse(req) for req in versions.get("unaffected") or []]
        except ValueError as e:
            raise AdvisoryDatabaseError(f"{source}: {e}")

        # Title is the first markdown heading after the block
        title = ""
        for line in text[match.end():].splitlines():
            if line.startswith("#"):
                title = line.lstrip("#").strip()
                break

        withdrawn = meta.get("withdrawn")
        return cls(
            id=str(meta["id"]),
            package=str(meta["package"]),
            title=title,
            date=str(meta.get("date", "")),
            url=str(meta.get("url", "")),
            aliases=[str(alias) for alias in meta.get("aliases") or []],
            informational=meta.get("informational"),
            withdrawn=str(withdrawn) if withdrawn else None,
            patched=patched,
            unaffected=unaffected,
            affected_os=list(affected.get("os") or []),
            affected_arch=list(affected.get("arch") or []),
        )

    def identifiers(self) -> List[str]:
        return [self.id] + self.aliases

    def applies_to_platform(self, target_os: Optional[str], target_arch: Optional[str]) -> bool:
        """Whether the advisory's os/arch restriction includes the platform.

        Unknown platform values never exclude an advisory.
        """
        if self.affected_os and target_os and target_os not in self.affected_os:
            return False
        if self.affected_arch and target_arch and target_arch not in self.affected_arch:
            return False
        return True

    def affects(self, version: Version) -> bool:
        if any(req.matches(version) for req in self.patched):
            return False
        if any(req.matches(version) for req in self.unaffected):
            return False
        return True


@dataclass(frozen=True)
class LockedPackage:
    """A package pinned in Cargo.lock."""

    name: str
    version: str
    source: Optional[str] = None

    @property
    def from_registry(self) -> bool:
        return bool(self.source) and self.source.startswith(REGISTRY_SOURCE_PREFIXES)


def read_lockfile(path: Path) -> List[LockedPackage]:
    """Read the [[package]] entries of a Cargo.lock.

    Raises:
        AdvisoryDatabaseError: If the lockfile cannot be parsed
    """
    try:
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise AdvisoryDatabaseError(f"Cannot read lockfile {path}: {e}")
    return [
        LockedPackage(name=entry["name"], version=entry["version"], source=entry.get("source"))
        for entry in data.get("package") or []
        if "name" in entry and "version" in entry
    ]


@dataclass
class AuditFinding:
    """An advisory matched against a locked package."""

    advisory: Advisory
    package: LockedPackage

    def describe(self) -> str:
        kind = self.advisory.informational or "vulnerability"
        text = f"{self.advisory.id} ({kind}): {self.package.name} {self.package.version}"
        if self.advisory.title:
            text += f" - {self.advisory.title}"
        return text


@dataclass
class AuditReport:
    """Outcome of auditing one lockfile."""

    vulnerabilities: List[AuditFinding] = field(default_factory=list)
    warnings: List[AuditFinding] = field(default_factory=list)
    ignored: List[AuditFinding] = field(default_factory=list)
    packages_scanned: int = 0

    @property
    def success(self) -> bool:
        return not self.vulnerabilities

    def summary(self) -> str:
        lines = [
            f"Scanned {self.packages_scanned} crate dependencies: "
            + f"{len(self.vulnerabilities)} vulnerabilities, {len(self.warnings)} warnings, "
            + f"{len(self.ignored)} ignored"
        ]
        for finding in self.vulnerabilities:
            lines.append(f"error: {finding.describe()}")
        for finding in self.warnings:
            lines.append(f"warning: {finding.describe()}")
        for finding in self.ignored:
            lines.append(f"ignored: {finding.describe()}")
        return "\n".join(lines)


class AdvisoryDatabase:
    """
    In-memory advisory database indexed by crate name.

    Example usage:
        db = AdvisoryDatabase.fetch(cache, DEFAULT_ADVISORY_DB_URL)
        report = db.audit(read_lockfile(Path("Cargo.lock")), ignore=["RUSTSEC-2023-0071"])
    """

    def __init__(self, advisories: Iterable[Advisory] = ()):
        self._by_package: dict = {}
        for advisory in advisories:
            self._by_package.setdefault(advisory.package, []).append(advisory)

    def __len__(self) -> int:
        return sum(len(items) for items in self._by_package.values())

    def advisories_for(self, package: str) -> List[Advisory]:
        return list(self._by_package.get(package, []))

    @classmethod
    def load(cls, path: Path) -> "AdvisoryDatabase":
        """Load a database checkout (the directory holding crates/).

        Unparseable advisories are skipped with a warning.

        Raises:
            AdvisoryDatabaseError: If path has no crates directory
        """
        crates_dir = Path(path) / "crates"
        if not crates_dir.is_dir():
            raise AdvisoryDatabaseError(f"No advisory database at {path} (missing crates/)")

        advisories = []
        for md_file in sorted(crates_dir.glob("*/*.md")):
            try:
                advisories.append(Advisory.from_markdown(md_file.read_text(encoding="utf-8"), str(md_file)))
            except AdvisoryDatabaseError as e:
                logger.warning(f"Skipping advisory: {e}")
        logger.info(f"Loaded {len(advisories)} advisories from {path}")
        return cls(advisories)

    @classmethod
    def fetch(
        cls,
        cache: Cache,
        url: str,
        downloader: Optional[Downloader] = None,
        show_progress: bool = False,
    ) -> "AdvisoryDatabase":
        """Download and load the database archive.

        The archive is fetched again on every call so that audits always see
        the newest advisories.

        Raises:
            AdvisoryDatabaseError: If the download or extraction fails
        """
        downloader = downloader or Downloader()
        db_dir = cache.get_advisory_db_dir(url)
        archive_path = db_dir / "advisory-db.tar.gz"
        extract_dir = db_dir / "db"

        try:
            downloader.download(url, archive_path, show_progress=show_progress)
            if extract_dir.exists():
                shutil.rmtree(extract_dir)
            downloader.extract_archive(archive_path, extract_dir)
        except (DownloadError, ChecksumError, ExtractionError) as e:
            raise AdvisoryDatabaseError(f"Cannot fetch advisory database {url}: {e}")

        return cls.load(_find_db_root(extract_dir))

    @classmethod
    def from_location(cls, cache: Cache, location: str, project_dir: Path) -> "AdvisoryDatabase":
        """Load from a URL (fetched) or a local directory."""
        if location.startswith(("http://", "https://")):
            return cls.fetch(cache, location)
        path = Path(location)
        if not path.is_absolute():
            path = Path(project_dir) / path
        return cls.load(path)

    def audit(
        self,
        packages: Sequence[LockedPackage],
        ignore: Iterable[str] = (),
        target_os: Optional[str] = None,
        target_arch: Optional[str] = None,
    ) -> AuditReport:
        """Match locked packages against the database.

        Args:
            packages: Locked packages; only registry packages are audited
            ignore: Advisory IDs or aliases excluded from failure consideration
            target_os: Platform os (Rust cfg spelling) for [affected] filtering
            target_arch: Platform arch (Rust cfg spelling) for [affected] filtering

        Returns:
            AuditReport; success is False when any vulnerability remains
        """
        ignored_ids = set(ignore)
        report = AuditReport()

        for package in packages:
            if not package.from_registry:
                continue
            report.packages_scanned += 1
            try:
                version = Version.parse(package.version)
            except ValueError:
                logger.warning(f"Skipping {package.name}: unparseable version {package.version!r}")
                continue

            for advisory in self._by_package.get(package.name, []):
                if advisory.withdrawn:
                    continue
                if not advisory.applies_to_platform(target_os, target_arch):
                    continue
                if not advisory.affects(version):
                    continue

                finding = AuditFinding(advisory=advisory, package=package)
                if ignored_ids.intersection(advisory.identifiers()):
                    report.ignored.append(finding)
                elif advisory.informational:
                    report.warnings.append(finding)
                else:
                    report.vulnerabilities.append(finding)

        return report


def _find_db_root(extract_dir: Path) -> Path:
    """Locate the directory holding crates/ (archives wrap it in one folder)."""
    if (extract_dir / "crates").is_dir():
        return extract_dir
    for child in sorted(extract_dir.iterdir()):
        if child.is_dir() and (child / "crates").is_dir():
            return child
    raise AdvisoryDatabaseError(f"No crates/ directory in {extract_dir}")
