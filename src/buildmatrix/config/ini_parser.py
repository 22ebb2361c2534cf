"""
buildmatrix.ini configuration parser.

This module parses the project's buildmatrix.ini file into typed settings
for every stage of the matrix: systems, toolchain, build arguments, checks,
vulnerability audit, dev shell and formatter.

Example buildmatrix.ini:
    [buildmatrix]
    name = nez
    systems = x86_64-linux, aarch64-darwin
    strict = false

    [toolchain]
    channel = stable
    version = latest
    components = rust-src, rust-analyzer
    native_build_inputs = pkg-config, rustls-libssl

    [audit]
    ignore = RUSTSEC-2023-0071

    [devshell]
    tools = sqlx-cli:sqlx, bacon

    [devshell.env]
    DATABASE_URL = sqlite:./db.sqlite

A missing file means every default applies.
"""

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

CONFIG_FILENAME = "buildmatrix.ini"

DEFAULT_ADVISORY_DB_URL = "https://github.com/rustsec/advisory-db/archive/refs/heads/main.tar.gz"


class MatrixConfigError(Exception):
    """Exception raised for buildmatrix.ini configuration errors."""

    pass


@dataclass
class ToolchainSettings:
    """Requested Rust toolchain."""

    channel: str = "stable"
    version: str = "latest"
    components: List[str] = field(default_factory=lambda: ["rust-src", "rust-analyzer"])
    native_build_inputs: List[str] = field(default_factory=lambda: ["pkg-config", "rustls-libssl"])


@dataclass
class BuildSettings:
    """Arguments shared by every build step."""

    extra_args: str = ""
    test_runner: str = "nextest"
    include: List[str] = field(default_factory=list)


@dataclass
class CheckSettings:
    """Names of the registered checks."""

    lint: str = "clippy"
    test: str = "test"
    format: str = "fmt"
    audit: str = "audit"


@dataclass
class AuditSettings:
    """Vulnerability audit inputs."""

    database: str = DEFAULT_ADVISORY_DB_URL
    ignore: List[str] = field(default_factory=list)


@dataclass
class DevShellSettings:
    """Interactive development environment."""

    tools: List[str] = field(default_factory=lambda: ["sqlx-cli:sqlx", "bacon"])
    env: Dict[str, str] = field(default_factory=lambda: {"DATABASE_URL": "sqlite:./db.sqlite"})


@dataclass
class FormatterSettings:
    """Whole-tree formatter."""

    extensions: List[str] = field(default_factory=lambda: ["nix"])
    command: str = "alejandra --quiet -"
    check_name: Optional[str] = None
    timeout: Optional[float] = None

    def resolved_check_name(self) -> str:
        """Name of the formatting-conformance check."""
        if self.check_name:
            return self.check_name
        return "-".join(self.extensions or ["source"]) + "-files-are-formatted"


@dataclass
class MatrixConfig:
    """
    Complete buildmatrix configuration.

    Usage:
        config = MatrixConfig.load(Path("."))
        systems = config.systems  # None means the default systems
    """

    name: str = "nez"
    systems: Optional[List[str]] = None
    strict: bool = False
    jobs: Optional[int] = None
    toolchain: ToolchainSettings = field(default_factory=ToolchainSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    checks: CheckSettings = field(default_factory=CheckSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    devshell: DevShellSettings = field(default_factory=DevShellSettings)
    formatter: FormatterSettings = field(default_factory=FormatterSettings)

    @classmethod
    def load(cls, project_dir: Path) -> "MatrixConfig":
        """Load buildmatrix.ini from a project directory.

        Args:
            project_dir: Project root directory

        Returns:
            Parsed configuration (defaults when the file does not exist)

        Raises:
            MatrixConfigError: If the file cannot be parsed or holds invalid values
        """
        ini_path = Path(project_dir) / CONFIG_FILENAME
        if not ini_path.exists():
            return cls()
        return cls.from_file(ini_path)

    @classmethod
    def from_file(cls, ini_path: Path) -> "MatrixConfig":
        """Parse a specific configuration file."""
        parser = configparser.ConfigParser(allow_no_value=True, interpolation=None)
        # Keep environment variable names as written
        parser.optionxform = str  # type: ignore[assignment,method-assign]

        try:
            parser.read(ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise MatrixConfigError(f"Failed to parse {ini_path}: {e}") from e

        return cls.from_parser(parser, source=str(ini_path))

    @classmethod
    def from_parser(cls, parser: configparser.ConfigParser, source: str = CONFIG_FILENAME) -> "MatrixConfig":
        """Build a configuration from an already-read parser."""
        config = cls()

        if parser.has_section("buildmatrix"):
            section = parser["buildmatrix"]
            config.name = section.get("name", config.name).strip() or config.name
            if "systems" in section:
                config.systems = split_list(section.get("systems") or "")
            config.strict = _get_bool(parser, "buildmatrix", "strict", config.strict, source)
            config.jobs = _get_jobs(section.get("jobs"), source)

        if parser.has_section("toolchain"):
            section = parser["toolchain"]
            tc = config.toolchain
            tc.channel = section.get("channel", tc.channel).strip() or tc.channel
            tc.version = section.get("version", tc.version).strip() or tc.version
            if "components" in section:
                tc.components = split_list(section.get("components") or "")
            if "native_build_inputs" in section:
                tc.native_build_inputs = split_list(section.get("native_build_inputs") or "")

        if parser.has_section("build"):
            section = parser["build"]
            config.build.extra_args = (section.get("extra_args") or "").strip()
            runner = (section.get("test_runner") or config.build.test_runner).strip()
            if runner not in ("nextest", "test"):
                raise MatrixConfigError(
                    f"{source}: [build] test_runner must be 'nextest' or 'test', got {runner!r}"
                )
            config.build.test_runner = runner
            if "include" in section:
                config.build.include = split_list(section.get("include") or "")

        if parser.has_section("checks"):
            section = parser["checks"]
            for kind in ("lint", "test", "format", "audit"):
                value = (section.get(kind) or "").strip()
                if value:
                    setattr(config.checks, kind, value)

        if parser.has_section("audit"):
            section = parser["audit"]
            config.audit.database = (section.get("database") or config.audit.database).strip()
            if "ignore" in section:
                config.audit.ignore = split_list(section.get("ignore") or "")

        if parser.has_section("devshell"):
            section = parser["devshell"]
            if "tools" in section:
                config.devshell.tools = split_list(section.get("tools") or "")

        if parser.has_section("devshell.env"):
            config.devshell.env = {
                key: (value or "").strip() for key, value in parser["devshell.env"].items()
            }

        if parser.has_section("formatter"):
            section = parser["formatter"]
            if "extensions" in section:
                config.formatter.extensions = [
                    ext.lstrip(".") for ext in split_list(section.get("extensions") or "")
                ]
            config.formatter.command = (section.get("command") or config.formatter.command).strip()
            check_name = (section.get("check_name") or "").strip()
            config.formatter.check_name = check_name or None
            config.formatter.timeout = _get_timeout(section.get("timeout"), source)

        return config


def split_list(value: str) -> List[str]:
    """Split a comma and/or newline separated value.

    Example:
        For tools =
            sqlx-cli:sqlx, bacon
            cargo-watch
        Returns: ['sqlx-cli:sqlx', 'bacon', 'cargo-watch']
    """
    items = []
    for line in value.split("\n"):
        for item in line.split(","):
            item = item.strip()
            if item:
                items.append(item)
    return items


def _get_bool(parser: configparser.ConfigParser, section: str, key: str, default: bool, source: str) -> bool:
    try:
        return parser.getboolean(section, key, fallback=default)
    except ValueError as e:
        raise MatrixConfigError(f"{source}: [{section}] {key}: {e}") from e


def _get_jobs(value: Optional[str], source: str) -> Optional[int]:
    if value is None or not value.strip() or value.strip() == "auto":
        return None
    try:
        jobs = int(value)
    except ValueError:
        raise MatrixConfigError(f"{source}: [buildmatrix] jobs must be an integer or 'auto', got {value!r}")
    if jobs < 1:
        raise MatrixConfigError(f"{source}: [buildmatrix] jobs must be at least 1, got {jobs}")
    return jobs


def _get_timeout(value: Optional[str], source: str) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError:
        raise MatrixConfigError(f"{source}: [formatter] timeout must be a number of seconds, got {value!r}")
    if timeout <= 0:
        raise MatrixConfigError(f"{source}: [formatter] timeout must be positive, got {value!r}")
    return timeout
