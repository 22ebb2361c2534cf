"""Unit tests for the check registry and check execution."""

import threading
import time

import pytest

from buildmatrix.build.checks import (
    CheckContext,
    CheckFailure,
    CheckKind,
    CheckRegistry,
    CheckRegistryError,
    VulnerabilityAudit,
    default_registry,
    run_checks,
)
from buildmatrix.build.command_executor import BuildCancelledError, EngineError
from buildmatrix.build.engine import CommonBuildArgs
from buildmatrix.build.formatter import FormatterCommand
from buildmatrix.build.source_scanner import SourceFingerprinter
from buildmatrix.config.ini_parser import CheckSettings
from buildmatrix.packages.advisories import AdvisoryDatabase, AdvisoryDatabaseError
from buildmatrix.packages.cache import DependencyArtifact
from tests.fakes import FakeEngine, make_toolchain


@pytest.fixture
def common_args(cargo_project):
    return CommonBuildArgs(source=SourceFingerprinter(cargo_project).build_inputs(), toolchain=make_toolchain())


@pytest.fixture
def deps(tmp_path):
    path = tmp_path / "deps"
    path.mkdir()
    (path / "deps.txt").write_text("ok")
    return DependencyArtifact(key="k", path=path)


def _context(common_args, deps, tmp_path, platform="x86_64-linux"):
    return CheckContext(platform=platform, common_args=common_args, cached_deps=deps, work_dir=tmp_path / "work")


class TestCheckRegistry:
    """Test cases for CheckRegistry."""

    def test_register_and_names(self):
        registry = CheckRegistry()
        registry.register(CheckKind.LINT, "clippy", lambda ctx: "")
        registry.register(CheckKind.TEST, "test", lambda ctx: "")

        assert registry.names() == ["clippy", "test"]
        assert "clippy" in registry
        assert len(registry) == 2

    def test_duplicate_name_rejected(self):
        registry = CheckRegistry()
        registry.register(CheckKind.LINT, "clippy", lambda ctx: "")

        with pytest.raises(CheckRegistryError, match="already registered"):
            registry.register(CheckKind.TEST, "clippy", lambda ctx: "")

    def test_empty_name_rejected(self):
        with pytest.raises(CheckRegistryError):
            CheckRegistry().register(CheckKind.LINT, "", lambda ctx: "")

    def test_definitions(self, common_args, deps, tmp_path):
        registry = default_registry(FakeEngine())

        definitions = registry.definitions("x86_64-linux", common_args, deps, tmp_path / "checks")

        assert [d.name for d in definitions] == ["clippy", "test", "fmt"]
        assert all(d.platform == "x86_64-linux" for d in definitions)
        assert definitions[0].context.work_dir == tmp_path / "checks" / "clippy"

    def test_definitions_subset_keeps_registration_order(self, common_args, deps, tmp_path):
        registry = default_registry(FakeEngine())

        definitions = registry.definitions("x86_64-linux", common_args, deps, tmp_path, only=["fmt", "clippy"])

        assert [d.name for d in definitions] == ["clippy", "fmt"]

    def test_definitions_unknown_name(self, common_args, deps, tmp_path):
        registry = default_registry(FakeEngine())

        with pytest.raises(CheckRegistryError, match="Unknown check"):
            registry.definitions("x86_64-linux", common_args, deps, tmp_path, only=["miri"])

    def test_configured_names(self):
        names = CheckSettings(lint="lint", test="tests", format="format", audit="security")
        audit = VulnerabilityAudit(lambda: AdvisoryDatabase())

        registry = default_registry(FakeEngine(), names=names, audit=audit)

        assert registry.names() == ["lint", "tests", "format", "security"]

    def test_colliding_configured_names(self):
        names = CheckSettings(lint="check", test="check")

        with pytest.raises(CheckRegistryError):
            default_registry(FakeEngine(), names=names)


class TestCheckDefinition:
    """Test cases for running a single check."""

    def _run(self, runner, common_args, deps, tmp_path):
        registry = CheckRegistry()
        registry.register(CheckKind.LINT, "workdir", runner)
        definition = registry.definitions("x86_64-linux", common_args, deps, tmp_path)[0]
        return definition.run()

    def test_success(self, common_args, deps, tmp_path):
        result = self._run(lambda ctx: "clean", common_args, deps, tmp_path)

        assert result.success
        assert result.diagnostic == "clean"
        assert result.kind is CheckKind.LINT
        assert (tmp_path / "workdir").is_dir()

    def test_engine_diagnostic_surfaced(self, common_args, deps, tmp_path):
        def runner(ctx):
            raise EngineError("cargo clippy failed with exit code 101", output="error: unused variable `x`")

        result = self._run(runner, common_args, deps, tmp_path)

        assert not result.success
        assert "unused variable `x`" in result.diagnostic

    def test_cancelled(self, common_args, deps, tmp_path):
        def runner(ctx):
            raise BuildCancelledError("cargo test cancelled")

        result = self._run(runner, common_args, deps, tmp_path)

        assert not result.success
        assert result.diagnostic.startswith("Cancelled:")

    def test_unexpected_error_never_escapes(self, common_args, deps, tmp_path):
        def runner(ctx):
            raise RuntimeError("boom")

        result = self._run(runner, common_args, deps, tmp_path)

        assert not result.success
        assert "RuntimeError: boom" in result.diagnostic


class TestRunChecks:
    """Test cases for run_checks."""

    def test_failures_do_not_stop_others(self, common_args, deps, tmp_path):
        engine = FakeEngine(fail_lint=True)
        definitions = default_registry(engine).definitions("x86_64-linux", common_args, deps, tmp_path)

        results = run_checks(definitions)

        assert [(r.name, r.success) for r in results] == [("clippy", False), ("test", True), ("fmt", True)]
        assert engine.count("test") == 1
        assert engine.count("format") == 1

    def test_checks_run_concurrently(self, common_args, deps, tmp_path):
        barrier = threading.Barrier(3, timeout=5)

        def runner(ctx):
            barrier.wait()
            return "met"

        registry = CheckRegistry()
        for name in ("a", "b", "c"):
            registry.register(CheckKind.TEST, name, runner)

        start = time.time()
        results = run_checks(registry.definitions("x86_64-linux", common_args, deps, tmp_path))

        assert all(r.success for r in results)
        assert time.time() - start < 5

    def test_empty(self):
        assert run_checks([]) == []


class TestVulnerabilityAudit:
    """Test cases for the vulnerability audit check."""

    def test_vulnerable_lockfile_fails(self, advisory_db, common_args, deps, tmp_path):
        audit = VulnerabilityAudit(lambda: AdvisoryDatabase.load(advisory_db))

        with pytest.raises(CheckFailure, match="RUSTSEC-2023-0071"):
            audit(_context(common_args, deps, tmp_path))

    def test_ignore_list(self, advisory_db, common_args, deps, tmp_path):
        audit = VulnerabilityAudit(lambda: AdvisoryDatabase.load(advisory_db), ignore=["RUSTSEC-2023-0071"])

        summary = audit(_context(common_args, deps, tmp_path))

        assert "0 vulnerabilities" in summary
        assert "ignored: RUSTSEC-2023-0071" in summary

    def test_database_loaded_once(self, advisory_db, common_args, deps, tmp_path):
        loads = []

        def load():
            loads.append(1)
            return AdvisoryDatabase.load(advisory_db)

        audit = VulnerabilityAudit(load, ignore=["CVE-2023-49092"])
        for platform in ("x86_64-linux", "aarch64-darwin"):
            audit(_context(common_args, deps, tmp_path, platform))

        assert len(loads) == 1

    def test_unavailable_database_fails_every_audit(self, common_args, deps, tmp_path):
        loads = []

        def load():
            loads.append(1)
            raise AdvisoryDatabaseError("Cannot fetch advisory database: 503")

        audit = VulnerabilityAudit(load)

        for _ in range(2):
            with pytest.raises(CheckFailure, match="Advisory database unavailable"):
                audit(_context(common_args, deps, tmp_path))
        assert len(loads) == 1

    def test_missing_lockfile(self, cargo_project, deps, tmp_path):
        (cargo_project / "Cargo.lock").unlink()
        args = CommonBuildArgs(source=SourceFingerprinter(cargo_project).build_inputs(), toolchain=make_toolchain())
        audit = VulnerabilityAudit(lambda: AdvisoryDatabase())

        with pytest.raises(CheckFailure, match="No Cargo.lock"):
            audit(_context(args, deps, tmp_path))


class TestFilesFormattedCheck:
    """Test cases for the whole-tree formatting check."""

    def test_unformatted_file_fails(self, cargo_project, common_args, deps, tmp_path):
        (cargo_project / "flake.nix").write_text("{ }   \n\n\n")
        formatter = FormatterCommand(root=cargo_project, extensions=["nix"])
        registry = default_registry(FakeEngine(), formatter=formatter, formatter_check_name="nix-files-are-formatted")

        results = run_checks(
            registry.definitions("x86_64-linux", common_args, deps, tmp_path, only=["nix-files-are-formatted"])
        )

        assert not results[0].success
        assert "flake.nix" in results[0].diagnostic
        assert results[0].kind is CheckKind.FILES_FORMATTED
        # Check mode never rewrites
        assert (cargo_project / "flake.nix").read_text() == "{ }   \n\n\n"

    def test_formatted_tree_passes(self, cargo_project, common_args, deps, tmp_path):
        (cargo_project / "flake.nix").write_text("{ }\n")
        formatter = FormatterCommand(root=cargo_project, extensions=["nix"])
        registry = default_registry(FakeEngine(), formatter=formatter, formatter_check_name="nix-files-are-formatted")

        results = run_checks(
            registry.definitions("x86_64-linux", common_args, deps, tmp_path, only=["nix-files-are-formatted"])
        )

        assert results[0].success
