"""
Integration tests for a real cargo build.

These tests drive rustup and cargo on the host system through the CLI and
the orchestrator. They need network access for the channel manifest and a
working rustup installation, and only run with --full.
"""

import re
import shutil
import subprocess
from pathlib import Path

import pytest

from buildmatrix.build.orchestrator import MatrixOrchestrator
from buildmatrix.cli import main
from buildmatrix.config import MatrixConfig, current_system

FIXTURE = Path(__file__).parent.parent / "fixtures" / "hello"


def _stable_version() -> str:
    completed = subprocess.run(
        ["rustup", "run", "stable", "rustc", "--version"],
        capture_output=True,
        text=True,
        timeout=120,
    )
    match = re.match(r"rustc (\d+\.\d+\.\d+)", completed.stdout)
    if completed.returncode != 0 or not match:
        pytest.skip(f"No stable toolchain: {completed.stderr.strip()}")
    return match.group(1)


@pytest.fixture(scope="module")
def rust_version():
    if shutil.which("rustup") is None or shutil.which("cargo") is None:
        pytest.skip("rustup and cargo are required")
    version = _stable_version()
    install = subprocess.run(
        ["rustup", "toolchain", "install", version, "--profile", "minimal", "--component", "clippy,rustfmt"],
        capture_output=True,
        text=True,
        timeout=900,
    )
    if install.returncode != 0:
        pytest.skip(f"Cannot install Rust {version}: {install.stderr.strip()}")
    return version


@pytest.fixture
def hello_project(tmp_path, rust_version, monkeypatch):
    monkeypatch.delenv("BUILDMATRIX_CACHE_DIR", raising=False)
    project = tmp_path / "hello"
    shutil.copytree(FIXTURE, project)
    ini = project / "buildmatrix.ini"
    ini.write_text(ini.read_text().replace("channel = stable\n", f"channel = stable\nversion = {rust_version}\n"))
    return project


@pytest.mark.integration
class TestCargoBuild:
    """Integration tests for building and checking with cargo."""

    def test_build_and_check_current_system(self, hello_project):
        system = current_system()
        orchestrator = MatrixOrchestrator(hello_project, config=MatrixConfig.load(hello_project))

        outputs = orchestrator.run(systems=[system])

        assert outputs.failures == [], [str(f) for f in outputs.failures]
        platform_outputs = outputs.per_system[system]
        failed = {r.name: r.diagnostic for r in platform_outputs.checks.values() if not r.success}
        assert failed == {}
        program = outputs.overlay.resolve(system).program
        run = subprocess.run([str(program)], capture_output=True, text=True, timeout=60)
        assert run.stdout.strip() == "hello from buildmatrix"

    def test_second_run_reuses_dependencies(self, hello_project):
        system = current_system()
        first = MatrixOrchestrator(hello_project, config=MatrixConfig.load(hello_project))
        first.run(systems=[system], run_checks=False)
        entries = first.deps_cache.entries()

        (hello_project / "src" / "main.rs").write_text(
            (hello_project / "src" / "main.rs").read_text().replace("hello from", "hi from")
        )
        second = MatrixOrchestrator(hello_project, config=MatrixConfig.load(hello_project))
        outputs = second.run(systems=[system], run_checks=False)

        assert outputs.success
        assert len(entries) == 1
        assert second.deps_cache.entries() == entries

    def test_cli_check_failing_lint(self, hello_project):
        (hello_project / "src" / "main.rs").write_text(
            (hello_project / "src" / "main.rs").read_text() + "\nfn unused_helper() {}\n"
        )

        with pytest.raises(SystemExit) as exc_info:
            main(["check", "-C", str(hello_project), "clippy"])

        assert exc_info.value.code == 1
