"""Unit tests for the cargo engine command lines."""

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from buildmatrix.build.command_executor import CommandExecutor, CommandResult, EngineError
from buildmatrix.build.engine import CargoEngine, CommonBuildArgs
from buildmatrix.build.source_scanner import SourceFingerprinter
from buildmatrix.packages.cache import DependencyArtifact
from tests.fakes import make_toolchain


class RecordingExecutor(CommandExecutor):
    """Executor that records commands and optionally runs a hook instead of a process."""

    def __init__(self, hook=None):
        super().__init__()
        self.calls = []
        self.hook = hook

    def run(self, cmd, cwd, env=None, cancel_event=None, description=""):
        cmd = [str(part) for part in cmd]
        self.calls.append({"cmd": cmd, "cwd": Path(cwd), "env": env, "description": description})
        if self.hook:
            self.hook(cmd, Path(cwd), env)
        return CommandResult(command=cmd, returncode=0, output=f"ran {description}", duration=0.0)


@pytest.fixture
def args(cargo_project):
    source = SourceFingerprinter(cargo_project).build_inputs()
    return CommonBuildArgs(source=source, toolchain=make_toolchain(), extra_args="--features 'sqlite tls'")


@pytest.fixture
def deps(tmp_path):
    path = tmp_path / "deps-artifact"
    (path / "release" / "deps").mkdir(parents=True)
    (path / "release" / "deps" / "libserde.rlib").write_text("rlib")
    return DependencyArtifact(key="abc", path=path)


class TestCommonBuildArgs:
    """Test cases for CommonBuildArgs."""

    def test_cache_inputs_exclude_source(self, args):
        inputs = args.cache_inputs()

        assert inputs == {
            "build_inputs": ["rust-1.80.0-x86_64-unknown-linux-gnu", "pkg-config", "rustls-libssl"],
            "extra_args": "--features 'sqlite tls'",
            "target": "x86_64-unknown-linux-gnu",
        }

    def test_deps_source(self, args):
        assert args.deps_source.paths == ["Cargo.lock", "Cargo.toml"]


class TestCargoEngine:
    """Test cases for CargoEngine."""

    def test_build_deps_only(self, args, tmp_path):
        seen_sources = []

        def hook(cmd, cwd, env):
            seen_sources.append(sorted(p.relative_to(cwd).as_posix() for p in cwd.rglob("*") if p.is_file()))

        executor = RecordingExecutor(hook)
        engine = CargoEngine(executor=executor)
        dest = tmp_path / "deps" / "artifact"

        assert engine.build_deps_only(args, dest) == dest

        commands = [call["cmd"] for call in executor.calls]
        assert [cmd[4] for cmd in commands] == ["check", "build", "test"]
        assert commands[0][:4] == ["rustup", "run", "1.80.0", "cargo"]
        for cmd in commands:
            assert "--locked" in cmd
            assert cmd[cmd.index("--target") + 1] == "x86_64-unknown-linux-gnu"
            assert cmd[-2:] == ["--features", "sqlite tls"]
        assert all(call["env"]["CARGO_TARGET_DIR"] == str(dest) for call in executor.calls)
        # Only manifests and stubs were compiled, never the real main.rs
        assert seen_sources[0] == ["Cargo.lock", "Cargo.toml", "src/lib.rs", "src/main.rs"]
        assert not (dest.parent / "dummy-src").exists()

    def test_build_deps_only_cleans_up_on_failure(self, args, tmp_path):
        def hook(cmd, cwd, env):
            raise EngineError("cargo check (deps) failed with exit code 101", command=cmd, returncode=101)

        engine = CargoEngine(executor=RecordingExecutor(hook))
        dest = tmp_path / "deps" / "artifact"

        with pytest.raises(EngineError):
            engine.build_deps_only(args, dest)

        assert not (dest.parent / "dummy-src").exists()

    def test_build_package(self, args, deps, tmp_path):
        def hook(cmd, cwd, env):
            release = Path(env["CARGO_TARGET_DIR"]) / "x86_64-unknown-linux-gnu" / "release"
            release.mkdir(parents=True)
            binary = release / "nez"
            binary.write_text("#!/bin/sh\n")
            os.chmod(binary, 0o755)
            (release / "nez.d").write_text("deps")
            (release / "libnez.rlib").write_text("rlib")

        executor = RecordingExecutor(hook)
        dest = tmp_path / "package"

        binaries = CargoEngine(executor=executor).build_package(args, deps, dest)

        assert binaries == [dest / "bin" / "nez"]
        assert executor.calls[0]["cmd"][4:7] == ["build", "--release", "--locked"]
        # Seeded from the cached artifact without touching it
        assert (dest / "target" / "release" / "deps" / "libserde.rlib").exists()
        assert (deps.path / "release" / "deps" / "libserde.rlib").exists()
        assert not (deps.path / "x86_64-unknown-linux-gnu").exists()

    def test_lint_denies_warnings(self, args, deps, tmp_path):
        executor = RecordingExecutor()

        output = CargoEngine(executor=executor).lint(args, deps, tmp_path / "clippy")

        cmd = executor.calls[0]["cmd"]
        assert output == "ran cargo clippy"
        assert cmd[4] == "clippy"
        assert "--all-targets" in cmd
        assert cmd[-3:] == ["--", "--deny", "warnings"]

    @pytest.mark.parametrize(
        "runner,expected",
        [("nextest", ["nextest", "run"]), ("test", ["test", "--release"])],
    )
    def test_test_runner(self, args, deps, tmp_path, runner, expected):
        executor = RecordingExecutor()

        CargoEngine(executor=executor, test_runner=runner).test(args, deps, tmp_path / "test")

        assert executor.calls[0]["cmd"][4:6] == expected

    def test_format_check(self, args, tmp_path):
        executor = RecordingExecutor()

        CargoEngine(executor=executor).format_check(args, tmp_path / "fmt")

        call = executor.calls[0]
        assert call["cmd"][4:] == ["fmt", "--all", "--", "--check"]
        assert (call["cwd"] / "src" / "main.rs").exists()

    def test_nightly_uses_dated_toolchain(self, cargo_project, deps, tmp_path):
        toolchain = make_toolchain()
        nightly = type(toolchain)(
            channel="nightly",
            version="1.82.0",
            date="2024-08-01",
            target=toolchain.target,
        )
        args = CommonBuildArgs(source=SourceFingerprinter(cargo_project).build_inputs(), toolchain=nightly)
        executor = MagicMock(spec=CommandExecutor)
        executor.run.return_value = CommandResult(command=[], returncode=0, output="", duration=0.0)

        CargoEngine(executor=executor).lint(args, deps, tmp_path / "clippy")

        cmd = executor.run.call_args.args[0]
        assert cmd[:3] == ["rustup", "run", "nightly-2024-08-01"]
