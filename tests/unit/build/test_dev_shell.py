"""Unit tests for the development shell."""

import os
import sys
from unittest.mock import patch

from buildmatrix.build.dev_shell import DevEnvironmentProvider, DevShell, DevTool
from buildmatrix.config.ini_parser import DevShellSettings
from tests.fakes import make_toolchain


class TestDevTool:
    def test_parse(self):
        assert DevTool.parse("sqlx-cli:sqlx") == DevTool(package="sqlx-cli", binary="sqlx")
        assert DevTool.parse("bacon") == DevTool(package="bacon", binary="bacon")
        assert DevTool.parse(" cargo-watch : ") == DevTool(package="cargo-watch", binary="cargo-watch")


class TestDevShell:
    """Test cases for DevShell."""

    def _shell(self):
        return DevEnvironmentProvider().provide("x86_64-linux", make_toolchain())

    def test_defaults(self):
        shell = self._shell()

        assert [tool.binary for tool in shell.tools] == ["sqlx", "bacon"]
        assert shell.env == {"DATABASE_URL": "sqlite:./db.sqlite"}
        assert shell.native_build_inputs == ["pkg-config", "rustls-libssl"]
        assert shell.packages == [
            "rust-1.80.0-x86_64-unknown-linux-gnu",
            "pkg-config",
            "rustls-libssl",
            "sqlx-cli",
            "bacon",
        ]

    def test_environment(self):
        env = self._shell().environment({"PATH": "/usr/bin", "DATABASE_URL": "postgres://old"})

        assert env["PATH"] == "/usr/bin"
        assert env["RUSTUP_TOOLCHAIN"] == "1.80.0"
        assert env["DATABASE_URL"] == "sqlite:./db.sqlite"

    def test_describe_has_no_side_effects(self, tmp_path):
        shell = DevEnvironmentProvider(DevShellSettings(tools=[], env={})).provide("x86_64-linux", make_toolchain())

        assert shell.describe() == {
            "toolchain": "1.80.0",
            "components": ["rust-src", "rust-analyzer"],
            "native_build_inputs": ["pkg-config", "rustls-libssl"],
            "tools": [],
            "env": {},
        }

    def test_missing_tools(self, tmp_path):
        cargo = tmp_path / "cargo"
        cargo.write_text("#!/bin/sh\n")
        os.chmod(cargo, 0o755)

        missing = self._shell().missing_tools(str(tmp_path))

        assert missing == ["rustup", "sqlx", "bacon"]

    def test_enter_runs_command_in_environment(self):
        shell = DevShell(platform="x86_64-linux", toolchain=make_toolchain(), env={"RUST_LOG": "debug"})

        with patch("buildmatrix.build.dev_shell.subprocess.call", return_value=3) as call:
            code = shell.enter([sys.executable, "-c", "pass"])

        assert code == 3
        argv = call.call_args.args[0]
        env = call.call_args.kwargs["env"]
        assert argv == [sys.executable, "-c", "pass"]
        assert env["RUST_LOG"] == "debug"
        assert env["RUSTUP_TOOLCHAIN"] == "1.80.0"

    def test_enter_defaults_to_user_shell(self, monkeypatch):
        monkeypatch.setenv("SHELL", "/bin/zsh")
        shell = DevShell(platform="x86_64-linux", toolchain=make_toolchain())

        with patch("buildmatrix.build.dev_shell.subprocess.call", return_value=0) as call:
            shell.enter()

        assert call.call_args.args[0] == ["/bin/zsh"]
