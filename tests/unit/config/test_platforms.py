"""Unit tests for platform enumeration and detection."""

from unittest.mock import patch

import pytest

from buildmatrix.config.platforms import (
    DEFAULT_SYSTEMS,
    PlatformError,
    current_system,
    enumerate_platforms,
    rust_os_arch,
    rust_target,
    split_system,
)


class TestEnumeratePlatforms:
    """Tests for enumerate_platforms."""

    def test_defaults(self):
        assert enumerate_platforms() == [
            "x86_64-linux",
            "aarch64-linux",
            "x86_64-darwin",
            "aarch64-darwin",
        ]
        assert enumerate_platforms(None) == list(DEFAULT_SYSTEMS)

    def test_configured_overrides_defaults(self):
        assert enumerate_platforms(["riscv64-linux"]) == ["riscv64-linux"]

    def test_order_kept_duplicates_dropped(self):
        systems = [" aarch64-darwin", "x86_64-linux", "aarch64-darwin", ""]
        assert enumerate_platforms(systems) == ["aarch64-darwin", "x86_64-linux"]

    def test_empty_is_legal(self):
        assert enumerate_platforms([]) == []


class TestSystemMapping:
    """Tests for system to target mapping."""

    def test_rust_target(self):
        assert rust_target("x86_64-linux") == "x86_64-unknown-linux-gnu"
        assert rust_target("aarch64-darwin") == "aarch64-apple-darwin"

    def test_rust_target_unknown(self):
        with pytest.raises(PlatformError, match="mips-plan9"):
            rust_target("mips-plan9")

    def test_split_system(self):
        assert split_system("aarch64-linux") == ("aarch64", "linux")

    def test_split_system_invalid(self):
        with pytest.raises(PlatformError):
            split_system("linux")

    def test_rust_os_arch(self):
        assert rust_os_arch("aarch64-darwin") == ("macos", "aarch64")
        assert rust_os_arch("i686-linux") == ("linux", "x86")
        assert rust_os_arch("x86_64-windows") == ("windows", "x86_64")


class TestCurrentSystem:
    """Tests for host detection."""

    @pytest.mark.parametrize(
        "system,machine,expected",
        [
            ("Linux", "x86_64", "x86_64-linux"),
            ("Linux", "aarch64", "aarch64-linux"),
            ("Darwin", "arm64", "aarch64-darwin"),
            ("Darwin", "x86_64", "x86_64-darwin"),
            ("Windows", "AMD64", "x86_64-windows"),
        ],
    )
    def test_detection(self, system, machine, expected):
        with patch("platform.system", return_value=system), patch("platform.machine", return_value=machine):
            assert current_system() == expected

    def test_unsupported_os(self):
        with patch("platform.system", return_value="Plan9"), patch("platform.machine", return_value="x86_64"):
            with pytest.raises(PlatformError, match="Unsupported platform"):
                current_system()

    def test_unsupported_arch(self):
        with patch("platform.system", return_value="Linux"), patch("platform.machine", return_value="sparc64"):
            with pytest.raises(PlatformError, match="Unsupported architecture"):
                current_system()
