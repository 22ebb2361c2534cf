"""Platform enumeration and detection.

Systems are identified with the ``<arch>-<os>`` form used by flake outputs
(``x86_64-linux``, ``aarch64-darwin``). This module supplies the default
system list, detects the host system, and maps systems to Rust target
triples and to the os/arch names used by advisory metadata.

Default systems:
    - x86_64-linux
    - aarch64-linux
    - x86_64-darwin
    - aarch64-darwin
"""

import platform
from typing import Dict, Iterable, List, Optional, Tuple


class PlatformError(Exception):
    """Raised when a system identifier is unknown or the host is unsupported."""

    pass


DEFAULT_SYSTEMS = (
    "x86_64-linux",
    "aarch64-linux",
    "x86_64-darwin",
    "aarch64-darwin",
)

# System -> Rust target triple
RUST_TARGETS: Dict[str, str] = {
    "x86_64-linux": "x86_64-unknown-linux-gnu",
    "aarch64-linux": "aarch64-unknown-linux-gnu",
    "i686-linux": "i686-unknown-linux-gnu",
    "armv7l-linux": "armv7-unknown-linux-gnueabihf",
    "riscv64-linux": "riscv64gc-unknown-linux-gnu",
    "x86_64-darwin": "x86_64-apple-darwin",
    "aarch64-darwin": "aarch64-apple-darwin",
    "x86_64-freebsd": "x86_64-unknown-freebsd",
    "x86_64-windows": "x86_64-pc-windows-msvc",
    "aarch64-windows": "aarch64-pc-windows-msvc",
}

# Advisory metadata uses Rust's target_os / target_arch spelling
_RUST_OS = {"darwin": "macos"}
_RUST_ARCH = {"i686": "x86", "armv7l": "arm"}


def enumerate_platforms(configured: Optional[Iterable[str]] = None) -> List[str]:
    """Return the ordered systems for a run.

    Args:
        configured: Systems from configuration. None selects the defaults;
            an empty list is legal and yields no systems.

    Returns:
        Systems in configured order with blanks and duplicates removed
    """
    if configured is None:
        return list(DEFAULT_SYSTEMS)

    systems: List[str] = []
    for system in configured:
        system = system.strip()
        if system and system not in systems:
            systems.append(system)
    return systems


def split_system(system: str) -> Tuple[str, str]:
    """Split a system identifier into (arch, os).

    Raises:
        PlatformError: If the identifier is not of the form <arch>-<os>
    """
    arch, sep, os_name = system.partition("-")
    if not sep or not arch or not os_name:
        raise PlatformError(f"Invalid system identifier: {system!r}")
    return arch, os_name


def rust_target(system: str) -> str:
    """Map a system to its Rust target triple.

    Raises:
        PlatformError: If no target is known for the system
    """
    try:
        return RUST_TARGETS[system]
    except KeyError:
        raise PlatformError(
            f"No Rust target known for system {system!r}. "
            + f"Known systems: {', '.join(sorted(RUST_TARGETS))}"
        )


def rust_os_arch(system: str) -> Tuple[str, str]:
    """Return (target_os, target_arch) as spelled in Rust cfg values."""
    arch, os_name = split_system(system)
    return _RUST_OS.get(os_name, os_name), _RUST_ARCH.get(arch, arch)


def current_system() -> str:
    """Detect the host system identifier.

    Returns:
        System identifier such as 'x86_64-linux' or 'aarch64-darwin'

    Raises:
        PlatformError: If the host operating system is not supported
    """
    system = platform.system().lower()
    machine = platform.machine().lower()

    if system not in ("linux", "darwin", "freebsd", "windows"):
        raise PlatformError(f"Unsupported platform: {system} {machine}")

    if machine in ("x86_64", "amd64"):
        arch = "x86_64"
    elif machine in ("aarch64", "arm64"):
        arch = "aarch64"
    elif machine in ("i386", "i686"):
        arch = "i686"
    elif machine.startswith("arm"):
        arch = "armv7l"
    elif machine == "riscv64":
        arch = "riscv64"
    else:
        raise PlatformError(f"Unsupported architecture: {machine}")

    return f"{arch}-{system}"
