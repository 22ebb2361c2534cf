"""buildmatrix - per-platform build matrix for a single Cargo package.

Resolves a pinned Rust toolchain per system, caches a dependency-only build,
builds the package from it, runs the verification checks and exports the
results (packages, apps, checks, dev shells, formatter, overlay).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
