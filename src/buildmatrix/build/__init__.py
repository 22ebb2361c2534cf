"""
Build system components for buildmatrix.

This module provides the build pipeline implementation including:
- Source filtering and fingerprinting
- Engine command execution with cancellation
- The build-engine interface and the cargo engine

Orchestration, checks and outputs live in their own modules
(orchestrator, checks, outputs) and are imported from there.
"""

from .command_executor import BuildCancelledError, CommandExecutor, CommandResult, EngineError
from .engine import BuildEngine, CargoEngine, CommonBuildArgs
from .source_scanner import FilteredSourceTree, SourceFingerprinter, write_dummy_sources

__all__ = [
    "BuildCancelledError",
    "CommandExecutor",
    "CommandResult",
    "EngineError",
    "BuildEngine",
    "CargoEngine",
    "CommonBuildArgs",
    "FilteredSourceTree",
    "SourceFingerprinter",
    "write_dummy_sources",
]
