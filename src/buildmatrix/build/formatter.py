"""
Whole-tree formatter.

This module provides the project formatter: it selects files by extension
across the source tree (generated directories excluded) and formats each one
through either an external stdin/stdout tool (default 'alejandra --quiet -')
or the built-in 'whitespace' canonicalizer.

In check mode nothing is written; the report lists the files that would
change. Formatting a formatted tree changes nothing.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .source_scanner import EXCLUDED_DIRS

logger = logging.getLogger(__name__)

BUILTIN_WHITESPACE = "whitespace"


class FormatterError(Exception):
    """Raised when the formatting tool cannot run or rejects a file."""

    pass


def canonicalize_whitespace(text: str) -> str:
    """Strip trailing blanks, drop trailing blank lines, end with one newline."""
    lines = [line.rstrip(" \t") for line in text.replace("\r\n", "\n").split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


@dataclass
class FormatReport:
    """Outcome of one formatter run."""

    checked: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    check_only: bool = False

    def summary(self) -> str:
        if not self.changed:
            return f"{len(self.checked)} files checked, all formatted"
        verb = "would be reformatted" if self.check_only else "reformatted"
        lines = [f"{len(self.changed)} of {len(self.checked)} files {verb}:"]
        lines.extend(f"  {path}" for path in self.changed)
        return "\n".join(lines)


@dataclass
class FormatterCommand:
    """A runnable formatter bound to a project root.

    Attributes:
        root: Project root
        extensions: File extensions (without dot) selected for formatting
        tool: External command line, or 'whitespace' for the built-in formatter
        timeout: Seconds allowed per file for an external tool (None waits)
    """

    root: Path
    extensions: List[str]
    tool: str = BUILTIN_WHITESPACE
    timeout: Optional[float] = None

    @property
    def is_builtin(self) -> bool:
        return self.tool.strip() == BUILTIN_WHITESPACE

    def argv(self) -> List[str]:
        return shlex.split(self.tool)

    def files(self) -> List[str]:
        """Relative posix paths of every selected file, sorted."""
        suffixes = tuple(f".{ext}" for ext in self.extensions)
        if not suffixes:
            return []
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(
                d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith("result-")
            )
            rel_dir = Path(dirpath).relative_to(self.root)
            for filename in filenames:
                if filename.endswith(suffixes):
                    found.append((rel_dir / filename).as_posix())
        return sorted(found)

    def _formatter(self) -> Callable[[str, str], str]:
        if self.is_builtin:
            return lambda text, _path: canonicalize_whitespace(text)
        return self._format_external

    def _format_external(self, text: str, rel_path: str) -> str:
        argv = self.argv()
        try:
            completed = subprocess.run(
                argv,
                input=text,
                capture_output=True,
                text=True,
                cwd=str(self.root),
                timeout=self.timeout,
            )
        except OSError as e:
            raise FormatterError(f"Cannot run formatter {argv[0]!r}: {e}")
        except subprocess.TimeoutExpired:
            raise FormatterError(f"Formatter timed out on {rel_path}")
        if completed.returncode != 0:
            raise FormatterError(
                f"Formatter failed on {rel_path} (exit {completed.returncode}): {completed.stderr.strip()}"
            )
        return completed.stdout

    def run(self, check: bool = False, paths: Optional[Sequence[str]] = None) -> FormatReport:
        """Format the tree.

        Args:
            check: Only report files that would change
            paths: Restrict to these relative paths (all selected files when None)

        Returns:
            FormatReport

        Raises:
            FormatterError: If the external tool fails or a file is not UTF-8
        """
        format_text = self._formatter()
        report = FormatReport(check_only=check)

        for rel_path in paths if paths is not None else self.files():
            path = self.root / rel_path
            try:
                original = path.read_text(encoding="utf-8")
            except UnicodeDecodeError as e:
                raise FormatterError(f"{rel_path}: not valid UTF-8 ({e.reason} at byte {e.start})") from e
            formatted = format_text(original, rel_path)
            report.checked.append(rel_path)
            if formatted == original:
                continue
            report.changed.append(rel_path)
            if not check:
                path.write_text(formatted, encoding="utf-8")
                logger.info(f"Formatted {rel_path}")

        return report


class FormatterProvider:
    """Supplies the platform-independent formatter command."""

    def __init__(
        self,
        root: Path,
        extensions: Sequence[str],
        tool: str = BUILTIN_WHITESPACE,
        timeout: Optional[float] = None,
    ):
        self.root = Path(root)
        self.extensions = [ext.lstrip(".") for ext in extensions]
        self.tool = tool or BUILTIN_WHITESPACE
        self.timeout = timeout

    def command(self) -> FormatterCommand:
        return FormatterCommand(
            root=self.root, extensions=list(self.extensions), tool=self.tool, timeout=self.timeout
        )
