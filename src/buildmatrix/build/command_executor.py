"""Command Executor.

This module runs build-engine commands via subprocess with cooperative
cancellation and proper error handling.

Design:
    - Wraps subprocess.Popen so a running command can be cancelled
    - Cancellation terminates the command's whole process tree (psutil)
    - Failures raise EngineError carrying command, exit code and output
    - The orchestrator imposes no timeout; that belongs to the engine
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Raised when an external build-engine command fails."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.command = list(command) if command else None
        self.returncode = returncode
        self.output = output

    def __str__(self) -> str:
        if self.output:
            return f"{self.message}\n{self.output.rstrip()}"
        return self.message


class BuildCancelledError(Exception):
    """Raised when a command is cancelled before it completes."""

    pass


@dataclass
class CommandResult:
    """Result of a completed command."""

    command: List[str]
    returncode: int
    output: str
    duration: float


def kill_process_tree(pid: int, timeout: float = 3.0) -> int:
    """Terminate a process and all of its descendants.

    Children are terminated before parents; stragglers are force killed.

    Args:
        pid: Root process ID
        timeout: Seconds to wait for graceful termination

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        processes = root.children(recursive=True)
    except psutil.NoSuchProcess:
        processes = []
    processes.reverse()
    processes.append(root)

    killed = 0
    for proc in processes:
        try:
            proc.terminate()
            killed += 1
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to terminate process {proc.pid}: {e}")

    _gone, alive = psutil.wait_procs(processes, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
            logger.warning(f"Force killed stubborn process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to force kill process {proc.pid}: {e}")

    return killed


class CommandExecutor:
    """Executes engine commands with cancellation support.

    This class handles:
    - Running subprocess commands with combined stdout/stderr capture
    - Polling a cancellation event while the command runs
    - Killing the process tree when cancelled
    - Raising EngineError with the captured output on failure
    """

    def __init__(self, poll_interval: float = 0.25, verbose: bool = False):
        """Initialize command executor.

        Args:
            poll_interval: Seconds between cancellation checks
            verbose: Log command output on success too
        """
        self.poll_interval = poll_interval
        self.verbose = verbose

    def run(
        self,
        cmd: Sequence[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        description: str = "",
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            cmd: Command and arguments
            cwd: Working directory
            env: Full environment for the child (None inherits)
            cancel_event: Event that requests cancellation when set
            description: Short label used in log and error messages

        Returns:
            CommandResult for a zero exit status

        Raises:
            BuildCancelledError: If cancel_event was set before or during the run
            EngineError: If the command cannot start or exits non-zero
        """
        cmd = [str(part) for part in cmd]
        label = description or cmd[0]

        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelledError(f"{label} cancelled before start")

        logger.info(f"Running {label}: {' '.join(cmd)}")
        start_time = time.time()

        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise EngineError(f"{label}: failed to start {cmd[0]}: {e}", command=cmd)

        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Cancelling {label} (pid {process.pid})")
                    kill_process_tree(process.pid)
                    process.communicate()
                    raise BuildCancelledError(f"{label} cancelled")

        duration = time.time() - start_time
        output = output or ""

        if process.returncode != 0:
            raise EngineError(
                f"{label} failed with exit code {process.returncode}",
                command=cmd,
                returncode=process.returncode,
                output=output,
            )

        if self.verbose and output:
            logger.info(output.rstrip())
        logger.info(f"{label} finished in {duration:.2f}s")

        return CommandResult(command=cmd, returncode=process.returncode, output=output, duration=duration)
