"""Unit tests for CommandExecutor."""

import sys
import threading
import time

import pytest

from buildmatrix.build.command_executor import (
    BuildCancelledError,
    CommandExecutor,
    EngineError,
    kill_process_tree,
)


class TestCommandExecutor:
    """Test cases for CommandExecutor."""

    def test_success_captures_output(self, tmp_path):
        executor = CommandExecutor(poll_interval=0.05)

        result = executor.run(
            [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            cwd=tmp_path,
        )

        assert result.returncode == 0
        assert "out" in result.output
        assert "err" in result.output
        assert result.duration >= 0

    def test_failure_raises_engine_error(self, tmp_path):
        executor = CommandExecutor(poll_interval=0.05)

        with pytest.raises(EngineError) as exc_info:
            executor.run(
                [sys.executable, "-c", "print('error[E0425]: cannot find value'); raise SystemExit(101)"],
                cwd=tmp_path,
                description="cargo clippy",
            )

        error = exc_info.value
        assert error.returncode == 101
        assert "cargo clippy failed with exit code 101" in str(error)
        assert "E0425" in str(error)

    def test_undecodable_output_is_replaced(self, tmp_path):
        executor = CommandExecutor(poll_interval=0.05)

        result = executor.run(
            [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'ok \\xff\\n')"],
            cwd=tmp_path,
        )

        assert result.returncode == 0
        assert result.output == "ok �\n"

    def test_missing_program(self, tmp_path):
        with pytest.raises(EngineError, match="failed to start"):
            CommandExecutor().run(["definitely-not-a-real-cargo"], cwd=tmp_path)

    def test_cancelled_before_start(self, tmp_path):
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(BuildCancelledError):
            CommandExecutor().run([sys.executable, "-c", "pass"], cwd=tmp_path, cancel_event=cancel_event)

    def test_cancel_kills_running_command(self, tmp_path):
        executor = CommandExecutor(poll_interval=0.05)
        cancel_event = threading.Event()
        timer = threading.Timer(0.3, cancel_event.set)
        timer.start()

        start = time.time()
        try:
            with pytest.raises(BuildCancelledError):
                executor.run(
                    [sys.executable, "-c", "import time; time.sleep(30)"],
                    cwd=tmp_path,
                    cancel_event=cancel_event,
                )
        finally:
            timer.cancel()

        assert time.time() - start < 15


class TestKillProcessTree:
    """Test cases for kill_process_tree."""

    def test_missing_pid(self):
        # PIDs this large are not handed out on any supported system
        assert kill_process_tree(2**30) == 0
