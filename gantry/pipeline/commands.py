"""Subprocess execution for command stages.

Each command is an opaque shell string or argv vector. Output is merged,
streamed line by line to a log sink, and only the exit status is inspected.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, Iterable, Optional, TextIO

from gantry.config import Config
from gantry.pipeline.cancel import CancelScope
from gantry.pipeline.schema import Command

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    """Outcome of a single command invocation."""
    exit_code: Optional[int]  # None when cancelled before exit
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class StageOutput:
    """Log sink for one stage: logger, bounded tail and optional log file."""

    def __init__(
        self,
        stage: str,
        log_path: Optional[Path] = None,
        tail_lines: int = Config.OUTPUT_TAIL_LINES,
        masker=None,
    ):
        self.stage = stage
        self.log_path = log_path
        self._tail: Deque[str] = deque(maxlen=tail_lines)
        self._last_line: Optional[str] = None
        self._masker = masker
        self._lock = threading.Lock()
        self._file: Optional[TextIO] = None
        self._logger = logging.getLogger(f"gantry.stage.{stage}")

        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(log_path, "a", encoding="utf-8")

    def write(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if self._masker is not None:
            line = self._masker(line)
        with self._lock:
            self._tail.append(line)
            if line.strip():
                self._last_line = line.strip()
            if self._file is not None:
                self._file.write(line + "\n")
                self._file.flush()
        self._logger.info(line)

    def mark_attempt(self, attempt: int) -> None:
        """Start of a new attempt; the artifact line must come from it."""
        with self._lock:
            self._last_line = None
        if attempt > 1:
            self.write(f"--- attempt {attempt} ---")
            with self._lock:
                self._last_line = None

    @property
    def tail(self) -> str:
        with self._lock:
            return "\n".join(self._tail)

    @property
    def last_line(self) -> Optional[str]:
        with self._lock:
            return self._last_line

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


class CommandRunner:
    """Run stage commands as subprocesses with timeout and cancellation."""

    def __init__(self, poll_interval: float = 0.05, kill_grace_seconds: float = 5.0):
        """
        Initialize command runner.

        Args:
            poll_interval: How often to check for exit, timeout and cancellation
            kill_grace_seconds: Time between SIGTERM and SIGKILL on abort
        """
        self.poll_interval = poll_interval
        self.kill_grace_seconds = kill_grace_seconds

    def run_all(
        self,
        commands: Iterable[Command],
        env: Dict[str, str],
        cwd: Path,
        output: StageOutput,
        cancel: CancelScope,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run commands in order, stopping at the first failure.

        The timeout applies to the whole list (one stage attempt).
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        result = CommandResult(exit_code=0)

        for command in commands:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            result = self.run(command, env, cwd, output, cancel, remaining)
            if not result.ok:
                return result

        return result

    def run(
        self,
        command: Command,
        env: Dict[str, str],
        cwd: Path,
        output: StageOutput,
        cancel: CancelScope,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run one command, streaming its output into `output`."""
        if cancel.cancelled:
            return CommandResult(exit_code=None, cancelled=True)

        shell = isinstance(command, str)
        display = command if shell else " ".join(command)
        logger.debug(f"[{output.stage}] $ {display}")

        try:
            proc = subprocess.Popen(
                command,
                shell=shell,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=(os.name == "posix"),
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            output.write(f"gantry: cannot execute {display!r}: {e}")
            return CommandResult(exit_code=127)

        reader = threading.Thread(target=self._pump, args=(proc, output), daemon=True)
        reader.start()

        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = False
        cancelled = False

        # Background children may hold the output pipe after the command exits,
        # so the attempt lasts until both the process and the reader are done
        while proc.poll() is None or reader.is_alive():
            if cancel.cancelled:
                cancelled = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                output.write(f"gantry: timed out after {timeout:.1f}s")
                break
            if proc.poll() is None:
                time.sleep(self.poll_interval)
            else:
                reader.join(self.poll_interval)

        if cancelled or timed_out:
            self._terminate(proc, reader)

        proc.wait()
        reader.join(self.kill_grace_seconds)
        if reader.is_alive():
            logger.warning(f"[{output.stage}] output pipe still open after the process group was killed")

        if cancelled:
            return CommandResult(exit_code=None, cancelled=True)
        if timed_out:
            return CommandResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)
        return CommandResult(exit_code=proc.returncode)

    def _pump(self, proc: subprocess.Popen, output: StageOutput) -> None:
        for line in proc.stdout:
            output.write(line)
        proc.stdout.close()

    def _terminate(self, proc: subprocess.Popen, reader: threading.Thread) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period.

        The group outlives its leader while background children remain, so
        escalation also covers children still holding the output pipe.
        """
        self._signal(proc, signal.SIGTERM)
        grace_end = time.monotonic() + self.kill_grace_seconds
        try:
            proc.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            return

        reader.join(max(0.0, grace_end - time.monotonic()))
        if reader.is_alive():
            logger.warning(f"Children of process {proc.pid} ignored SIGTERM, killing")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            pass
