# process.py
#
# The only boundary to the operating system. Everything above this module
# talks to a Spawner and never assumes a particular shell.
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ExecutionError

_POSIX = os.name == "posix"


class CancelToken:
    """
    Cooperative cancellation flag. A child token is cancelled when its
    parent is, so cancelling a pipeline reaches every in-flight job.
    """

    def __init__(self, parent: Optional[CancelToken] = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> CancelToken:
        return CancelToken(parent=self)


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: Optional[int]
    output: str
    timed_out: bool = False
    cancelled: bool = False


class Spawner(ABC):
    """
    spawn(command, env, working_dir) -> ProcessOutcome

    Implementations must release the process on every exit path and honor
    `timeout` / `cancel`. A command that cannot be started at all raises
    ExecutionError.
    """

    @abstractmethod
    def spawn(
        self,
        command: str,
        env: Mapping[str, str],
        working_dir: Path,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessOutcome:
        ...


class SubprocessSpawner(Spawner):
    """
    Local execution through the system shell, one process group per command
    so the whole tree can be terminated.
    """

    def __init__(self, *, poll_interval: float = 0.1, kill_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def spawn(
        self,
        command: str,
        env: Mapping[str, str],
        working_dir: Path,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessOutcome:
        if cancel is not None and cancel.cancelled:
            return ProcessOutcome(exit_code=None, output="", cancelled=True)

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(working_dir),
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=_POSIX,
            )
        except OSError as e:
            raise ExecutionError(
                f"could not spawn command: {e}",
                {"command": command, "cwd": str(working_dir)},
            ) from e

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                wait_for = self.poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return ProcessOutcome(None, self._terminate(proc), timed_out=True)
                    wait_for = min(wait_for, remaining)
                try:
                    out, _ = proc.communicate(timeout=wait_for)
                    return ProcessOutcome(proc.returncode, out or "")
                except subprocess.TimeoutExpired:
                    # retrying communicate() does not lose output
                    if cancel is not None and cancel.cancelled:
                        return ProcessOutcome(None, self._terminate(proc), cancelled=True)
        finally:
            if proc.poll() is None:
                self._terminate(proc)

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if _POSIX:
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen) -> str:
        """Stop the process tree (TERM, then KILL after the grace period); return remaining output."""
        self._signal(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL if _POSIX else signal.SIGTERM)
            out, _ = proc.communicate()
        return out or ""
