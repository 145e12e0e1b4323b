from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import pytest

from matrixci.declaration import PipelineDeclaration
from matrixci.errors import ExecutionError
from matrixci.process import CancelToken, ProcessOutcome, Spawner
from matrixci.ui.console import Console, set_console

ExitCode = Union[int, Callable[[Mapping[str, str]], int]]


class FakeSpawner(Spawner):
    """
    Scripted process collaborator.

    exit_codes: command -> exit code, or a callable of the job env
    blocking:   commands that run until cancelled or timed out
    broken:     commands that cannot be spawned at all
    """

    def __init__(
        self,
        exit_codes: Optional[Dict[str, ExitCode]] = None,
        *,
        blocking: Tuple[str, ...] = (),
        broken: Tuple[str, ...] = (),
        max_block: float = 10.0,
    ):
        self.exit_codes = dict(exit_codes or {})
        self.blocking = set(blocking)
        self.broken = set(broken)
        self.max_block = max_block
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def commands(self) -> List[str]:
        with self._lock:
            return [c for c, _ in self.calls]

    def spawn(
        self,
        command: str,
        env: Mapping[str, str],
        working_dir: Path,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProcessOutcome:
        with self._lock:
            self.calls.append((command, dict(env)))
        if command in self.broken:
            raise ExecutionError("could not spawn command", {"command": command})

        if command in self.blocking:
            started = time.monotonic()
            while True:
                if cancel is not None and cancel.cancelled:
                    return ProcessOutcome(None, "interrupted\n", cancelled=True)
                elapsed = time.monotonic() - started
                if timeout is not None and elapsed >= timeout:
                    return ProcessOutcome(None, "still running\n", timed_out=True)
                if elapsed >= self.max_block:
                    return ProcessOutcome(99, "blocked too long\n")
                time.sleep(0.01)

        code = self.exit_codes.get(command, 0)
        if callable(code):
            code = code(env)
        return ProcessOutcome(code, f"ran {command}\n")


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))
    yield


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("MATRIXCI_CACHE_DIR", "MATRIXCI_REDIS_URL", "MATRIXCI_WORKERS", "MATRIXCI_JOB_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)


def travis_pipeline(*, fast_finish: bool = False, **clippy) -> PipelineDeclaration:
    """os x rust build matrix, nightly allowed to fail, plus a Clippy job in its own stage."""
    from matrixci.dsl import build

    clippy_job = dict(
        stage="static analysis",
        name="Clippy",
        rust="stable",
        before_script="rustup component add clippy",
        script="cargo clippy -- -D clippy::all",
        after_success=[],
    )
    clippy_job.update(clippy)
    return (
        build("build and test")
        .axis("os", "linux", "osx")
        .axis("rust", "stable", "beta", "nightly")
        .stages("pre-build checks", "build and test", "lints")
        .script("./ci/test.sh")
        .after_success("./ci/coverage.sh")
        .allow_failure(rust="nightly")
        .fast_finish(fast_finish)
        .include(**clippy_job)
        .build()
    )


def nightly_fails(env: Mapping[str, str]) -> int:
    return 1 if env.get("MATRIXCI_RUST") == "nightly" else 0
