# executor.py
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .cache import CacheManager
from .errors import CacheError, ExecutionError
from .model import JobDescriptor, JobResult, JobStatus
from .process import CancelToken, Spawner, SubprocessSpawner

logger = logging.getLogger(__name__)


def job_environment(job: JobDescriptor, base: Mapping[str, str]) -> Dict[str, str]:
    """
    base env + CI markers + axis values + the job's own overrides (last wins).

    Axis values are exported as MATRIXCI_<AXIS>, e.g. MATRIXCI_RUST=nightly.
    """
    env = dict(base)
    env["CI"] = "true"
    env["MATRIXCI"] = "true"
    env["MATRIXCI_STAGE"] = job.stage
    env["MATRIXCI_JOB_NUMBER"] = job.number
    env["MATRIXCI_JOB_NAME"] = job.label
    for axis, value in job.axis_values:
        env[f"MATRIXCI_{axis.upper()}"] = value
    env.update(job.environment)
    return env


class _Log:
    """Captured output of one job: every command's output under a `$ command` header."""

    def __init__(self) -> None:
        self._parts: List[str] = []

    def note(self, text: str) -> None:
        self._parts.append(f"[matrixci] {text}\n")

    def command(self, phase: str, command: str) -> None:
        self._parts.append(f"$ {command}  # {phase}\n")

    def write(self, text: str) -> None:
        if text:
            self._parts.append(text if text.endswith("\n") else text + "\n")

    def getvalue(self) -> str:
        return "".join(self._parts)


@dataclass(frozen=True)
class _Phase:
    status: JobStatus
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def interrupted(self) -> bool:
        return self.status in (JobStatus.TIMEOUT, JobStatus.CANCELLED)


_PHASE_OK = _Phase(JobStatus.SUCCESS, 0)


class Executor:
    """
    Runs one job's hook phases in order:

        cache restore -> before_script -> script -> after_success | after_failure
                      -> cache write-back (script succeeded only)

    Job-level failures are returned as JobResult values, never raised.
    """

    def __init__(
        self,
        spawner: Optional[Spawner] = None,
        cache: Optional[CacheManager] = None,
        *,
        working_dir: str | Path = ".",
        base_env: Optional[Mapping[str, str]] = None,
        default_timeout: Optional[float] = None,
    ):
        self.spawner = spawner or SubprocessSpawner()
        self.cache = cache
        self.working_dir = Path(working_dir).resolve()
        # snapshot once; jobs never see later mutations of os.environ
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.default_timeout = default_timeout

    def run(self, job: JobDescriptor, cancel: Optional[CancelToken] = None) -> JobResult:
        cancel = cancel or CancelToken()
        started = time.monotonic()
        log = _Log()

        def finish(status: JobStatus, exit_code: Optional[int] = None, error: Optional[str] = None) -> JobResult:
            return JobResult(
                job=job,
                status=status,
                exit_code=exit_code,
                output=log.getvalue(),
                duration=time.monotonic() - started,
                tolerated=job.allow_failure,
                error=error,
            )

        if cancel.cancelled:
            return finish(JobStatus.CANCELLED)

        timeout = job.timeout if job.timeout is not None else self.default_timeout
        deadline = None if timeout is None else started + timeout
        env = job_environment(job, self.base_env)

        self._restore_cache(job, env, log)

        phase = self._run_phase("before_script", job.hooks.before_script, env, deadline, cancel, log)
        if not phase.ok:
            # script never runs, and neither do the after hooks
            return finish(phase.status, phase.exit_code, phase.error)

        script = self._run_phase("script", job.hooks.script, env, deadline, cancel, log)
        if script.interrupted:
            return finish(script.status, error=script.error)

        if script.ok:
            after = self._run_phase("after_success", job.hooks.after_success, env, deadline, cancel, log)
        else:
            after = self._run_phase("after_failure", job.hooks.after_failure, env, deadline, cancel, log)
        if after.interrupted:
            return finish(after.status, error=after.error)
        if not after.ok:
            # after hooks are reported, they don't change the job outcome
            log.note(f"after hook {after.status.value} (exit={after.exit_code})")

        if script.ok:
            self._write_back(job, env, cancel, log)
        return finish(script.status, script.exit_code, script.error)

    # ------------------------------------------------------------------

    def _run_phase(
        self,
        phase: str,
        commands: Sequence[str],
        env: Mapping[str, str],
        deadline: Optional[float],
        cancel: CancelToken,
        log: _Log,
    ) -> _Phase:
        for command in commands:
            if cancel.cancelled:
                return _Phase(JobStatus.CANCELLED)
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log.note("job timed out")
                    return _Phase(JobStatus.TIMEOUT)

            log.command(phase, command)
            try:
                outcome = self.spawner.spawn(
                    command,
                    env,
                    self.working_dir,
                    timeout=remaining,
                    cancel=cancel,
                )
            except ExecutionError as e:
                log.write(str(e))
                return _Phase(JobStatus.ERRORED, error=e.message)

            log.write(outcome.output)
            if outcome.timed_out:
                log.note("job timed out")
                return _Phase(JobStatus.TIMEOUT)
            if outcome.cancelled:
                log.note("job cancelled")
                return _Phase(JobStatus.CANCELLED)
            if outcome.exit_code != 0:
                # first failure short-circuits the rest of the phase
                return _Phase(JobStatus.FAILED, outcome.exit_code)
        return _PHASE_OK

    def _restore_cache(self, job: JobDescriptor, env: Mapping[str, str], log: _Log) -> None:
        if job.cache is None or self.cache is None:
            return
        handle = self.cache.fetch(job.cache)
        if handle is None:
            log.note(f"cache: miss ({job.cache.key[:12]})")
            return
        try:
            handle.restore(self.working_dir, env)
        except CacheError as e:
            logger.warning("[%s] cache restore failed: %s", job.number, e.message)
            log.note("cache: restore failed, continuing without cache")
            return
        log.note(f"cache: hit ({job.cache.key[:12]})")

    def _write_back(self, job: JobDescriptor, env: Mapping[str, str], cancel: CancelToken, log: _Log) -> None:
        if job.cache is None or self.cache is None or cancel.cancelled:
            return
        handle = self.cache.snapshot(job.cache, self.working_dir, env)
        if handle is None:
            return
        if cancel.cancelled:
            # cancelled while archiving
            log.note("cache: write-back skipped, job cancelled")
            return
        if self.cache.store(job.cache, handle):
            log.note(f"cache: saved ({job.cache.key[:12]})")
