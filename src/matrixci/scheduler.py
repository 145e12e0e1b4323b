# scheduler.py
from __future__ import annotations

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Dict, Iterable, Optional, Set

from .executor import Executor
from .model import JobDescriptor, JobResult, JobStatus, StageDefinition, StageResult, StageStatus
from .process import CancelToken
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


def decide_stage(stage: StageDefinition, results: Iterable[JobResult], *, cancelled: bool = False) -> StageStatus:
    """
    Stage outcome from its job results:
      - FAILURE if any job outside the allow_failures set did not succeed
      - CANCELLED if the stage was cancelled from outside
      - SUCCESS otherwise (tolerated failures included)
    """
    for r in results:
        if stage.tolerates(r.job) or r.status is JobStatus.SUCCESS:
            continue
        if r.status is JobStatus.CANCELLED and cancelled:
            continue
        return StageStatus.FAILURE
    if cancelled:
        return StageStatus.CANCELLED
    return StageStatus.SUCCESS


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class StageScheduler:
    """
    Runs every job of one stage concurrently on a bounded thread pool.

    No ordering is guaranteed between jobs of a stage. With fast_finish the
    stage resolves as soon as every mandatory job is done; tolerated jobs
    still running at that point are cancelled.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.max_workers = max_workers or default_workers()
        self.console = console

    def _run_job(self, stage: StageDefinition, job: JobDescriptor, cancel: CancelToken) -> JobResult:
        # the stage's allow_failures rules decide tolerance, not the descriptor
        tolerated = stage.tolerates(job)
        try:
            result = self.executor.run(job, cancel)
        except Exception as e:
            logger.exception("[%s] executor crashed", job.number)
            return JobResult(
                job=job,
                status=JobStatus.ERRORED,
                output=str(e),
                tolerated=tolerated,
                error=f"{type(e).__name__}: {e}",
            )
        if result.tolerated != tolerated:
            result = replace(result, tolerated=tolerated)
        return result

    def run_stage(self, stage: StageDefinition, cancel: Optional[CancelToken] = None) -> StageResult:
        console = self.console or get_console()
        stage_token = (cancel or CancelToken()).child()
        tokens: Dict[str, CancelToken] = {j.number: stage_token.child() for j in stage.jobs}
        results: Dict[str, JobResult] = {}
        abandoned = False

        pool = ThreadPoolExecutor(
            max_workers=min(self.max_workers, max(1, len(stage.jobs))),
            thread_name_prefix=f"matrixci-stage{stage.position}",
        )
        try:
            in_flight: Dict[Future, JobDescriptor] = {
                pool.submit(self._run_job, stage, job, tokens[job.number]): job for job in stage.jobs
            }
            pending: Set[Future] = set(in_flight)
            mandatory = {f for f, j in in_flight.items() if not stage.tolerates(j)}

            while pending:
                if stage.fast_finish and not (mandatory & pending):
                    # only tolerated jobs left, the outcome is already known
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    result = fut.result()
                    results[result.job.number] = result
                    console.print_job_finished(result)

            if pending:
                abandoned = True
                logger.debug("stage %s: fast_finish cancels %d job(s)", stage.name, len(pending))
            for fut in pending:
                job = in_flight[fut]
                tokens[job.number].cancel()
                results[job.number] = JobResult(
                    job=job,
                    status=JobStatus.CANCELLED,
                    tolerated=stage.tolerates(job),
                    error="cancelled by fast_finish",
                )
                console.print_job_finished(results[job.number])
        except BaseException:
            abandoned = True
            stage_token.cancel()
            raise
        finally:
            # cancelled jobs wind down on their own
            pool.shutdown(wait=not abandoned, cancel_futures=True)

        ordered = tuple(results[j.number] for j in stage.jobs)
        cancelled = cancel is not None and cancel.cancelled
        return StageResult(stage=stage, status=decide_stage(stage, ordered, cancelled=cancelled), results=ordered)
