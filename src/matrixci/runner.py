# runner.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from .cache import BlobStore, CacheManager
from .declaration import PipelineDeclaration, from_mapping
from .errors import ConfigurationError
from .executor import Executor
from .matrix import PipelinePlan, plan_pipeline
from .model import JobDescriptor, JobResult, PipelineStatus, PipelineVerdict, StageDefinition, StageResult, StageStatus
from .process import CancelToken, Spawner
from .scheduler import StageScheduler
from .settings import Settings, build_blob_store
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> PipelineDeclaration:
    """
    Load a pipeline declaration from a python file path.

    The file must define either:
      - pipeline() -> PipelineDeclaration | Mapping
      - PIPELINE = PipelineDeclaration | Mapping

    A mapping is validated the same way a parsed YAML/JSON document would be.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    declared: Any = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        declared = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        declared = globals_dict["PIPELINE"]

    if isinstance(declared, PipelineDeclaration):
        return declared
    if isinstance(declared, Mapping):
        return from_mapping(declared)
    raise ConfigurationError(
        "Workflow must return/define a pipeline declaration. "
        "Define pipeline() -> PipelineDeclaration or PIPELINE = {...}.",
        {"workflow": str(wf_path), "got": type(declared).__name__},
    )


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

class PipelineCoordinator:
    """
    Runs stages strictly in order; stage N resolves before stage N+1 starts.

    A failing stage stops the pipeline unless the stage is allowed to fail.
    Stages that never started are reported CANCELLED.
    """

    def __init__(
        self,
        scheduler: StageScheduler,
        executor: Optional[Executor] = None,
        console: Optional[Console] = None,
    ):
        self.scheduler = scheduler
        self.executor = executor or scheduler.executor
        self.console = console

    def run(
        self,
        stages: Sequence[StageDefinition],
        *,
        after_success: Optional[JobDescriptor] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineVerdict:
        console = self.console or get_console()
        cancel = cancel or CancelToken()
        outcomes: List[StageResult] = []
        status = PipelineStatus.SUCCESS

        for stage in stages:
            if status is not PipelineStatus.SUCCESS or cancel.cancelled:
                if cancel.cancelled:
                    status = PipelineStatus.CANCELLED
                outcomes.append(StageResult.cancelled(stage))
                continue

            console.print_stage_start(stage)
            result = self.scheduler.run_stage(stage, cancel)
            if result.status is StageStatus.FAILURE and stage.allow_failure:
                result = StageResult(stage=stage, status=result.status, results=result.results, tolerated=True)
                logger.info("stage %s failed but is allowed to fail", stage.name)
            console.print_stage_finished(result)
            outcomes.append(result)

            if result.status is StageStatus.CANCELLED:
                status = PipelineStatus.CANCELLED
            elif result.status is StageStatus.FAILURE and not result.tolerated:
                status = PipelineStatus.FAILURE

        if cancel.cancelled and status is PipelineStatus.SUCCESS:
            status = PipelineStatus.CANCELLED

        hook: Optional[JobResult] = None
        if status is PipelineStatus.SUCCESS and after_success is not None:
            # recorded, never changes the verdict
            hook = self.executor.run(after_success, cancel)
            console.print_job_finished(hook)

        return PipelineVerdict(status=status, stages=tuple(outcomes), after_success=hook)


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def run_pipeline(
    declaration: PipelineDeclaration | Mapping[str, Any],
    *,
    repo_root: str | Path = ".",
    settings: Optional[Settings] = None,
    store: Optional[BlobStore] = None,
    spawner: Optional[Spawner] = None,
    base_env: Optional[Mapping[str, str]] = None,
    cancel: Optional[CancelToken] = None,
    console: Optional[Console] = None,
    plan: Optional[PipelinePlan] = None,
) -> PipelineVerdict:
    """
    Plan and execute a whole pipeline.

    Configuration errors raise before any job runs. Job failures never
    raise; they end up in the returned verdict.
    """
    if isinstance(declaration, Mapping):
        declaration = from_mapping(declaration)
    settings = settings or Settings.from_env()
    root = Path(repo_root).resolve()

    if plan is None:
        plan = plan_pipeline(declaration, repo_root=root)
    cache = CacheManager(store if store is not None else build_blob_store(settings, repo_root=root))
    executor = Executor(
        spawner,
        cache,
        working_dir=root,
        base_env=base_env,
        default_timeout=settings.job_timeout,
    )
    scheduler = StageScheduler(executor, max_workers=settings.workers, console=console)
    coordinator = PipelineCoordinator(scheduler, executor, console)

    logger.debug("running %d stage(s), %d job(s)", len(plan.stages), len(plan.jobs))
    return coordinator.run(plan.stages, after_success=plan.after_success, cancel=cancel)
