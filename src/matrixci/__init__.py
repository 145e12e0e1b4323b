from .dsl import axis, build, cache, include, no_cache, pl, stage, PipelineBuilder
from .declaration import PipelineDeclaration, from_mapping
from .matrix import expand_matrix, plan_pipeline
from .runner import PipelineCoordinator, load_workflow, run_pipeline
from .model import JobDescriptor, JobResult, JobStatus, PipelineStatus, PipelineVerdict

__all__ = [
    "axis",
    "build",
    "cache",
    "include",
    "no_cache",
    "pl",
    "stage",
    "PipelineBuilder",
    "PipelineDeclaration",
    "from_mapping",
    "expand_matrix",
    "plan_pipeline",
    "PipelineCoordinator",
    "load_workflow",
    "run_pipeline",
    "JobDescriptor",
    "JobResult",
    "JobStatus",
    "PipelineStatus",
    "PipelineVerdict",
]
