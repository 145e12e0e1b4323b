# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

# An axis-value assignment, e.g. (("os", "linux"), ("rust", "stable")).
# Kept as a tuple of pairs so descriptors stay hashable and immutable.
AxisValues = Tuple[Tuple[str, str], ...]

PHASES = ("before_script", "script", "after_success", "after_failure")

# Rule keys that select on job metadata rather than on an axis.
RULE_META_KEYS = ("name", "stage")


def as_pairs(values: Mapping[str, Any] | Iterable[Tuple[str, Any]] | None) -> Tuple[Tuple[str, str], ...]:
    """Normalize a mapping (or pair iterable) into an ordered tuple of str pairs."""
    if not values:
        return ()
    items = values.items() if isinstance(values, Mapping) else values
    return tuple((str(k), str(v)) for k, v in items)


def matches_rule(
    rule: AxisValues,
    axis_values: AxisValues,
    *,
    name: Optional[str] = None,
    stage: Optional[str] = None,
) -> bool:
    """
    Partial match: every key in the rule must equal the job's value.

    `name` and `stage` keys match the job's display name / stage, everything
    else is an axis.
    """
    values = dict(axis_values)
    meta = {"name": name, "stage": stage}
    for key, expected in rule:
        actual = meta[key] if key in meta else values.get(key)
        if actual != expected:
            return False
    return True


@dataclass(frozen=True)
class Axis:
    """A build-matrix dimension (operating system, toolchain channel, ...)."""
    name: str
    values: Tuple[str, ...]
    # include rules may widen an extensible axis with undeclared ("exploratory") values
    extensible: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(str(v) for v in self.values))


@dataclass(frozen=True)
class Hooks:
    """Ordered command lists per hook phase. An empty tuple means the phase is a no-op."""
    before_script: Tuple[str, ...] = ()
    script: Tuple[str, ...] = ()
    after_success: Tuple[str, ...] = ()
    after_failure: Tuple[str, ...] = ()

    def override(self, **phases: Optional[Iterable[str]]) -> Hooks:
        """Replace only the phases given as non-None."""
        changes = {k: tuple(v) for k, v in phases.items() if v is not None}
        return replace(self, **changes) if changes else self


@dataclass(frozen=True)
class CacheSpec:
    key: str
    directories: Tuple[str, ...]


@dataclass(frozen=True)
class JobDescriptor:
    """
    One unit of execution. Created by the matrix planner, never mutated.

    `number` is the job identity: "<stage position>.<job index>".
    """
    number: str
    stage: str
    axis_values: AxisValues = ()
    hooks: Hooks = field(default_factory=Hooks)
    env: Tuple[Tuple[str, str], ...] = ()
    allow_failure: bool = False
    cache: Optional[CacheSpec] = None
    name: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def values(self) -> Dict[str, str]:
        return dict(self.axis_values)

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.env)

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.axis_values:
            return " ".join(f"{k}={v}" for k, v in self.axis_values)
        return self.stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.label,
            "stage": self.stage,
            "axes": self.values,
            "allow_failure": self.allow_failure,
        }


@dataclass(frozen=True)
class StageDefinition:
    position: int
    name: str
    jobs: Tuple[JobDescriptor, ...]
    # partial axis-value rules whose jobs may fail without failing the stage
    allow_failures: Tuple[AxisValues, ...] = ()
    fast_finish: bool = False
    # whole stage tolerated at pipeline level
    allow_failure: bool = False

    def tolerates(self, job: JobDescriptor) -> bool:
        return any(
            matches_rule(rule, job.axis_values, name=job.name, stage=self.name)
            for rule in self.allow_failures
        )


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"        # non-zero exit
    ERRORED = "errored"      # command could not be spawned
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


FAILING_STATUSES = (JobStatus.FAILED, JobStatus.ERRORED, JobStatus.TIMEOUT)


@dataclass(frozen=True)
class JobResult:
    job: JobDescriptor
    status: JobStatus
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0
    # the job matched its stage's allow_failures set
    tolerated: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status in FAILING_STATUSES

    @property
    def allowed_failure(self) -> bool:
        return self.failed and self.tolerated

    def to_dict(self) -> Dict[str, Any]:
        d = self.job.to_dict()
        d.update(
            {
                "status": self.status.value,
                "exit_code": self.exit_code,
                "duration": round(self.duration, 3),
                "tolerated": self.tolerated,
                "allowed_failure": self.allowed_failure,
            }
        )
        if self.error:
            d["error"] = self.error
        return d


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StageResult:
    stage: StageDefinition
    status: StageStatus
    results: Tuple[JobResult, ...]
    # failed, but the pipeline allows this stage to fail
    tolerated: bool = False

    @classmethod
    def cancelled(cls, stage: StageDefinition) -> StageResult:
        """A stage that never started: every job is reported cancelled."""
        results = tuple(
            JobResult(job=j, status=JobStatus.CANCELLED, tolerated=stage.tolerates(j))
            for j in stage.jobs
        )
        return cls(stage=stage, status=StageStatus.CANCELLED, results=results)

    @property
    def executed(self) -> List[JobResult]:
        return [r for r in self.results if r.status is not JobStatus.CANCELLED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.stage.position,
            "status": self.status.value,
            "allowed_failure": self.tolerated,
            "jobs": [r.to_dict() for r in self.results],
        }


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@dataclass(frozen=True)
class PipelineVerdict:
    status: PipelineStatus
    stages: Tuple[StageResult, ...]
    # pipeline-level after_success hook, run once on SUCCESS
    after_success: Optional[JobResult] = None

    @property
    def results(self) -> List[JobResult]:
        return [r for s in self.stages for r in s.results]

    @property
    def tolerated_stages(self) -> List[str]:
        return [s.stage.name for s in self.stages if s.tolerated]

    @property
    def exit_code(self) -> int:
        if self.status is PipelineStatus.SUCCESS:
            return EXIT_SUCCESS
        if self.status is PipelineStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stages": {s.stage.name: s.to_dict() for s in self.stages},
        }
        if self.after_success is not None:
            d["after_success"] = self.after_success.to_dict()
        return d
