# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Sequence

from .declaration import (
    DEFAULT_MATRIX_STAGE,
    CacheDeclaration,
    IncludeRule,
    PipelineDeclaration,
    StageDeclaration,
    cache_from_presets,
)
from .model import Axis, Hooks, as_pairs


def _commands(v: str | Iterable[str] | None) -> Optional[tuple]:
    if v is None:
        return None
    if isinstance(v, str):
        return (v,)
    return tuple(v)


# ---------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------

def axis(name: str, *values: Any, extensible: bool = False) -> Axis:
    """axis("rust", "stable", "beta", "nightly")"""
    return Axis(name, tuple(values), extensible=extensible)


def stage(name: str, *, allow_failure: bool = False, fast_finish: Optional[bool] = None) -> StageDeclaration:
    return StageDeclaration(name=name, allow_failure=allow_failure, fast_finish=fast_finish)


def cache(*presets: str, dirs: Sequence[str] = (), inputs: Sequence[str] = ()) -> CacheDeclaration:
    """cache("cargo", dirs=["$HOME/.ccache"])"""
    return cache_from_presets(*presets, directories=dirs, inputs=inputs)


def no_cache() -> CacheDeclaration:
    return CacheDeclaration(enabled=False)


def include(
    *,
    stage: Optional[str] = None,
    name: Optional[str] = None,
    before_script: str | Iterable[str] | None = None,
    script: str | Iterable[str] | None = None,
    after_success: str | Iterable[str] | None = None,
    after_failure: str | Iterable[str] | None = None,
    env: Optional[Dict[str, Any]] = None,
    cache: Optional[CacheDeclaration] = None,
    **values: Any,
) -> IncludeRule:
    """
    An explicit job. Keyword arguments that are not job fields are axis values:

        include(stage="static analysis", name="Clippy", rust="stable",
                script="cargo clippy -- -D clippy::all", after_success=[])
    """
    return IncludeRule(
        values=as_pairs(values),
        stage=stage,
        name=name,
        before_script=_commands(before_script),
        script=_commands(script),
        after_success=_commands(after_success),
        after_failure=_commands(after_failure),
        env=as_pairs(env),
        cache=cache,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PipelineBuilder:
    """
    Fluent pipeline declaration:

        build()
          .axis("os", "linux", "osx")
          .axis("rust", "stable", "beta", "nightly")
          .script("./ci/test.sh")
          .allow_failure(rust="nightly")
          .build()
    """

    def __init__(self, matrix_stage: str = DEFAULT_MATRIX_STAGE):
        self._matrix_stage = matrix_stage
        self._axes: list[Axis] = []
        self._hooks: Dict[str, tuple] = {}
        self._stages: list[StageDeclaration] = []
        self._env: dict[str, str] = {}
        self._cache: Optional[CacheDeclaration] = None
        self._include: list[IncludeRule] = []
        self._exclude: list = []
        self._allow_failures: list = []
        self._fast_finish = False
        self._after_pipeline: list[str] = []
        self._timeout: Optional[float] = None

    def axis(self, name: str, *values: Any, extensible: bool = False):
        self._axes.append(axis(name, *values, extensible=extensible))
        return self

    def stages(self, *stages: str | StageDeclaration):
        for s in stages:
            self._stages.append(stage(s) if isinstance(s, str) else s)
        return self

    def in_stage(self, name: str):
        """Stage the matrix jobs run in."""
        self._matrix_stage = name
        return self

    def before_script(self, *commands: str):
        self._hooks["before_script"] = self._hooks.get("before_script", ()) + commands
        return self

    def script(self, *commands: str):
        self._hooks["script"] = self._hooks.get("script", ()) + commands
        return self

    def after_success(self, *commands: str):
        self._hooks["after_success"] = self._hooks.get("after_success", ()) + commands
        return self

    def after_failure(self, *commands: str):
        self._hooks["after_failure"] = self._hooks.get("after_failure", ()) + commands
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_cache(self, *presets: str, dirs: Sequence[str] = (), inputs: Sequence[str] = ()):
        self._cache = cache(*presets, dirs=dirs, inputs=inputs)
        return self

    def include(self, rule: Optional[IncludeRule] = None, **kwargs):
        self._include.append(rule if rule is not None else include(**kwargs))
        return self

    def exclude(self, **values: Any):
        self._exclude.append(as_pairs(values))
        return self

    def allow_failure(self, **values: Any):
        """Tolerate failures of jobs matching these axis values (or name=/stage=)."""
        self._allow_failures.append(as_pairs(values))
        return self

    def fast_finish(self, enabled: bool = True):
        self._fast_finish = enabled
        return self

    def after_pipeline_success(self, *commands: str):
        self._after_pipeline.extend(commands)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> PipelineDeclaration:
        return PipelineDeclaration(
            axes=tuple(self._axes),
            hooks=Hooks(**self._hooks),
            stages=tuple(self._stages),
            matrix_stage=self._matrix_stage,
            env=as_pairs(self._env),
            cache=self._cache,
            include=tuple(self._include),
            exclude=tuple(self._exclude),
            allow_failures=tuple(self._allow_failures),
            fast_finish=self._fast_finish,
            after_pipeline_success=tuple(self._after_pipeline),
            timeout=self._timeout,
        )


def build(matrix_stage: str = DEFAULT_MATRIX_STAGE) -> PipelineBuilder:
    """Convenience: build().axis(...).script(...).build()"""
    return PipelineBuilder(matrix_stage)


def pl(builder: PipelineBuilder | PipelineDeclaration) -> PipelineDeclaration:
    """
    Workflow definition helper, so a workflow file can define its own
    `def pipeline(): return pl(build()...)` without shadowing anything.
    """
    if isinstance(builder, PipelineBuilder):
        return builder.build()
    return builder
