# declaration.py
#
# In-memory pipeline declaration.
#
# Two ways in:
#   - build the dataclasses directly (see dsl.py helpers)
#   - hand a pre-parsed mapping (what a YAML/JSON loader produces) to
#     from_mapping(), which validates it with pydantic
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import AxisValues, Axis, Hooks, PHASES, as_pairs

DEFAULT_MATRIX_STAGE = "test"


@dataclass(frozen=True)
class CacheDeclaration:
    directories: Tuple[str, ...] = ()
    # dependency-lock inputs fingerprinted into the cache key (files, dirs, globs)
    inputs: Tuple[str, ...] = ()
    enabled: bool = True


@dataclass(frozen=True)
class StageDeclaration:
    name: str
    allow_failure: bool = False
    fast_finish: Optional[bool] = None   # None -> pipeline-wide setting


@dataclass(frozen=True)
class IncludeRule:
    """
    An explicit extra job. Without a stage (or with the matrix stage) it adds a
    matrix combination; with another stage it is that stage's single job.

    Hook fields left as None inherit the pipeline hooks; an empty tuple clears them.
    """
    values: AxisValues = ()
    stage: Optional[str] = None
    name: Optional[str] = None
    before_script: Optional[Tuple[str, ...]] = None
    script: Optional[Tuple[str, ...]] = None
    after_success: Optional[Tuple[str, ...]] = None
    after_failure: Optional[Tuple[str, ...]] = None
    env: Tuple[Tuple[str, str], ...] = ()
    cache: Optional[CacheDeclaration] = None

    def hook_overrides(self) -> Dict[str, Optional[Tuple[str, ...]]]:
        return {p: getattr(self, p) for p in PHASES}


@dataclass(frozen=True)
class PipelineDeclaration:
    axes: Tuple[Axis, ...] = ()
    hooks: Hooks = field(default_factory=Hooks)
    stages: Tuple[StageDeclaration, ...] = ()
    matrix_stage: str = DEFAULT_MATRIX_STAGE
    env: Tuple[Tuple[str, str], ...] = ()
    cache: Optional[CacheDeclaration] = None
    include: Tuple[IncludeRule, ...] = ()
    exclude: Tuple[AxisValues, ...] = ()
    allow_failures: Tuple[AxisValues, ...] = ()
    fast_finish: bool = False
    # pipeline-level hook, run once when the verdict is SUCCESS
    after_pipeline_success: Tuple[str, ...] = ()
    timeout: Optional[float] = None


# Toolchain cache presets: directories to persist, lock files to fingerprint.
CACHE_PRESETS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "cargo": (("$HOME/.cargo/registry", "$HOME/.cargo/git", "target"), ("Cargo.lock",)),
    "pip": (("$HOME/.cache/pip",), ("requirements*.txt", "poetry.lock")),
    "npm": (("$HOME/.npm",), ("package-lock.json",)),
    "ccache": (("$HOME/.ccache",), ()),
}


def cache_from_presets(
    *presets: str,
    directories: Sequence[str] = (),
    inputs: Sequence[str] = (),
    enabled: bool = True,
) -> CacheDeclaration:
    """Merge preset directories/inputs with explicit ones (first-seen order, no dupes)."""
    dirs: List[str] = []
    ins: List[str] = []
    for name in presets:
        try:
            preset_dirs, preset_inputs = CACHE_PRESETS[name]
        except KeyError:
            raise ConfigurationError(
                f"unknown cache preset {name!r}",
                {"known": sorted(CACHE_PRESETS)},
            ) from None
        dirs.extend(preset_dirs)
        ins.extend(preset_inputs)
    dirs.extend(directories)
    ins.extend(inputs)
    return CacheDeclaration(
        directories=tuple(dict.fromkeys(dirs)),
        inputs=tuple(dict.fromkeys(ins)),
        enabled=enabled,
    )


# ---------------------------------------------------------------------
# Mapping schema (pydantic)
# ---------------------------------------------------------------------

Commands = Optional[List[str]]


def _to_list(v: Any) -> Any:
    # `script: ./ci/test.sh` is as valid as `script: [./ci/test.sh]`
    if isinstance(v, str):
        return [v]
    return v


class _CacheSchema(BaseModel):
    # toolchain presets are flags: `cargo: true`
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    directories: List[str] = Field(default_factory=list)
    inputs: List[str] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("directories", "inputs", mode="before")
    @classmethod
    def _promote(cls, v: Any) -> Any:
        return _to_list(v)

    def build(self) -> CacheDeclaration:
        presets = []
        for name, flag in (self.model_extra or {}).items():
            if name not in CACHE_PRESETS:
                raise ConfigurationError(
                    f"unknown cache preset {name!r}",
                    {"known": sorted(CACHE_PRESETS)},
                )
            if flag in (True, "true", "True"):
                presets.append(name)
        return cache_from_presets(
            *presets,
            directories=self.directories,
            inputs=self.inputs,
            enabled=self.enabled,
        )


CacheField = Union[bool, _CacheSchema, None]


def _build_cache(value: CacheField) -> Optional[CacheDeclaration]:
    # `cache: false` turns caching off, `cache: true` (or nothing) inherits
    if value is None or value is True:
        return None
    if value is False:
        return CacheDeclaration(enabled=False)
    return value.build()


class _StageSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)

    name: str
    allow_failure: bool = False
    fast_finish: Optional[bool] = None


class _IncludeSchema(BaseModel):
    # anything that is not a job field is an axis value (`rust: stable`)
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    stage: Optional[str] = None
    name: Optional[str] = None
    before_script: Commands = None
    script: Commands = None
    after_success: Commands = None
    after_failure: Commands = None
    env: Dict[str, str] = Field(default_factory=dict)
    cache: CacheField = None

    @field_validator(*PHASES, mode="before")
    @classmethod
    def _promote(cls, v: Any) -> Any:
        return _to_list(v)

    def build(self) -> IncludeRule:
        hooks: Dict[str, Optional[Tuple[str, ...]]] = {}
        for phase in PHASES:
            if phase in self.model_fields_set:
                # explicitly present but empty (`after_success:`) clears the phase
                hooks[phase] = tuple(getattr(self, phase) or ())
        cache = _build_cache(self.cache)
        return IncludeRule(
            values=as_pairs(self.model_extra or {}),
            stage=self.stage,
            name=self.name,
            env=as_pairs(self.env),
            cache=cache,
            **hooks,
        )


class _JobsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)

    include: List[_IncludeSchema] = Field(default_factory=list)
    exclude: List[Dict[str, str]] = Field(default_factory=list)
    allow_failures: List[Dict[str, str]] = Field(default_factory=list)
    fast_finish: bool = False


class _PipelineSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)

    matrix: Dict[str, List[str]] = Field(default_factory=dict)
    # axes whose include rules may introduce undeclared values
    extensible: List[str] = Field(default_factory=list)
    stage: str = DEFAULT_MATRIX_STAGE
    stages: List[Union[str, _StageSchema]] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cache: CacheField = None
    before_script: Commands = None
    script: Commands = None
    after_success: Commands = None
    after_failure: Commands = None
    after_pipeline_success: Commands = None
    jobs: _JobsSchema = Field(default_factory=_JobsSchema)
    timeout: Optional[float] = None

    @field_validator(*PHASES, "after_pipeline_success", mode="before")
    @classmethod
    def _promote(cls, v: Any) -> Any:
        return _to_list(v)

    @field_validator("matrix", mode="before")
    @classmethod
    def _promote_axes(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {k: vals if isinstance(vals, (list, tuple)) else [vals] for k, vals in v.items()}
        return v

    def build(self) -> PipelineDeclaration:
        unknown = sorted(set(self.extensible) - set(self.matrix))
        if unknown:
            raise ConfigurationError(
                "extensible names undeclared axes",
                {"axes": unknown},
            )
        stages = tuple(
            StageDeclaration(name=s) if isinstance(s, str) else StageDeclaration(**s.model_dump())
            for s in self.stages
        )
        return PipelineDeclaration(
            axes=tuple(
                Axis(name, tuple(values), extensible=name in self.extensible)
                for name, values in self.matrix.items()
            ),
            hooks=Hooks(**{p: tuple(getattr(self, p) or ()) for p in PHASES}),
            stages=stages,
            matrix_stage=self.stage,
            env=as_pairs(self.env),
            cache=_build_cache(self.cache),
            include=tuple(i.build() for i in self.jobs.include),
            exclude=tuple(as_pairs(r) for r in self.jobs.exclude),
            allow_failures=tuple(as_pairs(r) for r in self.jobs.allow_failures),
            fast_finish=self.jobs.fast_finish,
            after_pipeline_success=tuple(self.after_pipeline_success or ()),
            timeout=self.timeout,
        )


def from_mapping(data: Mapping[str, Any]) -> PipelineDeclaration:
    """
    Validate a pre-parsed pipeline mapping and build the declaration.

    Raises:
        ConfigurationError: on any schema violation
    """
    try:
        schema = _PipelineSchema.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(
            "invalid pipeline declaration",
            {"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e
    return schema.build()
