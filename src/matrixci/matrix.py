# matrix.py
#
# Matrix expansion + stage planning.
#
#   declaration --> combinations (cross product - exclude + include)
#               --> JobDescriptors grouped into ordered StageDefinitions
from __future__ import annotations

import itertools
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .cache import cache_spec_for, fingerprint_inputs
from .declaration import CacheDeclaration, IncludeRule, PipelineDeclaration, StageDeclaration
from .errors import ConfigurationError
from .model import (
    RULE_META_KEYS,
    Axis,
    AxisValues,
    CacheSpec,
    Hooks,
    JobDescriptor,
    StageDefinition,
    as_pairs,
    matches_rule,
)


@dataclass(frozen=True)
class PipelinePlan:
    stages: Tuple[StageDefinition, ...]
    # pipeline-level after_success hook as a synthetic job (None if not declared)
    after_success: Optional[JobDescriptor] = None

    @property
    def jobs(self) -> List[JobDescriptor]:
        return [j for s in self.stages for j in s.jobs]


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _check_axes(axes: Sequence[Axis]) -> Dict[str, Axis]:
    by_name: Dict[str, Axis] = {}
    for axis in axes:
        if axis.name in by_name:
            raise ConfigurationError(f"duplicate axis {axis.name!r}")
        if not axis.values:
            raise ConfigurationError(f"axis {axis.name!r} has no values")
        by_name[axis.name] = axis
    return by_name


def _check_rule(
    rule: AxisValues,
    axes: Dict[str, Axis],
    *,
    kind: str,
    widening: bool,
    meta_keys: Sequence[str] = (),
) -> None:
    for key, value in rule:
        if key in meta_keys:
            continue
        axis = axes.get(key)
        if axis is None:
            raise ConfigurationError(
                f"{kind} rule references undeclared axis {key!r}",
                {"rule": dict(rule), "axes": list(axes)},
            )
        if value not in axis.values and not (widening and axis.extensible):
            raise ConfigurationError(
                f"{kind} rule uses value {value!r} not declared on axis {key!r}",
                {"rule": dict(rule), "declared": list(axis.values)},
            )


def _complete(rule: AxisValues, axes: Sequence[Axis]) -> AxisValues:
    """Full assignment in axis order; axes the rule leaves out take their first value."""
    given = dict(rule)
    return tuple((a.name, given.get(a.name, a.values[0])) for a in axes)


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def _iter_matrix(
    axes: Sequence[Axis],
    include: Sequence[AxisValues],
    exclude: Sequence[AxisValues],
) -> Iterator[Tuple[AxisValues, Optional[int]]]:
    """
    Yields (combination, include index). Include index is None for
    cross-product combinations.
    """
    by_name = _check_axes(axes)
    for rule in exclude:
        _check_rule(rule, by_name, kind="exclude", widening=False)
    for rule in include:
        _check_rule(rule, by_name, kind="include", widening=True)

    seen = set()
    names = [a.name for a in axes]
    # outer axis varies slowest
    for values in itertools.product(*(a.values for a in axes)):
        combo = tuple(zip(names, values))
        if any(matches_rule(rule, combo) for rule in exclude):
            continue
        seen.add(combo)
        yield combo, None

    for idx, rule in enumerate(include):
        combo = _complete(rule, axes)
        if combo in seen:
            continue
        seen.add(combo)
        yield combo, idx


def expand_matrix(
    axes: Sequence[Axis],
    include: Sequence[AxisValues] = (),
    exclude: Sequence[AxisValues] = (),
) -> List[AxisValues]:
    """
    Deterministic ordered list of axis-value combinations.

    Raises:
        ConfigurationError: empty/duplicate axis, or a rule referencing
            undeclared axes/values (include rules may widen extensible axes)
    """
    return [combo for combo, _ in _iter_matrix(axes, include, exclude)]


# ---------------------------------------------------------------------
# Stage planning
# ---------------------------------------------------------------------

class _Entry:
    __slots__ = ("values", "rule")

    def __init__(self, values: AxisValues, rule: Optional[IncludeRule]):
        self.values = values
        self.rule = rule


def _stage_order(declaration: PipelineDeclaration, used: Sequence[str]) -> List[str]:
    order: List[str] = []
    for s in declaration.stages:
        if s.name in order:
            raise ConfigurationError(f"stage {s.name!r} declared twice")
        order.append(s.name)
    # stages only referenced by jobs run after the declared ones
    for name in used:
        if name not in order:
            order.append(name)
    return order


def _stage_rules(declaration: PipelineDeclaration, stage: str) -> Tuple[AxisValues, ...]:
    rules = []
    for rule in declaration.allow_failures:
        d = dict(rule)
        if "stage" in d and d.pop("stage") != stage:
            continue
        rules.append(as_pairs(d))
    return tuple(rules)


def plan_pipeline(
    declaration: PipelineDeclaration,
    *,
    repo_root: str | Path = ".",
) -> PipelinePlan:
    """
    Expand the declaration into ordered stages of concrete jobs.

    The matrix runs in `declaration.matrix_stage`; include rules for other
    stages become one job each there. Stages without jobs are dropped.
    """
    root = Path(repo_root)
    axes = list(declaration.axes)
    by_name = _check_axes(axes)

    for rule in declaration.allow_failures:
        _check_rule(rule, by_name, kind="allow_failures", widening=True, meta_keys=RULE_META_KEYS)

    matrix_includes = [r for r in declaration.include if r.stage in (None, declaration.matrix_stage)]
    entries: Dict[str, List[_Entry]] = {declaration.matrix_stage: []}
    for combo, idx in _iter_matrix(
        axes,
        [r.values for r in matrix_includes],
        declaration.exclude,
    ):
        rule = matrix_includes[idx] if idx is not None else None
        entries[declaration.matrix_stage].append(_Entry(combo, rule))

    for rule in declaration.include:
        if rule.stage in (None, declaration.matrix_stage):
            continue
        _check_rule(rule.values, by_name, kind="include", widening=True)
        entries.setdefault(rule.stage, []).append(_Entry(_complete(rule.values, axes), rule))

    stage_decls: Dict[str, StageDeclaration] = {s.name: s for s in declaration.stages}
    order = [n for n in _stage_order(declaration, list(entries)) if entries.get(n)]

    fingerprints: Dict[Tuple[str, ...], str] = {}
    stages: List[StageDefinition] = []
    for position, name in enumerate(order, start=1):
        sdecl = stage_decls.get(name, StageDeclaration(name))
        rules = _stage_rules(declaration, name)
        jobs = []
        for index, entry in enumerate(entries[name], start=1):
            jobs.append(
                _descriptor(
                    declaration,
                    entry,
                    number=f"{position}.{index}",
                    stage=name,
                    allow_failures=rules,
                    root=root,
                    fingerprints=fingerprints,
                )
            )
        fast_finish = declaration.fast_finish if sdecl.fast_finish is None else sdecl.fast_finish
        stages.append(
            StageDefinition(
                position=position,
                name=name,
                jobs=tuple(jobs),
                allow_failures=rules,
                fast_finish=fast_finish,
                allow_failure=sdecl.allow_failure,
            )
        )

    after = None
    if declaration.after_pipeline_success:
        after = JobDescriptor(
            number="after_success",
            stage="after_success",
            hooks=Hooks(script=tuple(declaration.after_pipeline_success)),
            env=declaration.env,
            name="after_success",
            timeout=declaration.timeout,
        )

    return PipelinePlan(stages=tuple(stages), after_success=after)


def _descriptor(
    declaration: PipelineDeclaration,
    entry: _Entry,
    *,
    number: str,
    stage: str,
    allow_failures: Tuple[AxisValues, ...],
    root: Path,
    fingerprints: Dict[Tuple[str, ...], str],
) -> JobDescriptor:
    rule = entry.rule
    hooks = declaration.hooks
    env = dict(declaration.env)
    name = None
    cache_decl: Optional[CacheDeclaration] = declaration.cache
    if rule is not None:
        hooks = hooks.override(**rule.hook_overrides())
        env.update(dict(rule.env))
        name = rule.name
        if rule.cache is not None:
            cache_decl = rule.cache

    spec: Optional[CacheSpec] = None
    if cache_decl is not None and cache_decl.enabled and cache_decl.directories:
        fp = fingerprints.get(cache_decl.inputs)
        if fp is None:
            fp = fingerprints[cache_decl.inputs] = fingerprint_inputs(root, cache_decl.inputs)
        spec = cache_spec_for(entry.values, cache_decl.directories, fp)

    allow = any(matches_rule(r, entry.values, name=name, stage=stage) for r in allow_failures)
    return JobDescriptor(
        number=number,
        stage=stage,
        axis_values=entry.values,
        hooks=hooks,
        env=as_pairs(env),
        allow_failure=allow,
        cache=spec,
        name=name,
        timeout=declaration.timeout,
    )
