"""
Step dependency graph and wave grouping.

Dependencies are not declared: they are derived from the {{variable}}
references each step makes to the outputs of other steps. Steps are then
grouped Kahn-style into waves, where every member of a wave depends only on
steps of earlier waves.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from automation_engine.core.errors import ConfigurationError
from automation_engine.core.models import (
    ActionStep,
    ConditionStep,
    ForEachStep,
    WhileStep,
    child_steps,
    iter_steps,
)
from automation_engine.template.resolver import extract_references, root_identifier

logger = logging.getLogger(__name__)


@dataclass
class StepDependencies:
    """Dependency record of one step."""

    step_id: str
    depends_on: set[str] = field(default_factory=set)
    variable_refs: set[str] = field(default_factory=set)  # root identifiers, for diagnostics


DependencyGraph = dict[str, StepDependencies]


@dataclass
class ValidationError:
    """Represents a single validation error."""

    code: str
    message: str
    step_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Result of workflow structure validation."""

    is_valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationError(code, message, step_id, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationError(code, message, step_id, details))


# ==================== Reference extraction ====================


def templated_fields(step: Any) -> list[Any]:
    """Values of a step (and its nested body) that may contain tokens."""
    if isinstance(step, ActionStep):
        values: list[Any] = [step.inputs]
    elif isinstance(step, (ConditionStep, WhileStep)):
        values = [step.condition]
    elif isinstance(step, ForEachStep):
        values = [step.array]
    else:
        values = []
    for child in child_steps(step):
        values.extend(templated_fields(child))
    return values


def step_variable_refs(step: Any) -> set[str]:
    """Root identifiers referenced anywhere inside a step."""
    return {
        root_identifier(path)
        for path in extract_references(templated_fields(step))
        if root_identifier(path)
    }


def produced_outputs(step: Any) -> set[str]:
    """outputAs keys a step writes; containers produce those of their nested steps."""
    return {
        s.output_as
        for s in iter_steps([step])
        if isinstance(s, ActionStep) and s.output_as
    }


# ==================== Graph ====================


def build_dependency_graph(steps: list[Any], variables: dict[str, Any]) -> DependencyGraph:
    """
    Build the dependency graph for one scheduling scope.

    Args:
        steps: Steps being scheduled together
        variables: Context variables at build time; keys not produced by
            these steps are treated as built-ins

    Returns:
        Mapping of step id to its dependencies
    """
    step_ids = {step.id for step in steps}

    producers: dict[str, set[str]] = defaultdict(set)
    for step in steps:
        for key in produced_outputs(step):
            producers[key].add(step.id)

    built_ins = set(variables.keys()) - set(producers.keys())

    graph: DependencyGraph = {}
    for step in steps:
        refs = step_variable_refs(step)
        depends_on: set[str] = set()

        for ref in refs:
            if ref in producers:
                depends_on.update(producers[ref] - {step.id})
            elif ref in built_ins:
                continue
            elif ref in step_ids and ref != step.id:
                # Direct step-id reference
                depends_on.add(ref)

        graph[step.id] = StepDependencies(
            step_id=step.id,
            depends_on=depends_on,
            variable_refs=refs,
        )

    return graph


def group_into_waves(steps: list[Any], graph: DependencyGraph) -> list[list[Any]]:
    """
    Group steps into waves that can run concurrently.

    Waves keep the definition order of their members.

    Raises:
        ConfigurationError: On a circular dependency, or when two steps of one
            wave write the same outputAs key
    """
    waves: list[list[Any]] = []
    scheduled: set[str] = set()
    remaining = list(steps)

    while remaining:
        wave = [
            step for step in remaining
            if graph[step.id].depends_on <= scheduled
        ]

        if not wave:
            remaining_ids = [step.id for step in remaining]
            logger.error(
                "Circular dependency detected in workflow steps: "
                + ", ".join(
                    f"{sid} -> {sorted(graph[sid].depends_on)}" for sid in remaining_ids
                )
            )
            raise ConfigurationError(
                "Circular dependency detected in workflow steps: "
                f"{', '.join(remaining_ids)}"
            )

        waves.append(wave)
        scheduled.update(step.id for step in wave)
        wave_ids = {step.id for step in wave}
        remaining = [step for step in remaining if step.id not in wave_ids]

    for number, wave in enumerate(waves, start=1):
        _check_output_conflicts(number, wave)

    return waves


def _check_output_conflicts(number: int, wave: Iterable[Any]) -> None:
    writers: dict[str, str] = {}
    for step in wave:
        for key in produced_outputs(step):
            if key in writers:
                raise ConfigurationError(
                    f'Steps "{writers[key]}" and "{step.id}" both write outputAs '
                    f'"{key}" in wave {number}'
                )
            writers[key] = step.id


def plan_waves(steps: list[Any], variables: dict[str, Any]) -> list[list[Any]]:
    """Build the graph and group it into waves in one call."""
    return group_into_waves(steps, build_dependency_graph(steps, variables))


def iter_scopes(steps: list[Any]):
    """Every step list scheduled on its own: the top level, then each branch and loop body."""
    yield steps
    for step in steps:
        if isinstance(step, ConditionStep):
            yield from iter_scopes(step.then_steps)
            yield from iter_scopes(step.else_steps)
        elif isinstance(step, (ForEachStep, WhileStep)):
            yield from iter_scopes(step.steps)


def plan_all_scopes(steps: list[Any], variables: dict[str, Any]) -> list[list[Any]]:
    """
    Plan the top level and every nested body up front.

    Returns:
        Waves of the top level

    Raises:
        ConfigurationError: A cycle or output conflict in any scope
    """
    scopes = iter_scopes(steps)
    top_level = plan_waves(next(scopes), variables)

    # By the time a body runs, outer outputs and loop variables are in the context
    nested_variables = dict(variables)
    for step in iter_steps(steps):
        for key in produced_outputs(step):
            nested_variables.setdefault(key, None)
        if isinstance(step, ForEachStep):
            nested_variables.setdefault(step.item_as, None)
            if step.index_as:
                nested_variables.setdefault(step.index_as, None)

    for scope in scopes:
        if scope:
            plan_waves(scope, nested_variables)
    return top_level


# ==================== Analysis ====================


def analyze_parallelization_potential(
    steps: list[Any],
    variables: dict[str, Any],
) -> dict[str, Any]:
    """
    Summarize how much parallelism a step list offers.

    Returns:
        totalSteps, waves, maxParallelism, averageParallelism, speedupPotential
    """
    waves = plan_waves(steps, variables)
    total = len(steps)
    wave_count = len(waves)
    max_parallelism = max((len(w) for w in waves), default=0)
    average = round(total / wave_count, 2) if wave_count else 0

    return {
        "totalSteps": total,
        "waves": wave_count,
        "maxParallelism": max_parallelism,
        "averageParallelism": average,
        "speedupPotential": f"{average}x ({total} steps in {wave_count} waves)",
    }


def validate_workflow_steps(
    steps: list[Any],
    built_ins: Iterable[str] = ("user", "credential", "trigger", "workflowId"),
) -> ValidationResult:
    """
    Static check of a step list before it is saved or run.

    Reports cycles and output conflicts as errors, and references that no
    step, built-in, or enclosing loop variable can satisfy as warnings.
    """
    result = ValidationResult(is_valid=True)
    variables = {name: None for name in built_ins}

    try:
        result.waves = [[s.id for s in wave] for wave in plan_all_scopes(steps, variables)]
    except ConfigurationError as e:
        code = "CYCLE_DETECTED" if "Circular" in str(e) else "OUTPUT_CONFLICT"
        result.add_error(code=code, message=str(e))
        return result

    known = set(variables) | {s.id for s in iter_steps(steps)}
    for s in iter_steps(steps):
        known.update(produced_outputs(s))
        if isinstance(s, ForEachStep):
            known.add(s.item_as)
            if s.index_as:
                known.add(s.index_as)

    for step in steps:
        unknown = step_variable_refs(step) - known
        if unknown:
            result.add_warning(
                code="UNRESOLVED_REFERENCE",
                message=f"Step '{step.id}' references unknown variables: {sorted(unknown)}",
                step_id=step.id,
                variables=sorted(unknown),
            )

    return result
