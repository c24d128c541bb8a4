"""Stage graph builder.

Turns a PipelineDefinition and the run's parameters into an executable
graph: the ordered groups with every `when` predicate already evaluated.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from gantry.errors import InvalidDefinition, MissingDependency
from gantry.pipeline.conditions import ConditionEvaluator
from gantry.pipeline.schema import PipelineDefinition, PipelineParameters, Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltStage:
    """A stage with its `when` predicate resolved."""
    stage: Stage
    enabled: bool
    skip_reason: Optional[str] = None

    @property
    def name(self) -> str:
        return self.stage.name


@dataclass(frozen=True)
class BuiltGroup:
    index: int
    parallel: bool
    stages: List[BuiltStage]
    name: Optional[str] = None


@dataclass(frozen=True)
class BuiltPipeline:
    """Executable graph handed to the executor."""
    definition: PipelineDefinition
    parameters: PipelineParameters
    groups: List[BuiltGroup] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.definition.name

    def iter_stages(self):
        for group in self.groups:
            yield from group.stages


class StageGraphBuilder:
    """Build the executable graph for one run."""

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def build(self, definition: PipelineDefinition, parameters: PipelineParameters) -> BuiltPipeline:
        """
        Build the executable graph.

        Args:
            definition: Validated pipeline definition
            parameters: Parameters supplied at invocation

        Returns:
            BuiltPipeline with parameter defaults applied and predicates evaluated

        Raises:
            InvalidDefinition: A stage references an undefined parameter, or a
                required parameter was not supplied
            MissingDependency: A stage depends on a stage not declared before it
        """
        resolved = self._resolve_parameters(definition, parameters)
        declared = {p.name for p in definition.parameters}

        groups: List[BuiltGroup] = []
        seen: Set[str] = set()
        enabled: Dict[str, bool] = {}

        for index, group in enumerate(definition.groups):
            built_stages = []
            # Parallel siblings cannot depend on each other, sequential ones can
            group_seen = set(seen)

            for stage in group.stages:
                self._check_references(stage, declared)
                self._check_dependencies(stage, group_seen)

                built = self._build_stage(stage, resolved, enabled)
                enabled[stage.name] = built.enabled
                built_stages.append(built)

                if not group.parallel:
                    group_seen.add(stage.name)

            seen.update(stage.name for stage in group.stages)
            groups.append(BuiltGroup(index=index, parallel=group.parallel, stages=built_stages, name=group.name))

        return BuiltPipeline(definition=definition, parameters=resolved, groups=groups)

    def _resolve_parameters(self, definition: PipelineDefinition, parameters: PipelineParameters) -> PipelineParameters:
        values: Dict[str, str] = {}
        missing = []

        for spec in definition.parameters:
            if spec.name in parameters.values:
                values[spec.name] = parameters.values[spec.name]
            elif spec.default is not None:
                values[spec.name] = spec.default
            elif spec.required:
                missing.append(spec.name)

        if missing:
            raise InvalidDefinition(f"Missing required parameter(s): {', '.join(missing)}")

        declared = {spec.name for spec in definition.parameters}
        for name, value in parameters.values.items():
            if name not in declared:
                logger.warning(f"Parameter '{name}' is not declared by pipeline '{definition.name}'")
                values[name] = value

        return PipelineParameters(environment=parameters.environment, values=values)

    def _check_references(self, stage: Stage, declared: Set[str]) -> None:
        if stage.when is None:
            return
        for name in stage.when.referenced_params():
            if name != "environment" and name not in declared:
                raise InvalidDefinition(f"Stage '{stage.name}' references undefined parameter '{name}'")

    def _check_dependencies(self, stage: Stage, seen: Set[str]) -> None:
        for dependency in stage.depends_on:
            if dependency not in seen:
                raise MissingDependency(stage.name, dependency)

    def _build_stage(self, stage: Stage, parameters: PipelineParameters, enabled: Dict[str, bool]) -> BuiltStage:
        for dependency in stage.depends_on:
            if not enabled.get(dependency, False):
                return BuiltStage(stage=stage, enabled=False, skip_reason=f"dependency '{dependency}' is skipped")

        if stage.when is None:
            return BuiltStage(stage=stage, enabled=True)

        result = self.evaluator.evaluate(stage.when, parameters)
        logger.debug(f"Stage '{stage.name}' when: {result.debug_info}")
        if result.result:
            return BuiltStage(stage=stage, enabled=True)
        return BuiltStage(stage=stage, enabled=False, skip_reason=f"when: {result.debug_info}")
