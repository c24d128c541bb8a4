"""Evaluation of `when` conditions against run parameters.

Provides:
- ConditionEvaluator: Evaluate a WhenCondition tree to a boolean
- EvaluationResult: Outcome plus the parameter values that were read
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from gantry.pipeline.schema import ConditionOperator, Environment, PipelineParameters, WhenCondition

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    result: bool  # True if the stage should run
    resolved_values: Dict[str, Any]  # Parameter values read during evaluation
    debug_info: Optional[str] = None  # Human-readable explanation


class ConditionEvaluator:
    """Evaluate `when` conditions against typed pipeline parameters.

    Supports:
    - Equality: ==, !=
    - Membership: in, not_in
    - Boolean composition via all_of (AND) and any_of (OR)

    The environment parameter is compared as an Environment enum, so a
    condition can only match a real deployment target.
    """

    def evaluate(self, condition: WhenCondition, parameters: PipelineParameters) -> EvaluationResult:
        """
        Evaluate a condition.

        Args:
            condition: Condition to evaluate
            parameters: Run parameters

        Returns:
            EvaluationResult with result and resolved values
        """
        resolved_values: Dict[str, Any] = {}
        actual = parameters.get(condition.param)
        resolved_values[condition.param] = actual.value if isinstance(actual, Environment) else actual

        base_result = self._compare(condition, actual)

        if condition.all_of:
            if not base_result:
                return EvaluationResult(
                    result=False,
                    resolved_values=resolved_values,
                    debug_info=f"Base condition failed: {self._describe(condition)}",
                )
            for child in condition.all_of:
                child_result = self.evaluate(child, parameters)
                resolved_values.update(child_result.resolved_values)
                if not child_result.result:
                    return EvaluationResult(
                        result=False,
                        resolved_values=resolved_values,
                        debug_info=f"all_of condition failed: {self._describe(child)}",
                    )
            return EvaluationResult(result=True, resolved_values=resolved_values, debug_info="All conditions met")

        if condition.any_of:
            if base_result:
                return EvaluationResult(
                    result=True,
                    resolved_values=resolved_values,
                    debug_info=f"Base condition met: {self._describe(condition)}",
                )
            for child in condition.any_of:
                child_result = self.evaluate(child, parameters)
                resolved_values.update(child_result.resolved_values)
                if child_result.result:
                    return EvaluationResult(
                        result=True,
                        resolved_values=resolved_values,
                        debug_info=f"any_of condition met: {self._describe(child)}",
                    )
            return EvaluationResult(result=False, resolved_values=resolved_values, debug_info="No conditions met")

        return EvaluationResult(
            result=base_result,
            resolved_values=resolved_values,
            debug_info=f"{condition.param}={resolved_values[condition.param]!r} "
                       f"{condition.operator.value} {condition.value!r} -> {base_result}",
        )

    def _compare(self, condition: WhenCondition, actual: Any) -> bool:
        expected = self._coerce(condition.param, condition.value)

        if condition.operator == ConditionOperator.EQ:
            return actual == expected
        elif condition.operator == ConditionOperator.NEQ:
            return actual != expected
        elif condition.operator == ConditionOperator.IN:
            return actual in expected
        elif condition.operator == ConditionOperator.NOT_IN:
            return actual not in expected
        else:
            raise ValueError(f"Unknown operator: {condition.operator}")

    def _coerce(self, param: str, value: Any) -> Any:
        """Convert environment literals to the Environment enum."""
        if param != "environment":
            return value
        if isinstance(value, list):
            return [Environment(item) for item in value]
        return Environment(value)

    def _describe(self, condition: WhenCondition) -> str:
        return f"{condition.param} {condition.operator.value} {condition.value!r}"
