"""Pipeline execution framework for Gantry.

This package provides:
- Pipeline schema definitions (schema.py)
- Pipeline loader and validator (loader.py)
- Stage graph builder with `when` evaluation (builder.py, conditions.py)
- Pipeline executor with retries and fork-join groups (executor.py, commands.py)
- Quality and approval gates (gating.py)
"""

from gantry.pipeline.schema import (
    Environment,
    PipelineDefinition,
    PipelineParameters,
    Stage,
    StageGroup,
    StageKind,
    StageStatus,
    StageResult,
    RunResult,
    RunStatus,
    GateState,
    WhenCondition,
    ConditionOperator,
)
from gantry.pipeline.loader import (
    PipelineLoader,
)
from gantry.pipeline.builder import (
    BuiltPipeline,
    StageGraphBuilder,
)
from gantry.pipeline.cancel import (
    CancelScope,
)
from gantry.pipeline.gating import (
    ApprovalRegistry,
    GateController,
)
from gantry.pipeline.executor import (
    PipelineExecutor,
)

__all__ = [
    "Environment",
    "PipelineDefinition",
    "PipelineParameters",
    "Stage",
    "StageGroup",
    "StageKind",
    "StageStatus",
    "StageResult",
    "RunResult",
    "RunStatus",
    "GateState",
    "WhenCondition",
    "ConditionOperator",
    "PipelineLoader",
    "BuiltPipeline",
    "StageGraphBuilder",
    "CancelScope",
    "ApprovalRegistry",
    "GateController",
    "PipelineExecutor",
]
