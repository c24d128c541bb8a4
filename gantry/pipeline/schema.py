"""Pipeline schema definitions using Pydantic for validation.

This module defines the structure of Gantry pipelines, including:
- Pipeline definition and declared parameters
- Stage groups (sequential or parallel) and their stages
- Typed `when` conditions evaluated against run parameters
- Runtime results for stages and whole runs
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator

from gantry.errors import GantryError


class Environment(str, Enum):
    """Deployment target of a run."""
    QA = "qa"
    STAGING = "staging"
    PROD = "prod"


class StageKind(str, Enum):
    """Type of pipeline stage."""
    COMMAND = "command"              # Run shell commands / argv vectors
    QUALITY_GATE = "quality_gate"    # Poll an external quality signal
    APPROVAL = "approval"            # Wait for a human decision


class ConditionOperator(str, Enum):
    """Comparison operators for `when` conditions."""
    EQ = "=="
    NEQ = "!="
    IN = "in"
    NOT_IN = "not_in"


class SignalType(str, Enum):
    """Source of an automated gate's quality signal."""
    SONARQUBE = "sonarqube"
    HTTP = "http"


class StageStatus(str, Enum):
    """Lifecycle status of a stage within a run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"  # Sibling terminated by an abort

    @property
    def is_terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)


class RunStatus(str, Enum):
    """Overall status of a run."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GateState(str, Enum):
    """State machine of a gate: AWAITING_SIGNAL -> PASSED | FAILED | TIMED_OUT."""
    AWAITING_SIGNAL = "awaiting_signal"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# A command is either a shell string or an argv vector
Command = Union[str, List[str]]

RESERVED_PARAMETER = "environment"


class WhenCondition(BaseModel):
    """Predicate over run parameters deciding whether a stage runs.

    Examples:
        # Only deploy to production after approval
        param: environment
        operator: "=="
        value: prod

        # Skip the scan on feature branches
        param: BRANCH
        operator: in
        value: [main, release]
    """
    param: str = Field(..., description="Parameter name ('environment' or a declared parameter)")
    operator: ConditionOperator = Field(ConditionOperator.EQ, description="Comparison operator")
    value: Union[str, List[str]] = Field(..., description="Value (or list of values for in/not_in)")

    all_of: Optional[List["WhenCondition"]] = Field(None, description="AND these conditions")
    any_of: Optional[List["WhenCondition"]] = Field(None, description="OR these conditions")

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode='after')
    def validate_value_shape(self):
        """Membership operators take a list; environment values must be known."""
        is_membership = self.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN)
        if is_membership and not isinstance(self.value, list):
            raise ValueError(f"Operator '{self.operator.value}' requires a list value")
        if not is_membership and isinstance(self.value, list):
            raise ValueError(f"Operator '{self.operator.value}' requires a single value")

        if self.param == RESERVED_PARAMETER:
            values = self.value if isinstance(self.value, list) else [self.value]
            allowed = {env.value for env in Environment}
            for item in values:
                if item not in allowed:
                    raise ValueError(
                        f"Unknown environment '{item}' in condition (expected one of {sorted(allowed)})"
                    )
        return self

    def referenced_params(self) -> List[str]:
        """All parameter names this condition (and its children) reads."""
        names = [self.param]
        for child in (self.all_of or []) + (self.any_of or []):
            names.extend(child.referenced_params())
        return names


class SignalConfig(BaseModel):
    """Where an automated gate reads its quality signal from."""
    type: SignalType = Field(SignalType.SONARQUBE, description="Signal source")
    project_key: Optional[str] = Field(None, description="SonarQube project key")
    host_url: Optional[str] = Field(None, description="SonarQube server (defaults to config)")
    report_task: Optional[str] = Field(
        None, description="Path to the scanner's report-task.txt, relative to the stage dir"
    )
    token_secret: Optional[str] = Field(None, description="Secret name holding the API token")
    url: Optional[str] = Field(None, description="Status endpoint for type=http")
    poll_interval_seconds: Optional[float] = Field(None, gt=0, description="Override poll interval")

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode='after')
    def validate_signal_source(self):
        if self.type == SignalType.SONARQUBE and not (self.project_key or self.report_task):
            raise ValueError("SonarQube signal needs 'project_key' or 'report_task'")
        if self.type == SignalType.HTTP and not self.url:
            raise ValueError("HTTP signal needs 'url'")
        return self


class Stage(BaseModel):
    """A named unit of work executing one or more commands, or a gate."""
    name: str = Field(..., min_length=1, description="Unique stage name")
    kind: StageKind = Field(StageKind.COMMAND, description="Type of stage")
    commands: List[Command] = Field(default_factory=list, description="Commands run in order")

    when: Optional[WhenCondition] = Field(None, description="Run only when this holds")
    retries: int = Field(0, ge=0, description="Extra attempts after the first failure")
    best_effort: bool = Field(False, description="Failure is logged but does not abort the run")

    dir: Optional[str] = Field(None, description="Working directory relative to the workspace")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Per-attempt / gate wait limit")
    credentials: Dict[str, str] = Field(default_factory=dict, description="Env var -> secret name")
    artifact: Optional[str] = Field(None, description="Publish last stdout line as this parameter")
    depends_on: List[str] = Field(default_factory=list, description="Stages that must be declared earlier")

    # Gate settings
    signal: Optional[SignalConfig] = Field(None, description="Quality signal (kind=quality_gate)")
    message: Optional[str] = Field(None, description="Prompt shown to approvers (kind=approval)")

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator('commands')
    @classmethod
    def validate_commands(cls, commands: List[Command]):
        for command in commands:
            if isinstance(command, list) and not command:
                raise ValueError("Argv commands must not be empty")
            if isinstance(command, str) and not command.strip():
                raise ValueError("Shell commands must not be blank")
        return commands

    @model_validator(mode='after')
    def validate_stage_kind(self):
        """Validate stage has the fields its kind needs."""
        if self.kind == StageKind.COMMAND:
            if not self.commands:
                raise ValueError(f"Stage '{self.name}' with kind='command' must have 'commands'")
            if self.signal or self.message:
                raise ValueError(f"Stage '{self.name}': gate settings are only valid on gate stages")
            return self

        if self.commands:
            raise ValueError(f"Gate stage '{self.name}' must not have 'commands'")
        if self.best_effort:
            raise ValueError(f"Gate stage '{self.name}' cannot be best-effort")
        if self.retries:
            raise ValueError(f"Gate stage '{self.name}' cannot be retried")
        if self.artifact or self.credentials:
            raise ValueError(f"Gate stage '{self.name}' cannot publish artifacts or bind credentials")

        if self.kind == StageKind.QUALITY_GATE:
            if not self.signal:
                raise ValueError(f"Stage '{self.name}' with kind='quality_gate' must have 'signal'")
            if not self.depends_on:
                raise ValueError(f"Quality gate '{self.name}' must declare the stage it waits on")

        if self.kind == StageKind.APPROVAL and self.timeout_seconds is not None:
            raise ValueError(f"Approval gate '{self.name}' has no timeout")

        return self

    @property
    def is_gate(self) -> bool:
        return self.kind != StageKind.COMMAND


class StageGroup(BaseModel):
    """A sequential or parallel collection of stages scheduled as one unit."""
    name: Optional[str] = Field(None, description="Optional group label")
    parallel: bool = Field(False, description="Run stages concurrently")
    stages: List[Stage] = Field(..., min_length=1, description="Stages in declaration order")

    model_config = {"frozen": True, "extra": "forbid"}


class ParameterSpec(BaseModel):
    """A parameter the pipeline accepts at invocation."""
    name: str = Field(..., min_length=1)
    default: Optional[str] = None
    required: bool = False
    description: Optional[str] = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator('name')
    @classmethod
    def validate_name(cls, name: str):
        if name == RESERVED_PARAMETER:
            raise ValueError("'environment' is built in and cannot be redeclared")
        return name


class PostActions(BaseModel):
    """Commands run after the groups finish, keyed by outcome."""
    always: List[Command] = Field(default_factory=list)
    success: List[Command] = Field(default_factory=list)
    failure: List[Command] = Field(default_factory=list)

    model_config = {"frozen": True, "extra": "forbid"}


class PipelineDefinition(BaseModel):
    """Complete pipeline definition.

    Groups execute strictly in order; immutable once loaded.
    """
    name: str = Field(..., description="Pipeline name (e.g., 'website')")
    version: str = Field("1.0", description="Definition version for tracking changes")
    description: Optional[str] = Field(None, description="Human-readable description")

    parameters: List[ParameterSpec] = Field(default_factory=list, description="Declared parameters")
    environment: Dict[str, str] = Field(default_factory=dict, description="Static env vars for all stages")
    groups: List[StageGroup] = Field(..., description="Ordered stage groups")
    post: PostActions = Field(default_factory=PostActions, description="Post-run hooks")

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator('groups')
    @classmethod
    def validate_groups(cls, groups: List[StageGroup]):
        """Validate there is at least one group and stage names are unique."""
        if not groups:
            raise ValueError("Pipeline must have at least one stage group")

        names = [stage.name for group in groups for stage in group.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Stage names must be unique (duplicated: {', '.join(duplicates)})")

        return groups

    @field_validator('parameters')
    @classmethod
    def validate_parameters(cls, parameters: List[ParameterSpec]):
        names = [p.name for p in parameters]
        if len(names) != len(set(names)):
            raise ValueError("Parameter names must be unique")
        return parameters

    def iter_stages(self):
        for group in self.groups:
            yield from group.stages

    def get_stage(self, name: str) -> Optional[Stage]:
        return next((s for s in self.iter_stages() if s.name == name), None)


class PipelineParameters(BaseModel):
    """Run parameters, immutable for the duration of a run."""
    environment: Environment = Field(Environment.QA, description="Deployment target")
    values: Dict[str, str] = Field(default_factory=dict, description="Named string parameters")

    model_config = {"frozen": True}

    def get(self, name: str) -> Any:
        if name == RESERVED_PARAMETER:
            return self.environment
        return self.values.get(name)

    def as_env(self) -> Dict[str, str]:
        """Parameters as environment variables for stage subprocesses."""
        env = dict(self.values)
        env["ENVIRONMENT"] = self.environment.value
        return env


class StageResult(BaseModel):
    """Outcome of one stage within a run."""
    name: str
    group_index: int
    kind: StageKind = StageKind.COMMAND
    status: StageStatus = StageStatus.PENDING
    best_effort: bool = False
    attempts: int = 0
    exit_code: Optional[int] = None
    output: str = Field("", description="Tail of captured stdout/stderr")
    output_ref: Optional[str] = Field(None, description="Path of the full stage log")
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    gate_state: Optional[GateState] = None


class RunResult(BaseModel):
    """Runtime record of a pipeline run.

    Tracks state as the run progresses through groups.
    """
    run_id: str
    pipeline: str
    parameters: PipelineParameters
    status: RunStatus = RunStatus.RUNNING
    stages: Dict[str, StageResult] = Field(default_factory=dict, description="Results by stage name")
    artifacts: Dict[str, str] = Field(default_factory=dict, description="Published artifact references")
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    _error: Optional[GantryError] = PrivateAttr(default=None)

    def record_error(self, error: GantryError) -> None:
        self._error = error
        self.error = str(error)
        self.error_kind = type(error).__name__

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return 0
        if self._error is not None:
            return self._error.exit_code
        return 1

    def raise_for_status(self) -> None:
        """Re-raise the error that aborted the run, if any."""
        if self._error is not None:
            raise self._error

    def stages_with_status(self, status: StageStatus) -> List[str]:
        return [name for name, result in self.stages.items() if result.status == status]

    def summary(self) -> str:
        """Human-readable listing of every stage's terminal status."""
        lines = [f"Pipeline '{self.pipeline}' run {self.run_id}: {self.status.value.upper()}"]
        for result in self.stages.values():
            detail = ""
            if result.status == StageStatus.SKIPPED and result.skip_reason:
                detail = f" ({result.skip_reason})"
            elif result.status == StageStatus.FAILED:
                attempts = f"{result.attempts} attempt{'s' if result.attempts != 1 else ''}"
                suffix = ", best-effort" if result.best_effort else ""
                detail = f" ({attempts}{suffix}: {result.error})"
            elif result.gate_state is not None:
                detail = f" (gate {result.gate_state.value})"
            lines.append(f"  [{result.group_index}] {result.name:<30} {result.status.value}{detail}")
        if self.error:
            lines.append(f"Error: {self.error}")
        return "\n".join(lines)


# Update forward references for recursive models
WhenCondition.model_rebuild()
