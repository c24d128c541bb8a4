"""Error taxonomy for pipeline runs.

Each abort cause maps to a distinct CLI exit code so callers can tell a
broken definition apart from a failed stage or a rejected gate.
"""

from typing import Optional


class GantryError(Exception):
    """Base class for all pipeline runner errors."""

    exit_code = 1


class DefinitionError(GantryError):
    """Malformed pipeline definition or unresolvable parameter."""

    exit_code = 3


class InvalidDefinition(DefinitionError):
    """A stage references an undefined parameter or a required one is missing."""


class MissingDependency(DefinitionError):
    """A stage depends on a stage that is not declared before it."""

    def __init__(self, stage: str, dependency: str):
        super().__init__(f"Stage '{stage}' depends on '{dependency}', which is not declared before it")
        self.stage = stage
        self.dependency = dependency


class StageExecutionError(GantryError):
    """A required stage still failed after exhausting its retries."""

    exit_code = 1

    def __init__(self, stage: str, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.returncode = exit_code
        self.output = output


class GateRejected(GantryError):
    """An automated or manual gate resolved to failure."""

    exit_code = 2

    def __init__(self, stage: str, message: str):
        super().__init__(f"Gate '{stage}' rejected: {message}")
        self.stage = stage


class GateTimeout(GateRejected):
    """An automated gate did not receive a signal within its wait window."""


class RunCancelled(GantryError):
    """The run was cancelled by its top-level cancel scope."""

    exit_code = 4
