"""Pipeline executor for group-by-group run execution.

Runs a BuiltPipeline, emitting events for progress tracking. Groups run
strictly in order; a parallel group forks its stages onto a thread pool and
joins them before the next group starts.
"""

import logging
import os
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from gantry.config import Config
from gantry.config_loader import ConfigLoader
from gantry.errors import GantryError, RunCancelled, StageExecutionError
from gantry.events import EventBus, EventEmitter, utcnow
from gantry.pipeline.builder import BuiltGroup, BuiltPipeline, BuiltStage
from gantry.pipeline.cancel import CancelScope
from gantry.pipeline.commands import CommandRunner, StageOutput
from gantry.pipeline.gating import GateController
from gantry.pipeline.schema import (
    Command,
    GateState,
    RunResult,
    RunStatus,
    Stage,
    StageKind,
    StageResult,
    StageStatus,
)
from gantry.secrets import Secrets

logger = logging.getLogger(__name__)


class PipelineExecutor:
    """Execute built pipelines group by group with event broadcasting."""

    def __init__(
        self,
        command_runner: Optional[CommandRunner] = None,
        gate_controller: Optional[GateController] = None,
        secrets: Optional[Secrets] = None,
        event_bus: Optional[EventBus] = None,
        workspace: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        tail_lines: int = Config.OUTPUT_TAIL_LINES,
        base_env: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize pipeline executor.

        Args:
            command_runner: Runs stage commands as subprocesses
            gate_controller: Waits on quality and approval gates
            secrets: Secrets stages may bind through `credentials`
            event_bus: Bus receiving run events (a private one by default)
            workspace: Shared working directory (defaults to the current directory)
            log_dir: Directory for per-stage log files (none by default)
            tail_lines: Lines of output kept on each StageResult
            base_env: Environment inherited by commands (defaults to os.environ)
        """
        self.command_runner = command_runner or CommandRunner()
        self.gate_controller = gate_controller or GateController()
        self.secrets = secrets or Secrets()
        self.event_bus = event_bus or EventBus()
        self.workspace = Path(workspace or os.getcwd())
        self.log_dir = Path(log_dir) if log_dir else None
        self.tail_lines = tail_lines
        self.base_env = base_env
        self._artifact_lock = threading.Lock()

    def execute(
        self,
        pipeline: BuiltPipeline,
        run_id: Optional[str] = None,
        cancel: Optional[CancelScope] = None,
    ) -> RunResult:
        """
        Execute a built pipeline.

        Args:
            pipeline: Graph produced by StageGraphBuilder
            run_id: Optional run ID (generated if not provided)
            cancel: Top-level cancel scope; cancelling it aborts the run

        Returns:
            RunResult; `exit_code` and `raise_for_status()` expose the abort cause
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        cancel = cancel or CancelScope()
        emitter = EventEmitter(run_id, self.event_bus)

        result = RunResult(
            run_id=run_id,
            pipeline=pipeline.name,
            parameters=pipeline.parameters,
            started_at=utcnow(),
        )
        for group in pipeline.groups:
            for built in group.stages:
                result.stages[built.name] = StageResult(
                    name=built.name,
                    group_index=group.index,
                    kind=built.stage.kind,
                    best_effort=built.stage.best_effort,
                )

        definition = pipeline.definition
        emitter.run_started(definition.name, definition.version, pipeline.parameters.environment.value)
        logger.info(
            f"Run {run_id}: pipeline '{definition.name}' v{definition.version} "
            f"-> {pipeline.parameters.environment.value}"
        )
        start_time = time.time()

        try:
            for group in pipeline.groups:
                if cancel.cancelled:
                    raise RunCancelled(cancel.cancel_reason() or "run cancelled")
                self._run_group(group, pipeline, result, cancel, emitter)

            result.status = RunStatus.SUCCEEDED
            emitter.run_completed(int((time.time() - start_time) * 1000))
            best_effort_failures = result.stages_with_status(StageStatus.FAILED)
            if best_effort_failures:
                logger.warning(f"Run {run_id} succeeded with best-effort failures: {', '.join(best_effort_failures)}")

        except RunCancelled as e:
            result.record_error(e)
            result.status = RunStatus.CANCELLED
            emitter.run_cancelled(str(e))
            logger.warning(f"Run {run_id} cancelled: {e}")

        except GantryError as e:
            result.record_error(e)
            result.status = RunStatus.FAILED
            emitter.run_failed(str(e), type(e).__name__)
            logger.error(f"Run {run_id} failed: {e}")

        self._mark_not_run(result)
        self._run_post(pipeline, result, emitter)
        result.finished_at = utcnow()
        return result

    def _run_group(
        self,
        group: BuiltGroup,
        pipeline: BuiltPipeline,
        result: RunResult,
        cancel: CancelScope,
        emitter: EventEmitter,
    ) -> None:
        """Run one group; raises the abort cause if a required stage or gate fails."""
        names = [built.name for built in group.stages]
        emitter.group_started(group.index, group.parallel, names)
        scope = cancel.child()

        if not group.parallel or len(group.stages) == 1:
            for built in group.stages:
                self._run_stage(built, pipeline, result, scope, emitter)
        else:
            errors: List[GantryError] = []
            # Fork-join: leaving the pool waits for every sibling to finish
            with ThreadPoolExecutor(max_workers=len(group.stages), thread_name_prefix="gantry-stage") as pool:
                futures = {
                    pool.submit(self._run_stage, built, pipeline, result, scope, emitter): built
                    for built in group.stages
                }
                for future in as_completed(futures):
                    error = future.exception()
                    if error is None:
                        continue
                    if not isinstance(error, GantryError):
                        scope.cancel("internal error")
                        raise error
                    errors.append(error)
                    scope.cancel(f"stage '{futures[future].name}' failed")

            if errors:
                # The sibling that failed outranks the ones it cancelled
                primary = next((e for e in errors if not isinstance(e, RunCancelled)), errors[0])
                raise primary

        emitter.group_completed(group.index, {name: result.stages[name].status.value for name in names})

    def _run_stage(
        self,
        built: BuiltStage,
        pipeline: BuiltPipeline,
        result: RunResult,
        scope: CancelScope,
        emitter: EventEmitter,
    ) -> None:
        stage = built.stage
        stage_result = result.stages[stage.name]

        if not built.enabled:
            stage_result.status = StageStatus.SKIPPED
            stage_result.skip_reason = built.skip_reason
            emitter.stage_skipped(stage.name, built.skip_reason or "disabled")
            logger.info(f"Stage '{stage.name}' skipped: {built.skip_reason}")
            return

        if scope.cancelled:
            stage_result.status = StageStatus.CANCELLED
            emitter.stage_cancelled(stage.name)
            raise RunCancelled(scope.cancel_reason() or "run cancelled")

        stage_result.status = StageStatus.RUNNING
        stage_result.started_at = utcnow()
        emitter.stage_started(stage.name, stage.kind.value)
        logger.info(f"Stage '{stage.name}' started")
        step_start = time.time()

        try:
            if not stage.is_gate:
                self._run_command_stage(stage, pipeline, result, stage_result, scope, emitter)
            elif stage.kind == StageKind.QUALITY_GATE:
                self._run_quality_gate(stage, stage_result, scope, emitter)
            elif stage.kind == StageKind.APPROVAL:
                self._run_approval_gate(stage, result.run_id, stage_result, scope, emitter)
            else:
                raise ValueError(f"Unknown stage kind: {stage.kind}")

        except RunCancelled:
            stage_result.status = StageStatus.CANCELLED
            emitter.stage_cancelled(stage.name)
            logger.warning(f"Stage '{stage.name}' cancelled")
            raise

        except GantryError as e:
            stage_result.status = StageStatus.FAILED
            stage_result.error = str(e)
            emitter.stage_failed(stage.name, str(e), stage.best_effort)
            if stage.best_effort and isinstance(e, StageExecutionError):
                logger.warning(f"Best-effort stage '{stage.name}' failed, continuing: {e}")
                emitter.warning("best-effort stage failed", {"stage": stage.name, "error": str(e)})
                return
            raise

        finally:
            stage_result.finished_at = utcnow()

        stage_result.status = StageStatus.SUCCEEDED
        emitter.stage_succeeded(stage.name, stage_result.attempts, int((time.time() - step_start) * 1000))
        logger.info(f"Stage '{stage.name}' succeeded")

    def _run_command_stage(
        self,
        stage: Stage,
        pipeline: BuiltPipeline,
        result: RunResult,
        stage_result: StageResult,
        scope: CancelScope,
        emitter: EventEmitter,
    ) -> None:
        """Run the command list with immediate retries."""
        env = self._stage_env(stage, pipeline, result)
        commands = [self._expand_command(command, env) for command in stage.commands]
        log_path = self._log_path(result.run_id, stage_result.group_index, stage.name)
        try:
            workdir = self._workdir(stage)
            output = StageOutput(stage.name, log_path, self.tail_lines, masker=self.secrets.mask)
        except OSError as e:
            raise StageExecutionError(stage.name, f"cannot prepare working directory or log: {e}")
        max_attempts = stage.retries + 1

        try:
            for attempt in range(1, max_attempts + 1):
                stage_result.attempts = attempt
                output.mark_attempt(attempt)

                outcome = self.command_runner.run_all(
                    commands, env, workdir, output, scope, stage.timeout_seconds
                )
                stage_result.exit_code = outcome.exit_code

                if outcome.cancelled:
                    raise RunCancelled(scope.cancel_reason() or f"stage '{stage.name}' cancelled")
                if outcome.ok:
                    break

                reason = "timed out" if outcome.timed_out else f"exit code {outcome.exit_code}"
                if attempt < max_attempts:
                    logger.warning(f"Stage '{stage.name}' attempt {attempt}/{max_attempts} failed ({reason}), retrying")
                    emitter.stage_retrying(stage.name, attempt, max_attempts, outcome.exit_code)
                    continue

                raise StageExecutionError(
                    stage.name,
                    f"{reason} after {attempt} attempt{'s' if attempt != 1 else ''}",
                    exit_code=outcome.exit_code,
                    output=output.tail,
                )
        finally:
            stage_result.output = output.tail
            stage_result.output_ref = str(log_path) if log_path else None
            output.close()

        if stage.artifact:
            value = output.last_line
            if not value:
                raise StageExecutionError(stage.name, f"produced no output for artifact '{stage.artifact}'")
            with self._artifact_lock:
                result.artifacts[stage.artifact] = value
            emitter.artifact_published(stage.name, stage.artifact, value)
            logger.info(f"Stage '{stage.name}' published {stage.artifact}={value}")

    def _run_quality_gate(
        self,
        stage: Stage,
        stage_result: StageResult,
        scope: CancelScope,
        emitter: EventEmitter,
    ) -> None:
        stage_result.gate_state = GateState.AWAITING_SIGNAL
        try:
            workdir = self._workdir(stage)
        except OSError as e:
            raise StageExecutionError(stage.name, f"cannot prepare working directory: {e}")
        signal = self.gate_controller.signal_factory(stage, workdir, self.secrets)
        outcome = self.gate_controller.await_quality_gate(stage, signal, scope, emitter)
        stage_result.gate_state = outcome.state
        outcome.raise_for_state()

    def _run_approval_gate(
        self,
        stage: Stage,
        run_id: str,
        stage_result: StageResult,
        scope: CancelScope,
        emitter: EventEmitter,
    ) -> None:
        stage_result.gate_state = GateState.AWAITING_SIGNAL
        outcome = self.gate_controller.await_approval(stage, scope, run_id, emitter)
        stage_result.gate_state = outcome.state
        outcome.raise_for_state()

    def _run_env(self, pipeline: BuiltPipeline, result: RunResult) -> Dict[str, str]:
        """Inherited environment + definition env + parameters + artifacts."""
        env = dict(os.environ if self.base_env is None else self.base_env)

        params = pipeline.parameters.as_env()
        with self._artifact_lock:
            artifacts = dict(result.artifacts)

        for name, value in pipeline.definition.environment.items():
            env[name] = ConfigLoader.expand_vars(value, {**env, **params, **artifacts})

        env.update(params)
        env.update(artifacts)
        env["GANTRY_RUN_ID"] = result.run_id
        env["GANTRY_WORKSPACE"] = str(self.workspace)
        return env

    def _stage_env(self, stage: Stage, pipeline: BuiltPipeline, result: RunResult) -> Dict[str, str]:
        """Run environment + stage name + bound credentials."""
        env = self._run_env(pipeline, result)
        env["GANTRY_STAGE"] = stage.name

        try:
            env.update(self.secrets.bind(stage.credentials))
        except KeyError as e:
            raise StageExecutionError(stage.name, f"secret {e} is not available")

        return env

    @staticmethod
    def _expand_command(command: Command, env: Dict[str, str]) -> Command:
        """Expand ${VAR} in argv vectors; shell strings are left to the shell."""
        if isinstance(command, str):
            return command
        return [ConfigLoader.expand_vars(arg, env) for arg in command]

    def _workdir(self, stage: Stage) -> Path:
        if not stage.dir:
            return self.workspace
        workdir = self.workspace / stage.dir
        workdir.mkdir(parents=True, exist_ok=True)
        return workdir

    def _log_path(self, run_id: str, group_index: int, stage_name: str) -> Optional[Path]:
        if self.log_dir is None:
            return None
        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", stage_name)
        return self.log_dir / run_id / f"{group_index:02d}-{safe_name}.log"

    def _mark_not_run(self, result: RunResult) -> None:
        """Give stages an aborted run never reached a terminal status."""
        for stage_result in result.stages.values():
            if not stage_result.status.is_terminal:
                stage_result.status = StageStatus.SKIPPED
                stage_result.skip_reason = "not run: pipeline aborted"

    def _run_post(self, pipeline: BuiltPipeline, result: RunResult, emitter: EventEmitter) -> None:
        """Run post hooks; their failures are logged and never change the run status."""
        post = pipeline.definition.post
        commands = list(post.always)
        commands += post.success if result.status == RunStatus.SUCCEEDED else post.failure
        if not commands:
            return

        env = self._run_env(pipeline, result)
        env["GANTRY_RUN_STATUS"] = result.status.value

        log_path = self._log_path(result.run_id, len(pipeline.groups), "post")
        try:
            output = StageOutput("post", log_path, self.tail_lines, masker=self.secrets.mask)
        except OSError as e:
            logger.error(f"Post hooks skipped, cannot open log {log_path}: {e}")
            emitter.warning("post hooks skipped", {"error": str(e)})
            return

        try:
            for command in commands:
                command = self._expand_command(command, env)
                outcome = self.command_runner.run(command, env, self.workspace, output, CancelScope())
                if not outcome.ok:
                    logger.warning(f"Post command {command!r} failed with exit code {outcome.exit_code}")
                    emitter.warning("post command failed", {"command": command, "exit_code": outcome.exit_code})
        finally:
            output.close()
