#!/usr/bin/env python3
"""Pipeline executor tests: ordering, retries, gating, cancellation."""

import sys
import threading
import time

import pytest
import requests

from gantry.errors import GateRejected, RunCancelled, StageExecutionError
from gantry.events import EventBus, EventType
from gantry.pipeline.builder import StageGraphBuilder
from gantry.pipeline.cancel import CancelScope
from gantry.pipeline.commands import CommandResult, CommandRunner
from gantry.pipeline.executor import PipelineExecutor
from gantry.pipeline.gating import ApprovalRegistry, GateController
from gantry.pipeline.loader import PipelineLoader
from gantry.pipeline.schema import (
    Environment,
    GateState,
    PipelineParameters,
    RunStatus,
    StageStatus,
)
from gantry.secrets import Secrets
from gantry.utils.retry import RetryConfig


class FakeRunner(CommandRunner):
    """Records invocations instead of spawning processes.

    `behaviour` maps stage name to an exit code, a list of exit codes (one
    per attempt), or a callable(output, cancel, attempt) -> CommandResult.
    """

    def __init__(self, behaviour=None):
        super().__init__()
        self.behaviour = behaviour or {}
        self.calls = []
        self.post_commands = []
        self._lock = threading.Lock()

    def run_all(self, commands, env, cwd, output, cancel, timeout=None):
        with self._lock:
            self.calls.append(output.stage)
            attempt = self.calls.count(output.stage)

        spec = self.behaviour.get(output.stage, 0)
        if callable(spec):
            return spec(output=output, cancel=cancel, attempt=attempt)

        codes = spec if isinstance(spec, list) else [spec]
        output.write(f"{output.stage} attempt {attempt}")
        return CommandResult(exit_code=codes[min(attempt, len(codes)) - 1])

    def run(self, command, env, cwd, output, cancel, timeout=None):
        self.post_commands.append(command)
        return CommandResult(exit_code=0)

    def count(self, stage):
        return self.calls.count(stage)


def cmd_stage(name, **extra):
    stage = {"name": name, "commands": [f"echo {name}"]}
    stage.update(extra)
    return stage


def build(groups, target=Environment.QA, values=None, **definition):
    config = {"name": "test", "groups": groups}
    config.update(definition)
    pipeline = PipelineLoader().load_from_dict(config)
    parameters = PipelineParameters(environment=target, values=values or {})
    return StageGraphBuilder().build(pipeline, parameters)


def make_executor(runner=None, approvals=None, **kwargs):
    gate_controller = GateController(approvals=approvals or ApprovalRegistry(), poll_interval=0.01)
    return PipelineExecutor(
        command_runner=runner or FakeRunner(),
        gate_controller=gate_controller,
        **kwargs,
    )


def py(code):
    """Argv command running a Python snippet with the current interpreter."""
    return [sys.executable, "-c", code]


# ============================================================================
# Ordering and skipping
# ============================================================================

def test_groups_run_in_declared_order(tmp_path):
    """Recorded start timestamps are non-decreasing across groups."""
    runner = FakeRunner()
    pipeline = build([
        {"stages": [cmd_stage("a1"), cmd_stage("a2")]},
        {"parallel": True, "stages": [cmd_stage("b1"), cmd_stage("b2"), cmd_stage("b3")]},
        {"stages": [cmd_stage("c1")]},
    ])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert result.status == RunStatus.SUCCEEDED
    assert result.exit_code == 0
    assert runner.calls[:2] == ["a1", "a2"]
    assert set(runner.calls[2:5]) == {"b1", "b2", "b3"}
    assert runner.calls[5] == "c1"

    by_group = {}
    for stage in result.stages.values():
        by_group.setdefault(stage.group_index, []).append(stage)
    for index in range(len(by_group) - 1):
        latest_start = max(s.started_at for s in by_group[index])
        earliest_next = min(s.started_at for s in by_group[index + 1])
        assert latest_start <= earliest_next
        assert max(s.finished_at for s in by_group[index]) <= earliest_next


def test_when_false_stage_is_never_invoked(tmp_path):
    runner = FakeRunner()
    pipeline = build([
        {"stages": [
            cmd_stage("build"),
            cmd_stage("deploy-prod", when={"param": "environment", "value": "prod"}),
        ]},
    ], target=Environment.STAGING)

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.count("deploy-prod") == 0
    assert result.stages["deploy-prod"].status == StageStatus.SKIPPED
    assert "environment" in result.stages["deploy-prod"].skip_reason
    assert result.status == RunStatus.SUCCEEDED


def test_when_true_stage_runs(tmp_path):
    runner = FakeRunner()
    pipeline = build([
        {"stages": [cmd_stage("deploy-prod", when={"param": "environment", "value": "prod"})]},
    ], target=Environment.PROD)

    make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.count("deploy-prod") == 1


# ============================================================================
# Retries and failures
# ============================================================================

@pytest.mark.parametrize("retries", [0, 1, 3])
def test_failing_stage_invoked_retries_plus_one_times(tmp_path, retries):
    runner = FakeRunner({"flaky": 1})
    pipeline = build([{"stages": [cmd_stage("flaky", retries=retries)]}])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.count("flaky") == retries + 1
    assert result.stages["flaky"].attempts == retries + 1
    assert result.stages["flaky"].status == StageStatus.FAILED
    assert result.stages["flaky"].exit_code == 1
    assert result.status == RunStatus.FAILED
    assert result.exit_code == 1


def test_retry_stops_after_first_success(tmp_path):
    runner = FakeRunner({"push": [1, 0, 0]})
    pipeline = build([{"stages": [cmd_stage("push", retries=2)]}])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.count("push") == 2
    assert result.stages["push"].status == StageStatus.SUCCEEDED
    assert result.stages["push"].attempts == 2


def test_failed_required_stage_stops_later_groups(tmp_path):
    runner = FakeRunner({"scan": 1})
    pipeline = build([
        {"stages": [cmd_stage("build")]},
        {"stages": [cmd_stage("scan"), cmd_stage("after-scan")]},
        {"stages": [cmd_stage("push")]},
        {"parallel": True, "stages": [cmd_stage("deploy-a"), cmd_stage("deploy-b")]},
    ])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.calls == ["build", "scan"]
    for name in ("after-scan", "push", "deploy-a", "deploy-b"):
        assert result.stages[name].status == StageStatus.SKIPPED
        assert result.stages[name].skip_reason == "not run: pipeline aborted"
    assert result.error_kind == "StageExecutionError"
    with pytest.raises(StageExecutionError, match="scan"):
        result.raise_for_status()


def test_best_effort_failure_continues(tmp_path):
    runner = FakeRunner({"smoke-test": 1})
    bus = EventBus()
    pipeline = build([
        {"stages": [cmd_stage("smoke-test", best_effort=True, retries=1)]},
        {"stages": [cmd_stage("notify")]},
    ])

    result = make_executor(runner, workspace=tmp_path, event_bus=bus).execute(pipeline)

    assert runner.count("smoke-test") == 2
    assert runner.count("notify") == 1
    assert result.stages["smoke-test"].status == StageStatus.FAILED
    assert result.status == RunStatus.SUCCEEDED
    assert result.exit_code == 0
    assert "best-effort" in result.summary()
    assert result.stages_with_status(StageStatus.FAILED) == ["smoke-test"]
    warnings = bus.get_history(event_type=EventType.WARNING)
    assert [e.data["context"]["stage"] for e in warnings] == ["smoke-test"]


# ============================================================================
# Parallel groups
# ============================================================================

def test_parallel_failure_scenario(tmp_path):
    """[A], [B, C parallel], [D]; B fails, C succeeds -> D never runs, exit 1."""
    barrier = threading.Barrier(2, timeout=5)

    def b(output, cancel, attempt):
        barrier.wait()  # only passes if C is running at the same time
        time.sleep(0.05)
        return CommandResult(exit_code=1)

    def c(output, cancel, attempt):
        barrier.wait()
        return CommandResult(exit_code=0)

    runner = FakeRunner({"B": b, "C": c})
    pipeline = build([
        {"stages": [cmd_stage("A")]},
        {"parallel": True, "stages": [cmd_stage("B"), cmd_stage("C")]},
        {"stages": [cmd_stage("D")]},
    ])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.calls[0] == "A"
    assert sorted(runner.calls[1:]) == ["B", "C"]
    assert runner.count("D") == 0
    assert result.stages["A"].status == StageStatus.SUCCEEDED
    assert result.stages["B"].status == StageStatus.FAILED
    assert result.stages["C"].status == StageStatus.SUCCEEDED
    assert result.stages["D"].status == StageStatus.SKIPPED
    assert result.status == RunStatus.FAILED
    assert result.exit_code == 1


def test_parallel_failure_cancels_running_sibling(tmp_path):
    def slow(output, cancel, attempt):
        if cancel.wait(5.0):
            return CommandResult(exit_code=None, cancelled=True)
        return CommandResult(exit_code=0)

    runner = FakeRunner({"fast-fail": 1, "slow": slow})
    pipeline = build([
        {"parallel": True, "stages": [cmd_stage("fast-fail"), cmd_stage("slow")]},
        {"stages": [cmd_stage("never")]},
    ])

    start = time.monotonic()
    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert time.monotonic() - start < 4.0
    assert result.stages["fast-fail"].status == StageStatus.FAILED
    assert result.stages["slow"].status == StageStatus.CANCELLED
    assert runner.count("never") == 0
    # The failing stage, not the cancelled sibling, is reported
    assert result.error_kind == "StageExecutionError"
    assert result.exit_code == 1


def test_parallel_group_completes_only_when_all_terminal(tmp_path):
    def slower(output, cancel, attempt):
        time.sleep(0.1)
        return CommandResult(exit_code=0)

    bus = EventBus()
    runner = FakeRunner({"quick": 0, "slower": slower})
    pipeline = build([{"parallel": True, "stages": [cmd_stage("quick"), cmd_stage("slower")]}])

    result = make_executor(runner, event_bus=bus, workspace=tmp_path).execute(pipeline)

    completed = bus.get_history(event_type=EventType.GROUP_COMPLETED)
    assert len(completed) == 1
    assert completed[0].data["statuses"] == {"quick": "succeeded", "slower": "succeeded"}
    assert all(stage.status.is_terminal for stage in result.stages.values())

    types = [e.type for e in bus.get_history()]
    last_stage_done = max(i for i, t in enumerate(types) if t == EventType.STAGE_SUCCEEDED)
    assert types.index(EventType.GROUP_COMPLETED) > last_stage_done


# ============================================================================
# Gates
# ============================================================================

def _run_in_thread(executor, pipeline, cancel):
    holder = {}

    def target():
        holder["result"] = executor.execute(pipeline, run_id="run-1", cancel=cancel)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, holder


def _wait_for_pending(approvals, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if approvals.pending():
            return approvals.pending()
        time.sleep(0.01)
    raise AssertionError("gate never became pending")


def _gated_pipeline():
    return build([
        {"stages": [cmd_stage("A")]},
        {"stages": [{"name": "approve", "kind": "approval", "message": "Ship it?"}]},
        {"stages": [cmd_stage("B")]},
    ])


def test_manual_gate_without_approval_blocks_until_cancelled(tmp_path):
    """The harness enforces its own timeout; the gate itself never times out."""
    approvals = ApprovalRegistry()
    runner = FakeRunner()
    executor = make_executor(runner, approvals=approvals, workspace=tmp_path)
    cancel = CancelScope()

    thread, holder = _run_in_thread(executor, _gated_pipeline(), cancel)
    pending = _wait_for_pending(approvals)
    time.sleep(0.2)
    assert thread.is_alive()
    assert [c.gate_id for c in pending] == ["approve"]

    cancel.cancel("test harness timeout")
    thread.join(timeout=5)
    assert not thread.is_alive()

    result = holder["result"]
    assert runner.calls == ["A"]
    assert result.stages["A"].status == StageStatus.SUCCEEDED
    assert result.stages["approve"].gate_state == GateState.AWAITING_SIGNAL
    assert result.stages["B"].status == StageStatus.SKIPPED
    assert result.status == RunStatus.CANCELLED
    assert result.exit_code == 4
    with pytest.raises(RunCancelled):
        result.raise_for_status()


def test_manual_gate_approved_continues(tmp_path):
    approvals = ApprovalRegistry()
    runner = FakeRunner()
    executor = make_executor(runner, approvals=approvals, workspace=tmp_path)

    thread, holder = _run_in_thread(executor, _gated_pipeline(), CancelScope())
    _wait_for_pending(approvals)
    approvals.resolve("approve", approved=True, by="alice")
    thread.join(timeout=5)

    result = holder["result"]
    assert runner.calls == ["A", "B"]
    assert result.stages["approve"].gate_state == GateState.PASSED
    assert result.status == RunStatus.SUCCEEDED


def test_manual_gate_rejected_aborts_with_gate_exit_code(tmp_path):
    approvals = ApprovalRegistry()
    runner = FakeRunner()
    executor = make_executor(runner, approvals=approvals, workspace=tmp_path)

    thread, holder = _run_in_thread(executor, _gated_pipeline(), CancelScope())
    _wait_for_pending(approvals)
    approvals.resolve("approve", approved=False, by="bob", comment="freeze")
    thread.join(timeout=5)

    result = holder["result"]
    assert runner.calls == ["A"]
    assert result.stages["approve"].status == StageStatus.FAILED
    assert result.stages["approve"].gate_state == GateState.FAILED
    assert result.exit_code == 2
    with pytest.raises(GateRejected, match="freeze"):
        result.raise_for_status()


class ScriptedSignal:
    def __init__(self, answers):
        self.answers = list(answers)

    def status(self):
        return self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]


def test_quality_gate_failure_aborts_run(tmp_path):
    from gantry.pipeline.gating import SignalStatus

    runner = FakeRunner()
    gate_controller = GateController(
        signal_factory=lambda stage, workdir, secrets: ScriptedSignal([SignalStatus.PENDING, SignalStatus.FAILED]),
        poll_interval=0.01,
    )
    executor = PipelineExecutor(command_runner=runner, gate_controller=gate_controller, workspace=tmp_path)
    pipeline = build([
        {"stages": [cmd_stage("analysis")]},
        {"stages": [{
            "name": "quality",
            "kind": "quality_gate",
            "depends_on": ["analysis"],
            "signal": {"type": "http", "url": "http://quality.invalid/status"},
        }]},
        {"stages": [cmd_stage("build")]},
    ])

    result = executor.execute(pipeline)

    assert runner.calls == ["analysis"]
    assert result.stages["quality"].gate_state == GateState.FAILED
    assert result.exit_code == 2


class UnreachableSignal:
    def status(self):
        raise requests.ConnectionError("sonar down")


def test_cancel_while_quality_signal_retries(tmp_path):
    runner = FakeRunner()
    gate_controller = GateController(
        signal_factory=lambda stage, workdir, secrets: UnreachableSignal(),
        retry_config=RetryConfig(max_retries=50, base_delay=0.2, exponential_base=1.0, jitter=False),
        poll_interval=0.01,
    )
    executor = PipelineExecutor(command_runner=runner, gate_controller=gate_controller, workspace=tmp_path)
    pipeline = build([
        {"stages": [cmd_stage("analysis")]},
        {"stages": [{
            "name": "quality",
            "kind": "quality_gate",
            "depends_on": ["analysis"],
            "signal": {"type": "http", "url": "http://quality.invalid/status"},
        }]},
        {"stages": [cmd_stage("build")]},
    ])

    start = time.monotonic()
    result = executor.execute(pipeline, cancel=CancelScope(timeout=0.5))

    assert time.monotonic() - start < 5
    assert runner.calls == ["analysis"]
    assert result.stages["quality"].status == StageStatus.CANCELLED
    assert result.stages["quality"].gate_state == GateState.AWAITING_SIGNAL
    assert result.status == RunStatus.CANCELLED
    assert result.exit_code == 4
    with pytest.raises(RunCancelled):
        result.raise_for_status()


def test_quality_gate_skipped_with_its_dependency(tmp_path):
    runner = FakeRunner()
    pipeline = build([
        {"stages": [cmd_stage("analysis", when={"param": "environment", "value": "prod"})]},
        {"stages": [{
            "name": "quality",
            "kind": "quality_gate",
            "depends_on": ["analysis"],
            "signal": {"type": "http", "url": "http://quality.invalid/status"},
        }]},
        {"stages": [cmd_stage("build")]},
    ])

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert result.stages["quality"].status == StageStatus.SKIPPED
    assert "analysis" in result.stages["quality"].skip_reason
    assert runner.calls == ["build"]


# ============================================================================
# Real subprocesses
# ============================================================================

def test_artifact_threaded_into_later_stages(tmp_path):
    pipeline = build([
        {"stages": [{
            "name": "build-image",
            "artifact": "IMAGE_REF",
            "commands": [py("print('building'); print('registry/app:1.2')")],
        }]},
        {"stages": [{
            "name": "deploy",
            "commands": [py("import os, sys; sys.exit(0 if os.environ['IMAGE_REF'] == 'registry/app:1.2' else 3)")],
        }]},
    ])

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert result.status == RunStatus.SUCCEEDED, result.summary()
    assert result.artifacts == {"IMAGE_REF": "registry/app:1.2"}
    assert "building" in result.stages["build-image"].output


def test_parameters_and_definition_env_injected(tmp_path):
    check = (
        "import os, sys; "
        "ok = os.environ['ENVIRONMENT'] == 'staging' and os.environ['IMAGE_NAME_TAG'] == 'web:7'; "
        "sys.exit(0 if ok else 5)"
    )
    pipeline = build(
        [{"stages": [{"name": "check", "commands": [py(check)]}]}],
        target=Environment.STAGING,
        values={"TAG": "7"},
        parameters=[{"name": "IMAGE", "default": "web"}, {"name": "TAG"}],
        environment={"IMAGE_NAME_TAG": "${IMAGE}:${TAG}"},
    )

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert result.status == RunStatus.SUCCEEDED, result.summary()


def test_retry_reruns_real_command_until_success(tmp_path):
    counter = tmp_path / "count.txt"
    code = (
        "import pathlib, sys; p = pathlib.Path('count.txt'); "
        "n = int(p.read_text()) + 1 if p.exists() else 1; p.write_text(str(n)); "
        "sys.exit(0 if n >= 3 else 1)"
    )
    pipeline = build([{"stages": [{"name": "flaky", "retries": 4, "commands": [py(code)]}]}])

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert result.stages["flaky"].status == StageStatus.SUCCEEDED
    assert result.stages["flaky"].attempts == 3
    assert counter.read_text() == "3"


def test_stage_timeout_counts_as_failure(tmp_path):
    pipeline = build([{"stages": [{
        "name": "hang",
        "timeout_seconds": 0.5,
        "commands": [py("import time; time.sleep(30)")],
    }]}])

    start = time.monotonic()
    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert time.monotonic() - start < 15
    assert result.stages["hang"].status == StageStatus.FAILED
    assert result.stages["hang"].exit_code == 124
    assert "timed out" in result.stages["hang"].error


def test_credentials_bound_and_masked(tmp_path):
    pipeline = build([{"stages": [{
        "name": "login",
        "credentials": {"DOCKER_PASS": "dockerhub_password"},
        "commands": [py("import os; print('password is', os.environ['DOCKER_PASS'])")],
    }]}])
    executor = PipelineExecutor(
        secrets=Secrets({"dockerhub_password": "hunter2"}),
        workspace=tmp_path,
        log_dir=tmp_path / "logs",
    )

    result = executor.execute(pipeline, run_id="run-9")

    assert result.status == RunStatus.SUCCEEDED
    assert "hunter2" not in result.stages["login"].output
    assert "password is ****" in result.stages["login"].output
    log_text = (tmp_path / "logs" / "run-9" / "00-login.log").read_text()
    assert "hunter2" not in log_text
    assert result.stages["login"].output_ref.endswith("00-login.log")


def test_missing_secret_fails_stage(tmp_path):
    pipeline = build([{"stages": [{
        "name": "login",
        "credentials": {"DOCKER_PASS": "dockerhub_password"},
        "commands": [py("pass")],
    }]}])

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert result.stages["login"].status == StageStatus.FAILED
    assert "dockerhub_password" in result.error
    assert result.exit_code == 1


def test_post_hooks_follow_outcome(tmp_path):
    runner = FakeRunner({"build": 1})
    pipeline = build(
        [{"stages": [cmd_stage("build")]}],
        post={"always": ["echo always"], "success": ["echo ok"], "failure": ["echo failed"]},
    )

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert result.status == RunStatus.FAILED
    assert runner.post_commands == ["echo always", "echo failed"]


def test_cancel_terminates_running_subprocess(tmp_path):
    pipeline = build([{"stages": [{"name": "sleep", "commands": [py("import time; time.sleep(30)")]}]}])
    cancel = CancelScope(timeout=0.5)

    start = time.monotonic()
    result = PipelineExecutor(workspace=tmp_path).execute(pipeline, cancel=cancel)

    assert time.monotonic() - start < 15
    assert result.stages["sleep"].status == StageStatus.CANCELLED
    assert result.status == RunStatus.CANCELLED
    assert "timeout" in result.error


def test_background_child_does_not_outlive_stage_timeout(tmp_path):
    """A backgrounded child holding the output pipe is killed at the stage timeout."""
    pipeline = build([{"stages": [{
        "name": "background",
        "timeout_seconds": 1,
        "commands": ["sleep 6 & echo started"],
    }]}])

    start = time.monotonic()
    result = PipelineExecutor(workspace=tmp_path).execute(pipeline, cancel=CancelScope(timeout=1.5))

    assert time.monotonic() - start < 5
    assert result.stages["background"].status == StageStatus.FAILED
    assert result.stages["background"].exit_code == 124
    assert "started" in result.stages["background"].output


def test_cancel_reaches_background_child(tmp_path):
    pipeline = build([{"stages": [{"name": "background", "commands": ["sleep 6 & echo started"]}]}])

    start = time.monotonic()
    result = PipelineExecutor(workspace=tmp_path).execute(pipeline, cancel=CancelScope(timeout=1))

    assert time.monotonic() - start < 5
    assert result.stages["background"].status == StageStatus.CANCELLED
    assert result.status == RunStatus.CANCELLED
    assert result.exit_code == 4


def test_stage_dir_naming_a_file_fails_stage(tmp_path):
    (tmp_path / "Website").write_text("not a directory")
    runner = FakeRunner()
    pipeline = build(
        [
            {"stages": [cmd_stage("build", dir="Website")]},
            {"stages": [cmd_stage("deploy")]},
        ],
        post={"always": ["echo cleanup"]},
    )

    result = make_executor(runner, workspace=tmp_path).execute(pipeline)

    assert runner.calls == []
    assert result.stages["build"].status == StageStatus.FAILED
    assert result.stages["deploy"].status == StageStatus.SKIPPED
    assert result.status == RunStatus.FAILED
    assert result.exit_code == 1
    assert "working directory" in result.error
    assert runner.post_commands == ["echo cleanup"]


def test_unwritable_log_dir_fails_stage(tmp_path):
    log_dir = tmp_path / "logs"
    log_dir.write_text("")
    runner = FakeRunner()
    pipeline = build([{"stages": [cmd_stage("build")]}], post={"always": ["echo cleanup"]})
    bus = EventBus()

    result = make_executor(runner, workspace=tmp_path, log_dir=log_dir, event_bus=bus).execute(pipeline)

    assert result.stages["build"].status == StageStatus.FAILED
    assert result.exit_code == 1
    # Post hooks cannot open their log either
    assert runner.post_commands == []
    warnings = bus.get_history(event_type=EventType.WARNING)
    assert [e.data["message"] for e in warnings] == ["post hooks skipped"]


def test_argv_arguments_expanded_from_run_env(tmp_path):
    check = "import sys; sys.exit(0 if sys.argv[1:] == ['registry/app:1.2', 'v1', '$HOME'] else 3)"
    pipeline = build(
        [
            {"stages": [{
                "name": "build-image",
                "artifact": "IMAGE_REF",
                "commands": [py("print('registry/app:1.2')")],
            }]},
            {"stages": [{"name": "deploy", "commands": [py(check) + ["${IMAGE_REF}", "${TAG}", "$HOME"]]}]},
        ],
        parameters=[{"name": "TAG", "default": "v1"}],
    )

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline)

    assert result.status == RunStatus.SUCCEEDED, result.summary()
    assert result.stages["deploy"].exit_code == 0


def test_post_hooks_see_run_environment(tmp_path):
    dump = (
        "import os, pathlib; "
        "keys = ['IMAGE_NAME_TAG', 'GANTRY_WORKSPACE', 'GANTRY_RUN_STATUS', 'GANTRY_RUN_ID']; "
        "pathlib.Path('post-env.txt').write_text('\\n'.join(os.environ.get(k, '') for k in keys))"
    )
    pipeline = build(
        [{"stages": [{"name": "build", "commands": [py("pass")]}]}],
        values={"TAG": "7"},
        parameters=[{"name": "TAG"}],
        environment={"IMAGE_NAME_TAG": "web:${TAG}"},
        post={"always": [py(dump)]},
    )

    result = PipelineExecutor(workspace=tmp_path).execute(pipeline, run_id="run-post")

    assert result.status == RunStatus.SUCCEEDED
    lines = (tmp_path / "post-env.txt").read_text().splitlines()
    assert lines == ["web:7", str(tmp_path), "succeeded", "run-post"]
