"""Gate controller for pipeline runs.

Provides:
- QualitySignal implementations (SonarQube web API, generic HTTP status)
- ApprovalChannel / ApprovalRegistry: cancellable manual approval waits
- GateController: drives both gate kinds through
  AWAITING_SIGNAL -> PASSED | FAILED | TIMED_OUT
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from gantry.config import Config
from gantry.errors import GateRejected, GateTimeout, RunCancelled
from gantry.events import EventEmitter, utcnow
from gantry.pipeline.cancel import CancelScope
from gantry.pipeline.schema import GateState, SignalConfig, SignalType, Stage
from gantry.secrets import Secrets
from gantry.utils.retry import DEFAULT_SIGNAL_RETRY_CONFIG, RetryConfig, retry_sync

logger = logging.getLogger(__name__)


class SignalStatus(str, Enum):
    """Answer of an external quality signal."""
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class QualitySignal(ABC):
    """External service polled by an automated gate."""

    @abstractmethod
    def status(self) -> SignalStatus:
        """Query the current quality status."""


class HttpStatusSignal(QualitySignal):
    """Generic endpoint answering `{"status": "pending" | "passed" | "failed"}`."""

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = Config.HTTP_TIMEOUT_SECONDS):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def status(self) -> SignalStatus:
        response = self.session.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        value = str(response.json().get("status", "")).lower()
        try:
            return SignalStatus(value)
        except ValueError:
            raise ValueError(f"Unexpected status '{value}' from {self.url}")


class SonarQubeSignal(QualitySignal):
    """Quality gate status from the SonarQube web API.

    When the scanner's report-task.txt is available the gate follows that
    exact analysis (compute engine task, then its quality gate); otherwise it
    reads the project's latest quality gate status.
    """

    # Compute engine task states
    CE_PENDING = {"PENDING", "IN_PROGRESS"}
    CE_FAILED = {"FAILED", "CANCELED"}

    # Quality gate states
    QG_PASSED = {"OK", "WARN"}
    QG_FAILED = {"ERROR"}

    def __init__(
        self,
        host_url: str,
        project_key: Optional[str] = None,
        report_task: Optional[Path] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = Config.HTTP_TIMEOUT_SECONDS,
    ):
        self.host_url = host_url.rstrip("/")
        self.project_key = project_key
        self.report_task = report_task
        self.session = session or requests.Session()
        self.timeout = timeout
        if token:
            self.session.auth = (token, "")

    def status(self) -> SignalStatus:
        task = self._read_report_task()
        if task:
            return self._status_from_task(task)
        if not self.project_key:
            raise ValueError("No report task found and no project key configured")
        return self._quality_gate_status({"projectKey": self.project_key})

    def _read_report_task(self) -> Dict[str, str]:
        """Parse `key=value` lines of report-task.txt (empty if absent)."""
        if self.report_task is None or not self.report_task.exists():
            return {}
        task = {}
        for line in self.report_task.read_text(encoding="utf-8").splitlines():
            if "=" in line:
                key, value = line.split("=", 1)
                task[key.strip()] = value.strip()
        return task

    def _status_from_task(self, task: Dict[str, str]) -> SignalStatus:
        server = task.get("serverUrl", self.host_url).rstrip("/")
        payload = self._get(f"{server}/api/ce/task", {"id": task["ceTaskId"]})
        ce_task = payload.get("task", {})
        ce_status = ce_task.get("status", "PENDING")

        if ce_status in self.CE_PENDING:
            return SignalStatus.PENDING
        if ce_status in self.CE_FAILED:
            logger.warning(f"SonarQube analysis task {task['ceTaskId']} ended {ce_status}")
            return SignalStatus.FAILED

        return self._quality_gate_status({"analysisId": ce_task["analysisId"]}, server)

    def _quality_gate_status(self, params: Dict[str, str], server: Optional[str] = None) -> SignalStatus:
        payload = self._get(f"{server or self.host_url}/api/qualitygates/project_status", params)
        gate_status = payload.get("projectStatus", {}).get("status", "NONE")

        if gate_status in self.QG_PASSED:
            return SignalStatus.PASSED
        if gate_status in self.QG_FAILED:
            return SignalStatus.FAILED
        return SignalStatus.PENDING

    def _get(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()


@dataclass
class GateResult:
    """Outcome of waiting on a gate."""
    stage: str
    state: GateState
    detail: Optional[str] = None
    cancelled: bool = False
    decided_by: Optional[str] = None

    def raise_for_state(self) -> None:
        """Raise the abort matching this outcome (no-op when PASSED)."""
        if self.cancelled:
            raise RunCancelled(f"Gate '{self.stage}' cancelled while {self.state.value}")
        if self.state == GateState.TIMED_OUT:
            raise GateTimeout(self.stage, self.detail or "no signal before timeout")
        if self.state == GateState.FAILED:
            raise GateRejected(self.stage, self.detail or "gate failed")


class ApprovalConflict(Exception):
    """Approval or rejection of a gate that is already resolved."""


class ApprovalChannel:
    """A single pending manual approval.

    The waiting side blocks on `wait()`; the deciding side (HTTP route or
    test) calls `resolve()` from another thread.
    """

    def __init__(self, gate_id: str, run_id: str, message: Optional[str] = None):
        self.gate_id = gate_id
        self.run_id = run_id
        self.message = message
        self.requested_at = utcnow()
        self.state = GateState.AWAITING_SIGNAL
        self.decided_by: Optional[str] = None
        self.comment: Optional[str] = None
        self._resolved = threading.Event()
        self._lock = threading.Lock()

    def resolve(self, approved: bool, by: Optional[str] = None, comment: Optional[str] = None) -> None:
        with self._lock:
            if self.state != GateState.AWAITING_SIGNAL:
                raise ApprovalConflict(f"Gate '{self.gate_id}' is already {self.state.value}")
            self.state = GateState.PASSED if approved else GateState.FAILED
            self.decided_by = by
            self.comment = comment
        self._resolved.set()

    def wait(self, cancel: CancelScope, tick: float = 0.1) -> bool:
        """
        Block until resolved or cancelled.

        Returns:
            True if resolved, False if the scope was cancelled first
        """
        while not self._resolved.is_set():
            if cancel.cancelled:
                return False
            self._resolved.wait(tick)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "run_id": self.run_id,
            "message": self.message,
            "state": self.state.value,
            "requested_at": self.requested_at.isoformat(),
            "decided_by": self.decided_by,
            "comment": self.comment,
        }


class ApprovalRegistry:
    """Thread-safe index of manual gates, shared with the approval service."""

    def __init__(self):
        self._channels: Dict[str, ApprovalChannel] = {}
        self._lock = threading.RLock()

    def open(self, gate_id: str, run_id: str, message: Optional[str] = None) -> ApprovalChannel:
        with self._lock:
            existing = self._channels.get(gate_id)
            if existing is not None and existing.state == GateState.AWAITING_SIGNAL:
                return existing
            channel = ApprovalChannel(gate_id, run_id, message)
            self._channels[gate_id] = channel
        logger.info(f"Approval requested for gate '{gate_id}'" + (f": {message}" if message else ""))
        return channel

    def get(self, gate_id: str) -> Optional[ApprovalChannel]:
        with self._lock:
            return self._channels.get(gate_id)

    def pending(self) -> List[ApprovalChannel]:
        with self._lock:
            return [c for c in self._channels.values() if c.state == GateState.AWAITING_SIGNAL]

    def all(self) -> List[ApprovalChannel]:
        with self._lock:
            return list(self._channels.values())

    def resolve(self, gate_id: str, approved: bool, by: Optional[str] = None, comment: Optional[str] = None) -> ApprovalChannel:
        """
        Approve or reject a pending gate.

        Raises:
            KeyError: Unknown gate
            ApprovalConflict: Gate already resolved
        """
        channel = self.get(gate_id)
        if channel is None:
            raise KeyError(gate_id)
        channel.resolve(approved, by=by, comment=comment)
        logger.info(f"Gate '{gate_id}' {'approved' if approved else 'rejected'}" + (f" by {by}" if by else ""))
        return channel


class GateController:
    """Wait on automated and manual gates."""

    def __init__(
        self,
        approvals: Optional[ApprovalRegistry] = None,
        signal_factory: Optional[Callable[[Stage, Path, Secrets], QualitySignal]] = None,
        poll_interval: float = Config.GATE_POLL_INTERVAL_SECONDS,
        default_timeout: float = Config.QUALITY_GATE_TIMEOUT_SECONDS,
        retry_config: RetryConfig = DEFAULT_SIGNAL_RETRY_CONFIG,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize gate controller.

        Args:
            approvals: Registry manual gates register in (shared with the approval service)
            signal_factory: Builds a stage's QualitySignal (defaults to its SignalConfig)
            poll_interval: Seconds between quality signal polls
            default_timeout: Quality gate wait window when the stage sets none
            retry_config: Retry policy for transient HTTP errors
            clock: Monotonic clock (overridable in tests)
        """
        self.approvals = approvals or ApprovalRegistry()
        self.signal_factory = signal_factory or self.build_signal
        self.poll_interval = poll_interval
        self.default_timeout = default_timeout
        self.retry_config = retry_config
        self.clock = clock

    def build_signal(self, stage: Stage, workdir: Path, secrets: Secrets) -> QualitySignal:
        """Default factory: build the signal described by the stage's SignalConfig."""
        config: SignalConfig = stage.signal
        if config.type == SignalType.HTTP:
            return HttpStatusSignal(config.url)

        token = secrets.get(config.token_secret) if config.token_secret else Config.SONAR_TOKEN
        if config.token_secret and token is None:
            raise GateRejected(stage.name, f"secret '{config.token_secret}' is not available")
        report_task = workdir / config.report_task if config.report_task else None
        return SonarQubeSignal(
            host_url=config.host_url or Config.SONAR_HOST_URL,
            project_key=config.project_key,
            report_task=report_task,
            token=token,
        )

    def await_quality_gate(
        self,
        stage: Stage,
        signal: QualitySignal,
        cancel: CancelScope,
        emitter: Optional[EventEmitter] = None,
    ) -> GateResult:
        """
        Poll a quality signal until it passes, fails or the window closes.

        Args:
            stage: The quality_gate stage
            signal: Signal to poll
            cancel: Run/group cancel scope
            emitter: Event emitter (optional)

        Returns:
            GateResult (TIMED_OUT is reported separately but aborts like FAILED)
        """
        timeout = stage.timeout_seconds or self.default_timeout
        interval = (stage.signal.poll_interval_seconds if stage.signal else None) or self.poll_interval
        deadline = self.clock() + timeout

        if emitter:
            emitter.gate_awaiting(stage.name, stage.kind.value)
        logger.info(f"Gate '{stage.name}': waiting up to {timeout:.0f}s for quality signal")

        result = None
        while result is None:
            if cancel.cancelled:
                result = GateResult(stage.name, GateState.AWAITING_SIGNAL, detail=cancel.cancel_reason(), cancelled=True)
                break

            try:
                status = retry_sync(signal.status, config=self.retry_config, sleep=self._backoff(cancel))
            except RunCancelled:
                result = GateResult(stage.name, GateState.AWAITING_SIGNAL, detail=cancel.cancel_reason(), cancelled=True)
                break
            except (requests.RequestException, ValueError, KeyError) as e:
                if cancel.cancelled:
                    result = GateResult(
                        stage.name, GateState.AWAITING_SIGNAL, detail=cancel.cancel_reason(), cancelled=True
                    )
                else:
                    result = GateResult(stage.name, GateState.FAILED, detail=f"signal error: {e}")
                break

            if status == SignalStatus.PASSED:
                result = GateResult(stage.name, GateState.PASSED, detail="quality signal passed")
            elif status == SignalStatus.FAILED:
                result = GateResult(stage.name, GateState.FAILED, detail="quality signal failed")
            else:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    result = GateResult(stage.name, GateState.TIMED_OUT, detail=f"no result within {timeout:.0f}s")
                else:
                    logger.debug(f"Gate '{stage.name}': signal pending, {remaining:.0f}s left")
                    cancel.wait(min(interval, remaining))

        self._report(result, emitter)
        return result

    def await_approval(
        self,
        stage: Stage,
        cancel: CancelScope,
        run_id: str,
        emitter: Optional[EventEmitter] = None,
    ) -> GateResult:
        """
        Block until a human approves or rejects the gate.

        There is no built-in timeout; only the cancel scope can end the wait
        early, leaving the gate in AWAITING_SIGNAL.
        """
        channel = self.approvals.open(stage.name, run_id, stage.message)
        if emitter:
            emitter.gate_awaiting(stage.name, stage.kind.value, stage.message)

        if not channel.wait(cancel):
            result = GateResult(stage.name, GateState.AWAITING_SIGNAL, detail=cancel.cancel_reason(), cancelled=True)
        elif channel.state == GateState.PASSED:
            result = GateResult(stage.name, GateState.PASSED, detail=channel.comment, decided_by=channel.decided_by)
        else:
            who = f" by {channel.decided_by}" if channel.decided_by else ""
            why = f": {channel.comment}" if channel.comment else ""
            result = GateResult(
                stage.name, GateState.FAILED, detail=f"rejected{who}{why}", decided_by=channel.decided_by
            )

        self._report(result, emitter)
        return result

    @staticmethod
    def _backoff(cancel: CancelScope) -> Callable[[float], None]:
        """Retry sleep that ends the retry loop as soon as the scope is cancelled."""
        def sleep(delay: float) -> None:
            if cancel.wait(delay):
                raise RunCancelled(cancel.cancel_reason() or "run cancelled")
        return sleep

    def _report(self, result: GateResult, emitter: Optional[EventEmitter]) -> None:
        if result.cancelled:
            logger.warning(f"Gate '{result.stage}' cancelled while awaiting signal ({result.detail})")
        elif result.state == GateState.PASSED:
            logger.info(f"Gate '{result.stage}' passed")
        else:
            logger.error(f"Gate '{result.stage}' {result.state.value}: {result.detail}")
        if emitter and not result.cancelled:
            emitter.gate_resolved(result.stage, result.state.value, result.detail)
