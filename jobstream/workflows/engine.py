"""Workflow engine: single-flight invocations, timeouts, supervision, scheduling.

A workflow is registered once with a concurrency policy and an optional
interval. ``trigger`` starts an invocation on the shared TaskExecutor; while
one is active, further triggers are rejected (``REJECT``) or parked in a single
pending slot (``QUEUE``). Every invocation ends in an InvocationRecord that is
handed to the supervisor callback. Workflow errors never escape the engine.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from jobstream.config import WorkflowSettings, settings as app_settings
from jobstream.errors import ErrorKind, PipelineError, WorkflowError
from jobstream.executor import TaskExecutor

logger = logging.getLogger(__name__)


class ConcurrencyPolicy(str, Enum):
    REJECT = "reject"
    QUEUE = "queue"


class InvocationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass
class WorkflowSummary:
    """What one workflow invocation did.

    ``error`` is set when some items failed but the run as a whole finished
    (a PartialBatchFailure).
    """
    counts: dict[str, int] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    error: WorkflowError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"counts": dict(self.counts)}
        if self.details:
            data["details"] = self.details
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class InvocationRecord:
    invocation_id: str
    workflow: str
    status: InvocationStatus
    source: str = "manual"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int = 0
    summary: WorkflowSummary | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "source": self.source,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "summary": self.summary.to_dict() if self.summary else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


@dataclass
class Invocation:
    """Handle for one triggered run. Await ``wait()`` for its record."""
    invocation_id: str
    workflow: str
    source: str = "manual"
    params: dict[str, Any] = field(default_factory=dict)
    status: InvocationStatus = InvocationStatus.PENDING
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    async def wait(self) -> InvocationRecord:
        return await asyncio.shield(self.future)

    def resolve(self, record: InvocationRecord) -> None:
        self.status = record.status
        if not self.future.done():
            self.future.set_result(record)


class Workflow(ABC):
    """A unit of scheduled work. Subclasses set ``name`` and implement ``execute``."""
    name: str = "workflow"

    @abstractmethod
    async def execute(self, invocation: Invocation) -> WorkflowSummary:
        ...


Supervisor = Callable[[InvocationRecord], None]


def log_invocation(record: InvocationRecord) -> None:
    """Default supervisor: one structured log line per finished invocation."""
    extra = {
        "run_id": record.invocation_id,
        "workflow": record.workflow,
        "source": record.source,
        "duration_ms": record.duration_ms,
        "failure_kind": record.error_kind.value if record.error_kind else None,
    }
    counts = record.summary.counts if record.summary else {}
    if record.status == InvocationStatus.SUCCEEDED:
        if record.summary and record.summary.error is not None:
            logger.warning(f"Workflow {record.workflow} finished with item failures: {counts}", extra=extra)
        else:
            logger.info(f"Workflow {record.workflow} succeeded: {counts}", extra=extra)
    elif record.status in (InvocationStatus.REJECTED, InvocationStatus.CANCELLED):
        logger.info(f"Workflow {record.workflow} {record.status.value}", extra=extra)
    else:
        logger.error(
            f"Workflow {record.workflow} {record.status.value}: {record.error_message}",
            extra=extra,
        )


@dataclass
class _Slot:
    workflow: Workflow
    policy: ConcurrencyPolicy
    interval: float | None
    running: bool = False
    queued: Invocation | None = None
    task: asyncio.Task | None = None


class WorkflowEngine:
    """Registers workflows and runs them with single-flight semantics."""

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        config: WorkflowSettings | None = None,
        supervisor: Supervisor | None = None,
        history_size: int = 50,
    ) -> None:
        self.executor = executor
        self.config = config or app_settings.workflows
        self.supervisor = supervisor or log_invocation
        self._slots: dict[str, _Slot] = {}
        self._last: dict[str, InvocationRecord] = {}
        self.history: deque[InvocationRecord] = deque(maxlen=history_size)
        self._loops: list[asyncio.Task] = []

    def register(
        self,
        workflow: Workflow,
        *,
        policy: ConcurrencyPolicy = ConcurrencyPolicy.REJECT,
        interval: float | None = None,
    ) -> None:
        if workflow.name in self._slots:
            raise ValueError(f"workflow {workflow.name!r} is already registered")
        self._slots[workflow.name] = _Slot(workflow=workflow, policy=policy, interval=interval)
        logger.info(f"Registered workflow {workflow.name} (policy={policy.value}, interval={interval})")

    @property
    def workflows(self) -> list[str]:
        return list(self._slots)

    def is_running(self, name: str) -> bool:
        return self._slot(name).running

    def last_record(self, name: str) -> InvocationRecord | None:
        self._slot(name)
        return self._last.get(name)

    def _slot(self, name: str) -> _Slot:
        try:
            return self._slots[name]
        except KeyError:
            raise KeyError(f"unknown workflow {name!r}") from None

    @staticmethod
    def _try_acquire(slot: _Slot) -> bool:
        # Check and set happen with no await in between, so no other task can
        # observe the flag half-way.
        if slot.running:
            return False
        slot.running = True
        return True

    async def trigger(
        self,
        name: str,
        *,
        wait: bool = False,
        source: str = "manual",
        params: dict[str, Any] | None = None,
    ) -> Invocation:
        """Start (or queue) an invocation of a registered workflow.

        Args:
            name: Registered workflow name
            wait: Await the invocation's record before returning
            source: Who triggered it ("manual", "scheduler", "api", ...)
            params: Workflow-specific parameters

        Returns:
            The Invocation handle

        Raises:
            WorkflowError: SingleFlightRejected when an invocation is active
                and the policy (or a full pending slot) does not allow queueing
            KeyError: Unknown workflow
        """
        slot = self._slot(name)
        invocation = Invocation(
            invocation_id=uuid.uuid4().hex[:12],
            workflow=name,
            source=source,
            params=dict(params or {}),
        )

        if self._try_acquire(slot):
            self._start(slot, invocation)
        elif slot.policy == ConcurrencyPolicy.QUEUE and slot.queued is None:
            slot.queued = invocation
            logger.info(f"Workflow {name} busy, queued invocation {invocation.invocation_id}")
        else:
            now = datetime.utcnow()
            record = InvocationRecord(
                invocation_id=invocation.invocation_id,
                workflow=name,
                status=InvocationStatus.REJECTED,
                source=source,
                started_at=now,
                finished_at=now,
                error_kind=ErrorKind.SINGLE_FLIGHT_REJECTED,
                error_message=f"workflow {name} is already running",
            )
            invocation.resolve(record)
            self._report(record)
            raise WorkflowError(ErrorKind.SINGLE_FLIGHT_REJECTED, f"workflow {name} is already running")

        if wait:
            await invocation.wait()
        return invocation

    def _start(self, slot: _Slot, invocation: Invocation) -> None:
        invocation.status = InvocationStatus.RUNNING
        try:
            slot.task = self.executor.spawn(
                self._run(slot, invocation),
                name=f"workflow:{invocation.workflow}:{invocation.invocation_id}",
            )
        except RuntimeError:
            slot.running = False
            raise

    async def _run(self, slot: _Slot, invocation: Invocation) -> None:
        try:
            await self._invoke(slot.workflow, invocation)
        finally:
            pending, slot.queued = slot.queued, None
            slot.task = None
            if pending is None:
                slot.running = False
            else:
                try:
                    self._start(slot, pending)
                except RuntimeError:
                    # Executor shut down while the invocation was parked
                    self._abandon(pending)

    def _abandon(self, invocation: Invocation) -> None:
        now = datetime.utcnow()
        record = InvocationRecord(
            invocation_id=invocation.invocation_id,
            workflow=invocation.workflow,
            status=InvocationStatus.CANCELLED,
            source=invocation.source,
            started_at=now,
            finished_at=now,
        )
        invocation.resolve(record)
        self._report(record)

    async def _invoke(self, workflow: Workflow, invocation: Invocation) -> InvocationRecord:
        record = InvocationRecord(
            invocation_id=invocation.invocation_id,
            workflow=workflow.name,
            status=InvocationStatus.RUNNING,
            source=invocation.source,
            started_at=datetime.utcnow(),
        )
        started = time.monotonic()
        logger.info(
            f"Workflow {workflow.name} started",
            extra={"run_id": invocation.invocation_id, "workflow": workflow.name, "source": invocation.source},
        )

        try:
            async with asyncio.timeout(self.config.invocation_timeout_seconds):
                record.summary = await workflow.execute(invocation)
            record.status = InvocationStatus.SUCCEEDED
        except TimeoutError:
            record.status = InvocationStatus.TIMED_OUT
            record.error_kind = ErrorKind.TIMEOUT
            record.error_message = f"exceeded {self.config.invocation_timeout_seconds}s"
        except asyncio.CancelledError:
            record.status = InvocationStatus.CANCELLED
            self._finish(record, invocation, started)
            raise
        except PipelineError as e:
            record.status = InvocationStatus.FAILED
            record.error_kind = e.kind
            record.error_message = e.message
        except Exception as e:
            logger.exception(f"Workflow {workflow.name} crashed", extra={"run_id": invocation.invocation_id})
            record.status = InvocationStatus.FAILED
            record.error_message = repr(e)

        self._finish(record, invocation, started)
        return record

    def _finish(self, record: InvocationRecord, invocation: Invocation, started: float) -> None:
        record.finished_at = datetime.utcnow()
        record.duration_ms = int((time.monotonic() - started) * 1000)
        invocation.resolve(record)
        self._report(record)

    def _report(self, record: InvocationRecord) -> None:
        self._last[record.workflow] = record
        self.history.append(record)
        try:
            self.supervisor(record)
        except Exception:
            logger.exception(f"Supervisor failed for invocation {record.invocation_id}")

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch one periodic loop per workflow registered with an interval."""
        if self._loops:
            return
        for slot in self._slots.values():
            if slot.interval:
                self._loops.append(
                    self.executor.spawn(self._schedule_loop(slot), name=f"scheduler:{slot.workflow.name}")
                )
        logger.info(f"Scheduler started with {len(self._loops)} loop(s)")

    async def _schedule_loop(self, slot: _Slot) -> None:
        name = slot.workflow.name
        while True:
            try:
                await self.trigger(name, source="scheduler")
            except WorkflowError as e:
                logger.info(f"Scheduled run of {name} skipped: {e.message}")
            except Exception:
                logger.exception(f"Scheduled trigger of {name} failed")
            await asyncio.sleep(slot.interval)

    async def stop(self, *, timeout: float = 10.0) -> None:
        """Cancel the scheduler loops, then drain running invocations."""
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)

        for slot in self._slots.values():
            if slot.queued is not None:
                parked, slot.queued = slot.queued, None
                self._abandon(parked)

        running = [slot.task for slot in self._slots.values() if slot.task is not None]
        if running:
            _, pending = await asyncio.wait(running, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")
