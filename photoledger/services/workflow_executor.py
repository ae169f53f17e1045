"""
Workflow Executor — chained image-processing steps billed per step.
===================================================================

PURPOSE:
    Runs a WorkflowConfig one step at a time. Each step's output feeds the
    next step's input, and each step is paid for through a reservation:
    reserve before calling the processor, commit on success, release on
    failure. A failed step never costs credits; a successful step is never
    refunded.

STATE MACHINE:
    pending → running                    run()
    running → complete                   last step succeeded
    running → step_failed                processor failed / timed out
    running → aborted(insufficient)      reserve refused, processor not called
    running → cancelled                  cancel flag seen between steps or
                                         on a failed step
    step_failed → running                retry_step()
    step_failed → aborted(user_aborted)  abort()
    step_failed | aborted(insufficient)
                → abandoned              save_partial()
    pending | step_failed → cancelled    request_cancel()

    Only one execution may be non-terminal at a time. State is persisted
    after every transition. A successful step is persisted as pending_result
    before its spend is committed, so resume() of an execution found
    `running` keeps a step that was already paid for and turns the rest into
    step_failed so it can be retried. A step that fails after a cancel
    request ends the execution as cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from photoledger.config import settings
from photoledger.core.errors import (
    InsufficientCreditsError,
    InvalidExecutionStateError,
    NetworkError,
    PhotoLedgerError,
    StepProcessingFailed,
    UnknownExecutionError,
    WorkflowBusyError,
)
from photoledger.core.errors.registry import error_registry
from photoledger.core.structured_logging import execution_id_var, workflow_id_var
from photoledger.models.entitlement import utcnow
from photoledger.models.workflow import (
    AbortReason,
    ExecutionStatus,
    WorkflowConfig,
    WorkflowExecution,
    WorkflowStep,
    WorkflowStepResult,
)
from photoledger.services.credit_ledger import CreditLedger
from photoledger.services.execution_store import ExecutionStore
from photoledger.services.image_processor import ImageProcessor

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    def __init__(
        self,
        ledger: CreditLedger,
        processor: ImageProcessor,
        store: Optional[ExecutionStore] = None,
        step_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._processor = processor
        self._store = store or ExecutionStore()
        self._step_timeout = step_timeout if step_timeout is not None else settings.processing_timeout
        self._clock = clock
        self._execution: Optional[WorkflowExecution] = None

    @property
    def active(self) -> Optional[WorkflowExecution]:
        """The execution still in flight, if any."""
        if self._execution is None or self._execution.is_terminal:
            return None
        return self._execution

    @property
    def current(self) -> Optional[WorkflowExecution]:
        return self._execution

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, workflow: WorkflowConfig, input_uri: str) -> WorkflowExecution:
        self._ensure_idle()
        now = self._clock()
        execution = WorkflowExecution(
            execution_id=uuid.uuid4().hex,
            workflow=workflow,
            input_uri=input_uri,
            started_at=now,
            updated_at=now,
        )
        self._execution = execution
        self._persist(execution)
        logger.info(
            "Workflow started: workflow=%s execution=%s steps=%d estimated_cost=%s",
            workflow.workflow_id, execution.execution_id, len(workflow.steps), workflow.total_estimated_cost,
        )
        return execution

    async def run(self, execution_id: Optional[str] = None) -> WorkflowExecution:
        execution = self._resolve(execution_id)
        self._require(execution, "run", ExecutionStatus.PENDING)
        with _bound(execution):
            return await self._run_steps(execution)

    async def execute(self, workflow: WorkflowConfig, input_uri: str) -> WorkflowExecution:
        execution = self.start(workflow, input_uri)
        return await self.run(execution.execution_id)

    async def retry_step(self, execution_id: Optional[str] = None) -> WorkflowExecution:
        """Re-run the failed step; earlier results are kept."""
        execution = self._resolve(execution_id)
        self._require(execution, "retry_step", ExecutionStatus.STEP_FAILED)
        execution.cancel_requested = False
        logger.info(
            "Retrying step %d (%s) of execution %s",
            execution.current_step_index, execution.current_step.id, execution.execution_id,
        )
        with _bound(execution):
            return await self._run_steps(execution)

    def save_partial(self, execution_id: Optional[str] = None) -> WorkflowExecution:
        """Stop here and keep the last successful output."""
        execution = self._resolve(execution_id)
        insufficient = (
            execution.status == ExecutionStatus.ABORTED
            and execution.abort_reason == AbortReason.INSUFFICIENT_CREDITS
        )
        if execution.status != ExecutionStatus.STEP_FAILED and not insufficient:
            raise InvalidExecutionStateError(execution.execution_id, execution.status.value, "save_partial")
        self._record_failed_step(execution)
        execution.final_output_uri = execution.last_successful_output
        self._finish(execution, ExecutionStatus.ABANDONED)
        return execution

    def abort(self, execution_id: Optional[str] = None) -> WorkflowExecution:
        """Discard the execution. Committed spend is not refunded."""
        execution = self._resolve(execution_id)
        self._require(execution, "abort", ExecutionStatus.PENDING, ExecutionStatus.STEP_FAILED)
        if execution.status == ExecutionStatus.STEP_FAILED:
            self._record_failed_step(execution)
        execution.abort_reason = AbortReason.USER_ABORTED
        self._finish(execution, ExecutionStatus.ABORTED)
        return execution

    def request_cancel(self, execution_id: Optional[str] = None) -> WorkflowExecution:
        """Cancel now if idle; otherwise stop before the next step."""
        execution = self._resolve(execution_id)
        self._require(
            execution, "request_cancel",
            ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.STEP_FAILED,
        )
        if execution.status == ExecutionStatus.RUNNING:
            execution.cancel_requested = True
            self._persist(execution)
            logger.info("Cancel requested for execution %s", execution.execution_id)
        else:
            self._finish(execution, ExecutionStatus.CANCELLED)
        return execution

    def resume(self, execution_id: str) -> WorkflowExecution:
        """Reload a persisted execution, e.g. after an app restart."""
        if self._execution is not None and self._execution.execution_id == execution_id:
            return self._execution

        self._ensure_idle()
        execution = self._store.load(execution_id)
        self._execution = execution
        if execution.status != ExecutionStatus.RUNNING:
            return execution

        self._recover_pending(execution)
        if execution.current_step is None:
            execution.final_output_uri = execution.last_successful_output
            self._finish(execution, ExecutionStatus.COMPLETE)
            return execution

        # Open reservations lived in memory and are gone
        execution.status = ExecutionStatus.STEP_FAILED
        execution.last_error = "interrupted"
        execution.last_error_code = None
        execution.failure = None
        self._persist(execution)
        logger.warning(
            "Execution %s was interrupted at step %d; marked step_failed",
            execution.execution_id, execution.current_step_index,
        )
        return execution

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run_steps(self, execution: WorkflowExecution) -> WorkflowExecution:
        execution.status = ExecutionStatus.RUNNING
        execution.last_error = None
        execution.last_error_code = None
        execution.failure = None
        self._persist(execution)

        while execution.current_step is not None:
            if execution.cancel_requested:
                logger.info("Execution %s cancelled before step %d", execution.execution_id, execution.current_step_index)
                self._finish(execution, ExecutionStatus.CANCELLED)
                return execution
            if not await self._run_step(execution, execution.current_step):
                return execution

        execution.final_output_uri = execution.last_successful_output
        self._finish(execution, ExecutionStatus.COMPLETE)
        logger.info(
            "Workflow complete: execution=%s credits_spent=%s output=%s",
            execution.execution_id, execution.credits_spent, execution.final_output_uri,
        )
        return execution

    async def _run_step(self, execution: WorkflowExecution, step: WorkflowStep) -> bool:
        index = execution.current_step_index
        try:
            reservation = self._ledger.reserve(
                step.estimated_cost, label=f"{execution.execution_id}:{step.id}",
            )
        except InsufficientCreditsError as e:
            execution.abort_reason = AbortReason.INSUFFICIENT_CREDITS
            execution.last_error = e.detail
            execution.last_error_code = e.code
            execution.failure = error_registry.describe(e)
            self._finish(execution, ExecutionStatus.ABORTED)
            logger.warning(
                "Execution %s aborted at step %d (%s): %s",
                execution.execution_id, index, step.id, e.detail,
            )
            raise

        execution.step_attempts[step.id] = execution.step_attempts.get(step.id, 0) + 1
        started = time.monotonic()
        error: Optional[PhotoLedgerError] = None
        output_uri: Optional[str] = None
        try:
            outcome = await asyncio.wait_for(
                self._processor.process(execution.current_input_uri, step.processing_mode, step.config),
                timeout=self._step_timeout,
            )
            if not outcome.success:
                error = StepProcessingFailed(step.id, outcome.error or "processing failed", outcome.status_code)
            elif not outcome.output_uri:
                error = StepProcessingFailed(step.id, "no output returned", outcome.status_code)
            else:
                output_uri = outcome.output_uri
        except asyncio.CancelledError:
            self._ledger.release(reservation.reservation_id)
            execution.status = ExecutionStatus.STEP_FAILED
            execution.last_error = "interrupted"
            self._persist(execution)
            raise
        except asyncio.TimeoutError:
            error = NetworkError(
                f"step {step.id} timed out after {self._step_timeout}s",
                context={"step_id": step.id},
            )
        except Exception as e:
            error = StepProcessingFailed(step.id, str(e) or type(e).__name__)

        elapsed_ms = int((time.monotonic() - started) * 1000)

        if error is not None:
            self._ledger.release(reservation.reservation_id)
            execution.last_error = error.detail
            execution.last_error_code = error.code
            execution.failure = error_registry.describe(error)
            logger.log(
                error_registry.log_level(error),
                "Step failed: execution=%s step=%d (%s) attempt=%d code=%s retryable=%s error=%s",
                execution.execution_id, index, step.id, execution.step_attempts[step.id],
                error.code, execution.failure["retryable"], error.detail,
            )
            if execution.cancel_requested:
                self._record_failed_step(execution)
                self._finish(execution, ExecutionStatus.CANCELLED)
            else:
                execution.status = ExecutionStatus.STEP_FAILED
                self._persist(execution)
            return False

        execution.pending_result = WorkflowStepResult(
            step_id=step.id,
            step_index=index,
            output_uri=output_uri,
            success=True,
            processing_time_ms=elapsed_ms,
            credits_charged=reservation.amount,
            completed_at=self._clock(),
        )
        execution.pending_reservation_id = reservation.reservation_id
        try:
            self._persist(execution)
        except Exception:
            self._ledger.release(reservation.reservation_id)
            raise
        self._ledger.commit(reservation.reservation_id)
        self._settle(execution)
        logger.info(
            "Step complete: execution=%s step=%d (%s) mode=%s charged=%s time_ms=%d",
            execution.execution_id, index, step.id, step.processing_mode.value, reservation.amount, elapsed_ms,
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        active = self.active
        if active is not None:
            raise WorkflowBusyError(active.execution_id)

    def _resolve(self, execution_id: Optional[str]) -> WorkflowExecution:
        if self._execution is None:
            if execution_id is None:
                raise UnknownExecutionError("<none>")
            return self.resume(execution_id)
        if execution_id is None or execution_id == self._execution.execution_id:
            return self._execution
        return self.resume(execution_id)

    @staticmethod
    def _require(execution: WorkflowExecution, operation: str, *allowed: ExecutionStatus) -> None:
        if execution.status not in allowed:
            raise InvalidExecutionStateError(execution.execution_id, execution.status.value, operation)

    def _settle(self, execution: WorkflowExecution) -> None:
        """Move the committed pending_result into step_results and advance."""
        result = execution.pending_result
        execution.step_results.append(result)
        execution.current_step_index = result.step_index + 1
        execution.pending_result = None
        execution.pending_reservation_id = None
        self._persist(execution)

    def _recover_pending(self, execution: WorkflowExecution) -> None:
        reservation_id = execution.pending_reservation_id
        if reservation_id is None:
            return
        if self._ledger.is_committed(reservation_id):
            step_id = execution.pending_result.step_id
            self._settle(execution)
            logger.warning(
                "Execution %s: step %s was charged before the interruption; keeping its output",
                execution.execution_id, step_id,
            )
            return
        execution.pending_result = None
        execution.pending_reservation_id = None

    def _record_failed_step(self, execution: WorkflowExecution) -> None:
        step = execution.current_step
        if step is None:
            return
        execution.step_results.append(WorkflowStepResult(
            step_id=step.id,
            step_index=execution.current_step_index,
            success=False,
            error=execution.last_error,
            completed_at=self._clock(),
        ))

    def _finish(self, execution: WorkflowExecution, status: ExecutionStatus) -> None:
        execution.status = status
        execution.finished_at = self._clock()
        self._persist(execution)
        logger.info("Execution %s → %s", execution.execution_id, status.value)

    def _persist(self, execution: WorkflowExecution) -> None:
        execution.updated_at = self._clock()
        self._store.save(execution)


@contextmanager
def _bound(execution: WorkflowExecution) -> Iterator[None]:
    eid = execution_id_var.set(execution.execution_id)
    wid = workflow_id_var.set(execution.workflow.workflow_id)
    try:
        yield
    finally:
        execution_id_var.reset(eid)
        workflow_id_var.reset(wid)
