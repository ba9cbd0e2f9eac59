"""
TABPILOT Execution Engine

Walks the active plan one step at a time. Before each step it checkpoints
(step index + fresh page snapshot), so a replan or a process restart picks up
from a known point. A failed step gets one re-resolution attempt when its
target went stale; a failure that survives that opens the mid-exec dialogue
and the user's decision (retry / skip / replan / abort) decides what's next.

Progress lives in the SessionStore, never in this object: `run()` always
resumes from the persisted step index.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

from loguru import logger

from tabpilot.config_loader import TabPilotConfig
from tabpilot.decisions import DecisionBoard
from tabpilot.dialogue import DialogueController
from tabpilot.interfaces import ActionExecutor, Callbacks, PageStateProvider
from tabpilot.resolver import find_best_match
from tabpilot.state import (
    ActionRequest,
    ActionResult,
    MidExecDecision,
    PageState,
    PlanStep,
    SessionStatus,
)

MID_EXEC = "mid_exec"


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    REPLAN = "replan"
    ABORTED = "aborted"
    STOPPED = "stopped"
    FAILED = "failed"


def _is_target_missing(error: str | None) -> bool:
    return bool(error) and "not found" in error.lower()


class ExecutionEngine:

    def __init__(
        self,
        dialogue: DialogueController,
        page: PageStateProvider,
        executor: ActionExecutor,
        config: TabPilotConfig | None = None,
        callbacks: Callbacks | None = None,
    ):
        self.dialogue = dialogue
        self.page = page
        self.executor = executor
        self.config = config or TabPilotConfig()
        self.callbacks = callbacks or Callbacks()

    @property
    def _action_delay_s(self) -> float:
        return max(0, self.config.limits.action_delay_ms) / 1000

    @property
    def _decision_timeout_s(self) -> float | None:
        ms = self.config.dialogue.mid_exec_timeout_ms
        return ms / 1000 if ms and ms > 0 else None

    # -----------------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------------

    async def run(self, session_id: Any, board: DecisionBoard | None = None) -> ExecutionOutcome:
        board = board or DecisionBoard(session_id)
        state = self.dialogue.load(session_id)

        if state.current_plan is None:
            return await self._fatal(session_id, "No plan to execute")

        if state.status is SessionStatus.MID_EXEC_DIALOG:
            # Resumed while a failure was awaiting its decision
            failed = state.execution_state.failed_steps
            error = failed[-1].error if failed else "Step failed"
            index = state.execution_state.current_step_index
            step = state.current_plan.steps[index] if index < len(state.current_plan.steps) else None
            outcome = await self._recover(session_id, board, index, step, error, already_open=True)
            if outcome is not None:
                return outcome

        while True:
            state = self.dialogue.load(session_id)
            if state.status is not SessionStatus.EXECUTING:
                logger.info(f"[ENGINE] {session_id}: status is {state.status.value}, leaving execution")
                return ExecutionOutcome.STOPPED

            plan = state.current_plan
            index = state.execution_state.current_step_index
            total = len(plan.steps)
            if index >= total:
                break

            if state.iteration >= state.max_iterations:
                return await self._fatal(session_id, "Maximum iterations reached")

            step = plan.steps[index]
            page_state = await self.page.capture()
            self.dialogue.create_checkpoint(session_id, page_state)

            await self.callbacks.notify("on_progress", {
                "session_id": str(session_id),
                "step": "executing",
                "current": index + 1,
                "total": total,
                "message": step.target_description or f"Executing: {step.action}...",
            })

            request = step.to_request()
            await self.callbacks.notify("on_action_started", request)
            if self._halted(session_id):
                return ExecutionOutcome.STOPPED
            logger.info(f"[ENGINE] {session_id}: step {index + 1}/{total} {step.action} {step.target_id or ''}")

            result = await self._execute(request)
            if not result.success and _is_target_missing(result.error) and step.target_description:
                request, result = await self._re_resolve(session_id, step, request, result)

            await self.callbacks.notify("on_action", request, result)
            self.dialogue.record_action(session_id, request, result)
            if self._halted(session_id):
                return ExecutionOutcome.STOPPED

            if not result.success:
                outcome = await self._recover(session_id, board, index, step, result.error or "Action failed")
                if outcome is not None:
                    return outcome
                continue

            self.dialogue.update_execution_progress(session_id, index, result)
            await self.callbacks.notify("on_progress", {
                "session_id": str(session_id),
                "step": "verifying",
                "current": index + 1,
                "total": total,
                "message": "Verifying...",
            })
            # Let the page settle before the next step
            await asyncio.sleep(self._action_delay_s)

        summary = plan.summary or "All steps completed successfully"
        self.dialogue.complete(session_id, summary)
        await self.callbacks.notify("on_complete", summary)
        logger.info(f"[ENGINE] {session_id}: completed")
        return ExecutionOutcome.COMPLETED

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _halted(self, session_id: Any, expected: SessionStatus = SessionStatus.EXECUTING) -> bool:
        """True once the session left `expected` underneath us (a stop from a callback)."""
        status = self.dialogue.load(session_id).status
        if status is expected:
            return False
        logger.info(f"[ENGINE] {session_id}: status is {status.value}, leaving execution")
        return True

    async def _execute(self, request: ActionRequest) -> ActionResult:
        try:
            return await self.executor.execute(request)
        except Exception as e:
            logger.warning(f"[ENGINE] executor raised on {request.action}: {e}")
            return ActionResult(success=False, error=str(e) or type(e).__name__)

    async def _re_resolve(
        self,
        session_id: Any,
        step: PlanStep,
        request: ActionRequest,
        result: ActionResult,
    ) -> tuple[ActionRequest, ActionResult]:
        """One pass: fresh snapshot, best word-overlap match, retry once."""
        logger.info(f"[ENGINE] {session_id}: target missing, re-resolving '{step.target_description}'")
        fresh: PageState = await self.page.capture()
        match, score = find_best_match(fresh.elements, step.target_description, step.expected_result)
        if match is None:
            logger.info(f"[ENGINE] {session_id}: no suitable match found")
            return request, result

        logger.info(f"[ENGINE] {session_id}: retargeting to {match.id} (score {score}) '{match.text[:60]}'")
        retargeted = request.model_copy(update={"target_id": match.id})
        return retargeted, await self._execute(retargeted)

    async def _recover(
        self,
        session_id: Any,
        board: DecisionBoard,
        index: int,
        step: PlanStep | None,
        error: str,
        already_open: bool = False,
    ) -> ExecutionOutcome | None:
        """Run the mid-exec dialogue. Returns an outcome when execution must stop."""
        if not already_open:
            self.dialogue.enter_mid_exec_dialog(session_id, step, error)

        decision = await self._ask_decision(session_id, board, index, step, error)
        if self._halted(session_id, SessionStatus.MID_EXEC_DIALOG):
            return ExecutionOutcome.STOPPED
        state = self.dialogue.record_mid_exec_decision(session_id, decision)

        if decision is MidExecDecision.REPLAN:
            return ExecutionOutcome.REPLAN
        if decision is MidExecDecision.ABORT:
            await self.callbacks.notify("on_error", "Task aborted by user")
            return ExecutionOutcome.ABORTED
        if state.status is not SessionStatus.EXECUTING:
            return ExecutionOutcome.STOPPED
        return None

    async def _ask_decision(
        self,
        session_id: Any,
        board: DecisionBoard,
        index: int,
        step: PlanStep | None,
        error: str,
    ) -> MidExecDecision:
        pending = board.open(MID_EXEC)

        def decide(decision: MidExecDecision | str) -> bool:
            return pending.resolve(MidExecDecision(decision))

        await self.callbacks.notify("on_mid_exec_dialog", {
            "session_id": str(session_id),
            "step_index": index,
            "step": step,
            "error": error,
            "options": [d.value for d in MidExecDecision],
            "timeout_ms": self.config.dialogue.mid_exec_timeout_ms,
            "decide": decide,
        })
        try:
            decision = await pending.wait(self._decision_timeout_s, default=MidExecDecision.SKIP)
        finally:
            board.close(MID_EXEC)
        return MidExecDecision(decision)

    async def _fatal(self, session_id: Any, error: str) -> ExecutionOutcome:
        self.dialogue.fail(session_id, error)
        await self.callbacks.notify("on_error", error)
        return ExecutionOutcome.FAILED
