"""
TABPILOT Dialogue Controller — the state machine.

    idle → planning → {clarifying | assume_announce | awaiting_approval}
         → [refining] → awaiting_approval → executing
         → {mid_exec_dialog → executing | replanning | idle}
         → completed | error

Any state may go to idle (stop) or error (fatal failure).

Every operation here is a single load → modify → save against the
SessionStore. Nothing is cached between calls.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable

from loguru import logger

from tabpilot.config_loader import DialogueConfig
from tabpilot.errors import InvalidTransitionError
from tabpilot.event_bus import EventBus, bus as default_bus
from tabpilot.state import (
    ACTION_HISTORY_LIMIT,
    ActionRecord,
    ActionRequest,
    ActionResult,
    Assumption,
    Checkpoint,
    ClarifyingQuestion,
    CompletedStep,
    Confidence,
    DialogueState,
    ExecutionState,
    FailedStep,
    MidExecDecision,
    PageState,
    Plan,
    PlanStep,
    SessionState,
    SessionStatus,
    now,
)
from tabpilot.store import SessionStore


# A failure report cannot pull a stopped or finished session back into execution
_SETTLED = frozenset({SessionStatus.IDLE, SessionStatus.COMPLETED, SessionStatus.ERROR})


def _coerce_status(status: Any) -> SessionStatus:
    try:
        return SessionStatus(status)
    except ValueError:
        raise InvalidTransitionError(f"Invalid status: {status!r}") from None


def _coerce_decision(decision: Any) -> MidExecDecision:
    try:
        return MidExecDecision(decision)
    except ValueError:
        raise InvalidTransitionError(f"Invalid mid-exec decision: {decision!r}") from None


def _question(q: ClarifyingQuestion | dict | str) -> ClarifyingQuestion:
    if isinstance(q, ClarifyingQuestion):
        return q
    if isinstance(q, str):
        return ClarifyingQuestion(question=q)
    return ClarifyingQuestion.model_validate(q)


class DialogueController:
    """Validated transitions and state-entry operations, keyed by session id."""

    def __init__(
        self,
        store: SessionStore,
        config: DialogueConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.store = store
        self.config = config or store.dialogue or DialogueConfig()
        self.bus = event_bus or default_bus

    # -----------------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------------

    def load(self, session_id: Any) -> SessionState:
        return self.store.load(session_id)

    def _save(self, state: SessionState, session_id: Any, event: str, **payload: Any) -> SessionState:
        state = self.store.save(state, session_id)
        self.bus.emit(event, session_id, {"status": state.status.value, **payload})
        return state

    def transition_to(self, session_id: Any, status: Any, **updates: Any) -> SessionState:
        """Move to `status`, merging `updates`. Unknown statuses are rejected before any load."""
        new_status = _coerce_status(status)

        state = self.store.load(session_id)
        previous = state.status
        data = state.model_dump()
        data.update(updates)
        data["status"] = new_status
        data["last_action_time"] = now()
        state = SessionState.model_validate(data)

        logger.info(f"[DIALOGUE] {session_id}: {previous.value} → {new_status.value}")
        return self._save(state, session_id, "STATE_TRANSITION", previous=previous.value)

    # -----------------------------------------------------------------------
    # Entry operations
    # -----------------------------------------------------------------------

    def start_planning(self, session_id: Any, task: str) -> SessionState:
        state = self.store.default(str(session_id))
        state.status = SessionStatus.PLANNING
        state.current_task = task
        state.start_time = now()
        state.last_action_time = state.start_time
        state.append_message("user", task, "task")
        logger.info(f"[DIALOGUE] {session_id}: planning '{task[:80]}'")
        return self._save(state, session_id, "PLANNING_STARTED", task=task)

    def enter_clarifying(
        self,
        session_id: Any,
        questions: Iterable[ClarifyingQuestion | dict | str],
    ) -> SessionState:
        questions = [_question(q) for q in questions]
        state = self.store.load(session_id)
        ds = state.dialogue_state

        if ds.clarification_round + 1 > ds.max_clarification_rounds:
            # Best-effort proceed: never loop on clarification forever
            logger.info(
                f"[DIALOGUE] {session_id}: max clarification rounds "
                f"({ds.max_clarification_rounds}) reached — proceeding to approval"
            )
            return self.transition_to(session_id, SessionStatus.AWAITING_APPROVAL)

        ds.clarification_round += 1
        ds.pending_questions = questions
        state.status = SessionStatus.CLARIFYING
        state.last_action_time = now()
        state.append_message(
            "assistant",
            "\n".join(q.question for q in questions),
            "clarification",
        )
        return self._save(
            state, session_id, "CLARIFICATION_REQUESTED",
            round=ds.clarification_round, questions=len(questions),
        )

    def record_clarification_answer(
        self,
        session_id: Any,
        answer: str,
        selected_option_id: str | None = None,
    ) -> SessionState:
        """Store the answer. Status is left alone; the caller re-enters planning."""
        state = self.store.load(session_id)
        state.dialogue_state.pending_questions = []
        state.append_message("user", answer, "clarification_answer", selected_option_id)
        return self._save(state, session_id, "CLARIFICATION_ANSWERED")

    def enter_assume_announce(
        self,
        session_id: Any,
        assumptions: Iterable[Assumption | dict],
        plan: Plan | dict,
    ) -> SessionState:
        assumptions = [Assumption.model_validate(a) if isinstance(a, dict) else a for a in assumptions]
        state = self.store.load(session_id)
        state.status = SessionStatus.ASSUME_ANNOUNCE
        state.last_action_time = now()
        state.dialogue_state.assumptions = assumptions
        state.current_plan = Plan.model_validate(plan) if isinstance(plan, dict) else plan.model_copy(deep=True)
        summary = ", ".join(f"{a.field}: {a.assumed_value}" for a in assumptions)
        state.append_message("assistant", f"Proceeding with assumptions: {summary}", "assume_announce")
        return self._save(state, session_id, "ASSUME_ANNOUNCE", assumptions=len(assumptions))

    def enter_refining(self, session_id: Any) -> SessionState:
        # The refine loop enforces the cap, not this entry point
        state = self.store.load(session_id)
        state.status = SessionStatus.REFINING
        state.last_action_time = now()
        state.dialogue_state.refine_iteration += 1
        return self._save(state, session_id, "REFINING", iteration=state.dialogue_state.refine_iteration)

    def set_plan(
        self,
        session_id: Any,
        plan: Plan | dict,
        confidence: Confidence | dict | None = None,
    ) -> SessionState:
        new_plan = Plan.model_validate(plan) if isinstance(plan, dict) else plan.model_copy(deep=True)
        state = self.store.load(session_id)

        if state.current_plan is not None:
            state.plan_history.append(state.current_plan)

        new_plan.id = f"plan-{uuid.uuid4().hex[:12]}"
        new_plan.version = len(state.plan_history) + 1
        new_plan.created_at = now()
        state.current_plan = new_plan
        if confidence is not None:
            state.confidence = Confidence.model_validate(confidence) if isinstance(confidence, dict) else confidence

        logger.info(
            f"[DIALOGUE] {session_id}: plan v{new_plan.version} — "
            f"{len(new_plan.steps)} steps, confidence={state.confidence.overall:.2f}"
        )
        return self._save(state, session_id, "PLAN_SET", version=new_plan.version, steps=len(new_plan.steps))

    def start_execution(self, session_id: Any) -> SessionState:
        state = self.store.load(session_id)
        state.status = SessionStatus.EXECUTING
        state.last_action_time = now()
        state.execution_state = ExecutionState(
            total_steps=len(state.current_plan.steps) if state.current_plan else 0,
        )
        return self._save(state, session_id, "EXECUTION_STARTED", total_steps=state.execution_state.total_steps)

    def enter_mid_exec_dialog(
        self,
        session_id: Any,
        failed_step: PlanStep | dict | None,
        error: str,
    ) -> SessionState:
        state = self.store.load(session_id)
        if state.status in _SETTLED:
            raise InvalidTransitionError(
                f"Cannot open a mid-exec dialogue from {state.status.value}"
            )
        es = state.execution_state
        es.failed_steps.append(FailedStep(step_index=es.current_step_index, error=error))
        state.status = SessionStatus.MID_EXEC_DIALOG
        state.last_action_time = now()
        logger.warning(f"[DIALOGUE] {session_id}: step {es.current_step_index + 1} failed — {error}")
        return self._save(
            state, session_id, "MID_EXEC_DIALOG",
            step_index=es.current_step_index, error=error,
        )

    def record_mid_exec_decision(self, session_id: Any, decision: MidExecDecision | str) -> SessionState:
        decision = _coerce_decision(decision)
        state = self.store.load(session_id)
        es = state.execution_state

        if es.failed_steps:
            es.failed_steps[-1].resolution = decision

        if decision is MidExecDecision.RETRY:
            # Same index: the failed step is attempted again
            state.status = SessionStatus.EXECUTING
        elif decision is MidExecDecision.SKIP:
            state.status = SessionStatus.EXECUTING
            es.current_step_index = min(es.current_step_index + 1, es.total_steps)
        elif decision is MidExecDecision.REPLAN:
            state.status = SessionStatus.REPLANNING
        else:
            state.status = SessionStatus.IDLE

        state.last_action_time = now()
        state.append_message("user", decision.value, "decision")
        logger.info(f"[DIALOGUE] {session_id}: mid-exec decision '{decision.value}' → {state.status.value}")
        return self._save(state, session_id, "MID_EXEC_DECISION", decision=decision.value)

    def stop(self, session_id: Any) -> SessionState:
        """Soft reset to idle. Conversation and plan history stay for audit."""
        state = self.store.load(session_id)
        state.status = SessionStatus.IDLE
        state.current_task = None
        state.dialogue_state = DialogueState.from_config(self.config)
        state.execution_state = ExecutionState()
        state.current_plan = None
        state.confidence = Confidence()
        state.last_action_time = now()
        logger.info(f"[DIALOGUE] {session_id}: stopped")
        return self._save(state, session_id, "STOPPED")

    # -----------------------------------------------------------------------
    # Execution bookkeeping
    # -----------------------------------------------------------------------

    def update_execution_progress(self, session_id: Any, step_index: int, result: ActionResult) -> SessionState:
        state = self.store.load(session_id)
        es = state.execution_state
        step = None
        if state.current_plan and 0 <= step_index < len(state.current_plan.steps):
            step = state.current_plan.steps[step_index]
        es.completed_steps.append(CompletedStep(step_index=step_index, action=step, result=result))
        es.current_step_index = step_index + 1
        return self._save(state, session_id, "STEP_COMPLETED", step_index=step_index)

    def create_checkpoint(self, session_id: Any, page_state: PageState | None) -> SessionState:
        state = self.store.load(session_id)
        es = state.execution_state
        es.checkpoint = Checkpoint(before_step_index=es.current_step_index, page_state=page_state)
        return self.store.save(state, session_id)

    def record_action(self, session_id: Any, action: ActionRequest, result: ActionResult) -> SessionState:
        """Append to the action history and bump the global iteration counter."""
        state = self.store.load(session_id)
        state.action_history.append(
            ActionRecord(action=action, success=result.success, error=result.error)
        )
        state.action_history = state.action_history[-ACTION_HISTORY_LIMIT:]
        state.iteration += 1
        state.last_action_time = now()
        return self.store.save(state, session_id)

    def has_reached_max_iterations(self, session_id: Any) -> bool:
        state = self.store.load(session_id)
        return state.iteration >= state.max_iterations

    def complete(self, session_id: Any, result: str) -> SessionState:
        return self.transition_to(session_id, SessionStatus.COMPLETED, result=result)

    def fail(self, session_id: Any, error: str) -> SessionState:
        logger.error(f"[DIALOGUE] {session_id}: {error}")
        return self.transition_to(session_id, SessionStatus.ERROR, error=error)

    def summary(self, session_id: Any) -> dict[str, Any]:
        state = self.store.load(session_id)
        es = state.execution_state
        return {
            "session_id": str(session_id),
            "status": state.status.value,
            "task": state.current_task,
            "iteration": state.iteration,
            "max_iterations": state.max_iterations,
            "step": f"{es.current_step_index}/{es.total_steps}",
            "failed_steps": len(es.failed_steps),
            "plan_version": state.current_plan.version if state.current_plan else None,
            "confidence": state.confidence.overall,
            "duration": (now() - state.start_time) if state.start_time else 0.0,
            "error": state.error,
            "result": state.result,
        }
