"""
TABPILOT Controller — The Driver

It is NOT smart. It is deterministic.

One pass through the task lifecycle per session:

    plan → route by confidence → [clarify | assume + announce | proceed]
         → refine → approve → execute → complete | error

Responsibilities:
  - Own the session registry (one in-flight run per session key)
  - Ask the planner, route on its confidence
  - Keep the human in the loop through named dialogues
  - Hand the approved plan to the ExecutionEngine
  - Replan on request, within limits
  - Stop cleanly from any suspension point

It never decides what to click. It only coordinates.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from tabpilot.confidence import ConfidenceZone, zone_of
from tabpilot.config_loader import TabPilotConfig
from tabpilot.decisions import DecisionBoard
from tabpilot.dialogue import DialogueController
from tabpilot.engine import ExecutionEngine, ExecutionOutcome
from tabpilot.errors import PlanningError, SessionBusyError
from tabpilot.event_bus import EventBus
from tabpilot.interfaces import ActionExecutor, Callbacks, PageStateProvider, PlanningService, PlanResponse
from tabpilot.refine import SelfRefineLoop
from tabpilot.state import (
    ClarifyingQuestion,
    MidExecDecision,
    PageState,
    Plan,
    SessionState,
    SessionStatus,
    TERMINAL_STATUSES,
)
from tabpilot.store import SessionStore

CLARIFICATION = "clarification"
ASSUME_ANNOUNCE = "assume_announce"

DEFAULT_QUESTION = ClarifyingQuestion(
    question="Could you provide more details about what you want to do?"
)


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

@dataclass
class SessionHandle:
    """In-memory companion of one running session. Never load-bearing across restarts."""
    session_id: str
    board: DecisionBoard
    task: asyncio.Task | None = None
    stopping: bool = False


class SessionRegistry:

    def __init__(self):
        self._handles: dict[str, SessionHandle] = {}

    def claim(self, session_id: Any) -> SessionHandle:
        key = str(session_id)
        if key in self._handles:
            raise SessionBusyError(f"Session {key} already has a run in flight")
        handle = SessionHandle(session_id=key, board=DecisionBoard(key))
        self._handles[key] = handle
        return handle

    def get(self, session_id: Any) -> SessionHandle | None:
        return self._handles.get(str(session_id))

    def release(self, handle: SessionHandle) -> None:
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]

    def active(self) -> list[str]:
        return sorted(self._handles)


# ---------------------------------------------------------------------------
# Human resolutions
# ---------------------------------------------------------------------------

@dataclass
class ClarificationAnswer:
    answer: str
    selected_option_id: str | None = None


class AnnounceVerdict(str, Enum):
    PROCEED = "proceed"
    CORRECT = "correct"
    CANCEL = "cancel"


@dataclass
class AnnounceResolution:
    verdict: AnnounceVerdict
    correction: str | None = None


class _Entry(str, Enum):
    PLAN = "plan"
    APPROVE = "approve"
    EXECUTE = "execute"


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

class OrchestrationDriver:
    """
    Wires SessionStore, DialogueController, SelfRefineLoop and ExecutionEngine
    into the full task lifecycle.
    """

    def __init__(
        self,
        planner: PlanningService,
        page: PageStateProvider,
        executor: ActionExecutor,
        store: SessionStore | None = None,
        config: TabPilotConfig | None = None,
        callbacks: Callbacks | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or TabPilotConfig()
        self.store = store or SessionStore(
            dialogue=self.config.dialogue,
            max_iterations=self.config.limits.max_iterations,
        )
        self.planner = planner
        self.page = page
        self.callbacks = callbacks or Callbacks()

        self.dialogue = DialogueController(self.store, self.config.dialogue, event_bus)
        self.refine_loop = SelfRefineLoop(self.dialogue, planner, self.config.dialogue, self.callbacks)
        self.engine = ExecutionEngine(self.dialogue, page, executor, self.config, self.callbacks)
        self.registry = SessionRegistry()

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def run(self, session_id: Any, task: str) -> SessionState:
        """Drive `task` on `session_id` until it completes, fails, or is stopped."""
        handle = self.registry.claim(session_id)
        handle.task = asyncio.current_task()
        return await self._run_claimed(handle, task)

    def start(self, session_id: Any, task: str) -> asyncio.Task:
        """Schedule `run` as a background task. The session is claimed immediately."""
        handle = self.registry.claim(session_id)
        handle.task = asyncio.create_task(
            self._run_claimed(handle, task),
            name=f"tabpilot-{handle.session_id}",
        )
        return handle.task

    async def resume(self, session_id: Any) -> SessionState:
        """
        Re-attach to a persisted session after a restart and carry on from
        where its last saved operation left it.
        """
        state = self.dialogue.load(session_id)
        status = state.status

        if status is SessionStatus.IDLE or status in TERMINAL_STATUSES:
            logger.info(f"[DRIVER] {session_id}: nothing to resume ({status.value})")
            return state

        if status in (SessionStatus.EXECUTING, SessionStatus.MID_EXEC_DIALOG):
            entry = _Entry.EXECUTE
        elif status in (SessionStatus.AWAITING_APPROVAL, SessionStatus.ASSUME_ANNOUNCE) and state.current_plan:
            entry = _Entry.APPROVE
        else:
            # planning / replanning / refining / clarifying: ask the planner again
            self.dialogue.transition_to(session_id, SessionStatus.PLANNING)
            entry = _Entry.PLAN

        logger.info(f"[DRIVER] {session_id}: resuming from {status.value}")
        handle = self.registry.claim(session_id)
        handle.task = asyncio.current_task()
        return await self._guarded(handle, entry)

    def stop(self, session_id: Any) -> SessionState:
        """
        Stop from any state. Open decisions are cancelled, the run is
        cancelled at its current suspension point, the session ends idle.

        Called from inside the run itself (a callback), the run is not
        cancelled; it sees `stopping` at its next checkpoint and unwinds.
        """
        handle = self.registry.get(session_id)
        if handle is not None:
            handle.stopping = True
            cancelled = handle.board.cancel_all()
            task = handle.task
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
            logger.info(f"[DRIVER] {session_id}: stopping ({cancelled} pending decisions cancelled)")
        return self.dialogue.stop(session_id)

    def clear_session(self, session_id: Any) -> None:
        """Tear down a session entirely (e.g. its tab closed)."""
        if self.registry.get(session_id) is not None:
            self.stop(session_id)
        self.store.clear(session_id)

    # -----------------------------------------------------------------------
    # Inbound human decisions
    # -----------------------------------------------------------------------

    def answer_clarification(self, session_id: Any, answer: str, selected_option_id: str | None = None) -> bool:
        return self._resolve(session_id, CLARIFICATION, ClarificationAnswer(answer, selected_option_id))

    def correct_assumptions(self, session_id: Any, correction: str) -> bool:
        return self._resolve(session_id, ASSUME_ANNOUNCE, AnnounceResolution(AnnounceVerdict.CORRECT, correction))

    def cancel_assumptions(self, session_id: Any) -> bool:
        return self._resolve(session_id, ASSUME_ANNOUNCE, AnnounceResolution(AnnounceVerdict.CANCEL))

    def decide(self, session_id: Any, decision: MidExecDecision | str) -> bool:
        return self._resolve(session_id, "mid_exec", MidExecDecision(decision))

    def pending(self, session_id: Any) -> list[str]:
        handle = self.registry.get(session_id)
        return handle.board.pending() if handle else []

    def _resolve(self, session_id: Any, kind: str, value: Any) -> bool:
        handle = self.registry.get(session_id)
        if handle is None:
            logger.warning(f"[DRIVER] {session_id}: no active run to receive '{kind}'")
            return False
        return handle.board.resolve(kind, value)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def _run_claimed(self, handle: SessionHandle, task: str) -> SessionState:
        self.dialogue.start_planning(handle.session_id, task)
        return await self._guarded(handle, _Entry.PLAN)

    async def _guarded(self, handle: SessionHandle, entry: _Entry) -> SessionState:
        session_id = handle.session_id
        try:
            await self._drive(handle, entry)
        except asyncio.CancelledError:
            if not handle.stopping:
                # Cancelled from outside: still leave the session idle, then propagate
                handle.board.cancel_all()
                self.dialogue.stop(session_id)
                raise
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            logger.info(f"[DRIVER] {session_id}: run stopped")
        except Exception as e:
            logger.exception(f"[DRIVER] {session_id}: unexpected error")
            await self._fail(session_id, str(e) or type(e).__name__)
        finally:
            handle.board.cancel_all()
            self.registry.release(handle)
        return self.dialogue.load(session_id)

    async def _drive(self, handle: SessionHandle, entry: _Entry) -> None:
        session_id = handle.session_id
        replans = 0

        while True:
            if entry is _Entry.PLAN:
                if not await self._plan_phase(handle):
                    return
            elif entry is _Entry.APPROVE:
                if not await self._approval_phase(handle):
                    return
            if handle.stopping:
                return

            outcome = await self.engine.run(session_id, handle.board)
            if outcome is not ExecutionOutcome.REPLAN:
                logger.info(f"[DRIVER] {session_id}: execution ended — {outcome.value}")
                return

            replans += 1
            if replans > self.config.limits.max_replans:
                await self._fail(session_id, f"Replan limit reached ({self.config.limits.max_replans})")
                return
            logger.info(f"[DRIVER] {session_id}: replanning ({replans}/{self.config.limits.max_replans})")
            entry = _Entry.PLAN

    async def _plan_phase(self, handle: SessionHandle) -> bool:
        """Plan, route and get sign-off. True when execution has been started."""
        session_id = handle.session_id
        dcfg = self.config.dialogue

        while True:
            state = self.dialogue.load(session_id)
            task = state.current_task or ""

            await self.callbacks.notify("on_progress", {
                "session_id": session_id,
                "step": "planning",
                "message": "Analyzing your request...",
            })
            if handle.stopping:
                return False

            page = await self.page.capture()
            try:
                response = await self._get_plan(task, page, state)
            except PlanningError as e:
                await self._fail(session_id, str(e))
                return False

            self.dialogue.set_plan(session_id, response.plan, response.confidence)
            zone = zone_of(response.confidence.overall, dcfg.ask_below, dcfg.proceed_at)
            if not response.understood:
                zone = ConfidenceZone.ASK

            await self.callbacks.notify("on_confidence_report", {
                "session_id": session_id,
                "confidence": response.confidence.model_dump(),
                "zone": zone.value,
                "assumptions": [a.model_dump() for a in response.assumptions],
                "questions": [q.model_dump() for q in response.clarifying_questions],
            })
            logger.info(f"[DRIVER] {session_id}: confidence {response.confidence.overall:.2f} → {zone.value}")
            if handle.stopping:
                return False

            if zone is ConfidenceZone.ASK:
                questions = response.clarifying_questions or [DEFAULT_QUESTION]
                state = self.dialogue.enter_clarifying(session_id, questions)
                if state.status is SessionStatus.CLARIFYING:
                    answer = await self._await_clarification(handle, questions, state.dialogue_state.clarification_round)
                    self.dialogue.record_clarification_answer(session_id, answer.answer, answer.selected_option_id)
                    self.dialogue.transition_to(session_id, SessionStatus.PLANNING)
                    continue
                # Rounds exhausted: best effort with the plan we have

            plan = await self._refine(session_id, response, page, task)
            if handle.stopping:
                return False

            if zone is ConfidenceZone.ASSUME_ANNOUNCE:
                resolution = await self._announce(handle, response, plan)
                if resolution.verdict is AnnounceVerdict.CORRECT:
                    self.dialogue.record_clarification_answer(session_id, resolution.correction or "")
                    self.dialogue.transition_to(session_id, SessionStatus.PLANNING)
                    continue
                if resolution.verdict is AnnounceVerdict.CANCEL:
                    await self._reject(session_id)
                    return False
                self.dialogue.start_execution(session_id)
                return True

            return await self._approval_phase(handle)

    async def _get_plan(self, task: str, page: PageState, state: SessionState) -> PlanResponse:
        try:
            response = await self.planner.get_plan_with_confidence(
                task, page.url, page.elements, state.conversation_history,
            )
        except Exception as e:
            raise PlanningError(f"Planning failed: {e}") from e
        if response.error:
            raise PlanningError(response.error)
        return response

    async def _refine(self, session_id: str, response: PlanResponse, page: PageState, task: str) -> Plan:
        current = self.dialogue.load(session_id).current_plan or response.plan
        outcome = await self.refine_loop.run(session_id, current, response.plan_score, page.elements, task)
        if outcome.plan is not current and not outcome.stopped:
            self.dialogue.set_plan(session_id, outcome.plan, response.confidence)
            return self.dialogue.load(session_id).current_plan
        return current

    async def _approval_phase(self, handle: SessionHandle) -> bool:
        session_id = handle.session_id
        state = self.dialogue.transition_to(session_id, SessionStatus.AWAITING_APPROVAL)
        plan = state.current_plan

        await self.callbacks.notify("on_progress", {
            "session_id": session_id,
            "step": "approval",
            "message": "Waiting for your approval...",
        })
        approved = await self.callbacks.approve({
            "session_id": session_id,
            "summary": plan.summary if plan else "",
            "steps": [s.model_dump() for s in plan.steps] if plan else [],
            "risks": list(plan.risks) if plan else [],
            "estimated_actions": plan.estimated_actions if plan else None,
            "confidence": state.confidence.model_dump(),
        })
        if handle.stopping:
            return False
        if not approved:
            await self._reject(session_id)
            return False

        logger.info(f"[DRIVER] {session_id}: plan approved")
        self.dialogue.start_execution(session_id)
        return True

    # -----------------------------------------------------------------------
    # Dialogues
    # -----------------------------------------------------------------------

    async def _await_clarification(
        self,
        handle: SessionHandle,
        questions: list[ClarifyingQuestion],
        round_number: int,
    ) -> ClarificationAnswer:
        pending = handle.board.open(CLARIFICATION)

        def answer(text: str, selected_option_id: str | None = None) -> bool:
            return pending.resolve(ClarificationAnswer(text, selected_option_id))

        await self.callbacks.notify("on_clarify_needed", {
            "session_id": handle.session_id,
            "questions": [q.model_dump() for q in questions],
            "round": round_number,
            "answer": answer,
        })
        try:
            return await pending.wait()
        finally:
            handle.board.close(CLARIFICATION)

    async def _announce(self, handle: SessionHandle, response: PlanResponse, plan: Plan) -> AnnounceResolution:
        state = self.dialogue.enter_assume_announce(handle.session_id, response.assumptions, plan)
        delay_ms = state.dialogue_state.auto_execute_delay_ms
        pending = handle.board.open(ASSUME_ANNOUNCE)

        def proceed() -> bool:
            return pending.resolve(AnnounceResolution(AnnounceVerdict.PROCEED))

        def correct(text: str) -> bool:
            return pending.resolve(AnnounceResolution(AnnounceVerdict.CORRECT, text))

        def cancel() -> bool:
            return pending.resolve(AnnounceResolution(AnnounceVerdict.CANCEL))

        await self.callbacks.notify("on_assume_announce", {
            "session_id": handle.session_id,
            "assumptions": [a.model_dump() for a in response.assumptions],
            "plan": plan.model_dump(),
            "auto_execute_delay_ms": delay_ms,
            "proceed": proceed,
            "correct": correct,
            "cancel": cancel,
        })
        try:
            resolution = await pending.wait(
                delay_ms / 1000 if delay_ms > 0 else 0,
                default=AnnounceResolution(AnnounceVerdict.PROCEED),
            )
        finally:
            handle.board.close(ASSUME_ANNOUNCE)
        logger.info(f"[DRIVER] {handle.session_id}: assume-announce → {resolution.verdict.value}")
        return resolution

    # -----------------------------------------------------------------------
    # Endings
    # -----------------------------------------------------------------------

    async def _reject(self, session_id: str) -> None:
        logger.info(f"[DRIVER] {session_id}: plan cancelled by user")
        self.dialogue.stop(session_id)
        await self.callbacks.notify("on_error", "Plan cancelled by user")

    async def _fail(self, session_id: str, error: str) -> None:
        self.dialogue.fail(session_id, error)
        await self.callbacks.notify("on_error", error)
