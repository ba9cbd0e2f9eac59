"""
TABPILOT Self-Refine Loop

Bounded plan improvement: critique the plan, ask the planner to address the
critique, keep whichever candidate scores best. Stops at the iteration cap or
as soon as a round is good enough, and abandons the rounds left
when the session is stopped from a progress hook.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tabpilot.config_loader import DialogueConfig
from tabpilot.dialogue import DialogueController
from tabpilot.interfaces import Callbacks, PlanningService
from tabpilot.state import PageElement, Plan, SessionStatus

# Actions that legitimately have no element target
NO_TARGET_ACTIONS = {
    "scroll", "wait", "navigate", "go_back", "go_forward",
    "refresh", "done", "screenshot",
}

RISKY_ACTIONS = {
    "delete", "remove", "submit", "purchase", "buy", "pay",
    "checkout", "send", "publish", "post", "transfer",
}


def build_feedback(plan: Plan) -> list[str]:
    """Structured critique of a plan. An empty list means nothing to fix."""
    feedback: list[str] = []

    if not plan.steps:
        feedback.append("The plan has no steps. Add at least one concrete action.")
        return feedback

    risks_text = " ".join(plan.risks).lower()
    for i, step in enumerate(plan.steps, start=1):
        action = step.action.lower()
        if action not in NO_TARGET_ACTIONS and not step.target_id:
            feedback.append(
                f"Step {i} ({step.action}) has no target element id. "
                "Pick a concrete element from the page."
            )
        risky = next((r for r in RISKY_ACTIONS if r in action), None)
        if risky and risky not in risks_text:
            feedback.append(
                f"Step {i} performs a risk-sensitive '{step.action}' action "
                "that is not listed under risks."
            )

    return feedback


@dataclass
class RefineOutcome:
    plan: Plan
    score: float
    iterations: int = 0
    improvements: list[str] = field(default_factory=list)
    stopped: bool = False


class SelfRefineLoop:

    def __init__(
        self,
        dialogue: DialogueController,
        planner: PlanningService,
        config: DialogueConfig | None = None,
        callbacks: Callbacks | None = None,
    ):
        self.dialogue = dialogue
        self.planner = planner
        self.config = config or dialogue.config
        self.callbacks = callbacks or Callbacks()

    async def run(
        self,
        session_id: Any,
        plan: Plan,
        score: float,
        elements: list[PageElement],
        task: str,
    ) -> RefineOutcome:
        good_enough = self.config.refine_good_enough
        best = RefineOutcome(plan=plan, score=score)

        if score >= good_enough:
            logger.debug(f"[REFINE] {session_id}: score {score:.2f} already good enough — skipping")
            return best

        max_iterations = self.dialogue.load(session_id).dialogue_state.max_refine_iterations
        current = plan

        for iteration in range(1, max_iterations + 1):
            self.dialogue.enter_refining(session_id)
            feedback = build_feedback(current)
            logger.info(
                f"[REFINE] {session_id}: iteration {iteration}/{max_iterations} — "
                f"{len(feedback)} feedback items, best={best.score:.2f}"
            )

            try:
                response = await self.planner.refine(current, feedback, elements, task)
            except Exception as e:
                # Refinement is an optimisation; keep what we have
                logger.warning(f"[REFINE] {session_id}: refine call failed, keeping best plan: {e}")
                break

            best.iterations = iteration
            best.improvements.extend(response.improvements)
            if response.score > best.score:
                best.plan, best.score = response.plan, response.score
            current = response.plan

            await self.callbacks.notify("on_self_refine_progress", {
                "session_id": str(session_id),
                "iteration": iteration,
                "max_iterations": max_iterations,
                "score": response.score,
                "best_score": best.score,
                "improvements": response.improvements,
            })
            status = self.dialogue.load(session_id).status
            if status is not SessionStatus.REFINING:
                logger.info(f"[REFINE] {session_id}: status is {status.value}, abandoning refinement")
                best.stopped = True
                break

            if response.score >= good_enough:
                logger.info(f"[REFINE] {session_id}: score {response.score:.2f} — good enough, stopping")
                break

        return best
