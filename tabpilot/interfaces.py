"""
Contracts for the collaborators TABPILOT drives but does not implement:
page inspection, action execution, planning, and presentation.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, fields
from typing import Any, Callable, Protocol, runtime_checkable

from loguru import logger
from pydantic import BaseModel, Field

from tabpilot.state import (
    ActionRequest,
    ActionResult,
    Assumption,
    ClarifyingQuestion,
    Confidence,
    ConversationEntry,
    PageElement,
    PageState,
    Plan,
)


# ---------------------------------------------------------------------------
# Planner wire records
# ---------------------------------------------------------------------------

class PlanResponse(BaseModel):
    plan: Plan = Field(default_factory=Plan)
    confidence: Confidence = Field(default_factory=Confidence)
    assumptions: list[Assumption] = Field(default_factory=list)
    clarifying_questions: list[ClarifyingQuestion] = Field(default_factory=list)
    plan_score: float = 0.0
    understood: bool = True
    error: str | None = None


class RefineResponse(BaseModel):
    plan: Plan
    score: float = 0.0
    improvements: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@runtime_checkable
class PageStateProvider(Protocol):
    async def capture(self) -> PageState: ...


@runtime_checkable
class ActionExecutor(Protocol):
    async def execute(self, action: ActionRequest) -> ActionResult: ...


@runtime_checkable
class PlanningService(Protocol):
    async def get_plan_with_confidence(
        self,
        task: str,
        url: str,
        elements: list[PageElement],
        history: list[ConversationEntry],
    ) -> PlanResponse: ...

    async def refine(
        self,
        plan: Plan,
        feedback: list[str],
        elements: list[PageElement],
        task: str,
    ) -> RefineResponse: ...


# ---------------------------------------------------------------------------
# Presentation callbacks
# ---------------------------------------------------------------------------

Callback = Callable[..., Any]


@dataclass
class Callbacks:
    """
    Fire-and-observe hooks for whatever renders the dialogue.

    Each may be sync or async. Only `on_plan_ready` is load-bearing: it must
    return (or resolve to) a bool approval. The other hooks' return values
    are ignored and their exceptions are logged, never propagated.
    """
    on_progress: Callback | None = None
    on_plan_ready: Callback | None = None
    on_clarify_needed: Callback | None = None
    on_assume_announce: Callback | None = None
    on_mid_exec_dialog: Callback | None = None
    on_self_refine_progress: Callback | None = None
    on_confidence_report: Callback | None = None
    on_action_started: Callback | None = None
    on_action: Callback | None = None
    on_complete: Callback | None = None
    on_error: Callback | None = None

    async def notify(self, name: str, *args: Any) -> None:
        hook = getattr(self, name)
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[CALLBACK] {name} raised: {e}")

    async def approve(self, payload: dict[str, Any]) -> bool:
        """Ask for plan approval. No hook means approved; a raising hook means rejected."""
        if self.on_plan_ready is None:
            return True
        try:
            result = self.on_plan_ready(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(f"[CALLBACK] on_plan_ready raised, treating as rejection: {e}")
            return False
        return bool(result)

    @classmethod
    def names(cls) -> list[str]:
        return [f.name for f in fields(cls)]
