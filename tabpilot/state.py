"""
TABPILOT Session State — the persisted working memory of one task session.

Everything the engine needs to resume after a restart lives here.
Every factory returns a brand-new object; nothing is shared between sessions.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tabpilot.config_loader import DialogueConfig


class SessionStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    CLARIFYING = "clarifying"
    REFINING = "refining"
    ASSUME_ANNOUNCE = "assume_announce"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    MID_EXEC_DIALOG = "mid_exec_dialog"
    REPLANNING = "replanning"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = {SessionStatus.COMPLETED, SessionStatus.ERROR}


class MidExecDecision(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    REPLAN = "replan"
    ABORT = "abort"


def now() -> float:
    return time.time()


# ---------------------------------------------------------------------------
# Page + action records
# ---------------------------------------------------------------------------

class PageElement(BaseModel):
    """One interactable element from a page snapshot."""
    id: str
    text: str = ""
    tag: str | None = None
    type: str | None = None
    href: str | None = None
    placeholder: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)  # structural metadata (section, heading, ...)
    visible: bool = True


class PageState(BaseModel):
    url: str = ""
    elements: list[PageElement] = Field(default_factory=list)
    timestamp: float = Field(default_factory=now)


class ActionRequest(BaseModel):
    action: str
    target_id: str | None = None
    value: str | None = None
    amount: int | None = None
    target_description: str | None = None


class ActionResult(BaseModel):
    success: bool
    error: str | None = None
    result: str | None = None


# ---------------------------------------------------------------------------
# Plan + confidence
# ---------------------------------------------------------------------------

# Planner output arrives camelCase; records are built and dumped snake_case
CAMEL_IN = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanStep(BaseModel):
    model_config = CAMEL_IN

    action: str
    target_id: str | None = None
    value: str | None = None
    amount: int | None = None
    target_description: str | None = None
    expected_result: str | None = None

    def to_request(self) -> ActionRequest:
        return ActionRequest(
            action=self.action,
            target_id=self.target_id,
            value=self.value,
            amount=self.amount,
            target_description=self.target_description,
        )


class Plan(BaseModel):
    model_config = CAMEL_IN

    # id/version/created_at are assigned by DialogueController.set_plan
    id: str | None = None
    version: int = 0
    summary: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    estimated_actions: int | None = None
    created_at: float | None = None


class Confidence(BaseModel):
    model_config = CAMEL_IN

    overall: float = 0.0
    intent_clarity: float = 0.0
    target_match: float = 0.0
    value_confidence: float = 0.0


class Assumption(BaseModel):
    model_config = CAMEL_IN

    field: str
    assumed_value: str
    confidence: float = 0.0


class QuestionOption(BaseModel):
    model_config = CAMEL_IN

    id: str
    label: str


class ClarifyingQuestion(BaseModel):
    model_config = CAMEL_IN

    question: str
    options: list[QuestionOption] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Dialogue + execution sub-state
# ---------------------------------------------------------------------------

class ConversationEntry(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: float
    message_type: Literal[
        "task", "clarification", "clarification_answer",
        "assume_announce", "plan", "decision", "system",
    ]
    selected_option_id: str | None = None


class DialogueState(BaseModel):
    clarification_round: int = 0
    max_clarification_rounds: int = 3
    refine_iteration: int = 0
    max_refine_iterations: int = 3
    pending_questions: list[ClarifyingQuestion] = Field(default_factory=list)
    assumptions: list[Assumption] = Field(default_factory=list)
    auto_execute_delay_ms: int = 3000

    @classmethod
    def from_config(cls, config: DialogueConfig | None) -> "DialogueState":
        if config is None:
            return cls()
        return cls(
            max_clarification_rounds=config.max_clarification_rounds,
            max_refine_iterations=config.max_refine_iterations,
            auto_execute_delay_ms=config.auto_execute_delay_ms,
        )


class CompletedStep(BaseModel):
    step_index: int
    action: PlanStep | None = None
    result: ActionResult
    timestamp: float = Field(default_factory=now)


class FailedStep(BaseModel):
    step_index: int
    error: str
    retry_count: int = 0
    resolution: MidExecDecision | None = None
    timestamp: float = Field(default_factory=now)


class Checkpoint(BaseModel):
    before_step_index: int
    page_state: PageState | None = None
    timestamp: float = Field(default_factory=now)


class ExecutionState(BaseModel):
    current_step_index: int = 0
    total_steps: int = 0
    completed_steps: list[CompletedStep] = Field(default_factory=list)
    failed_steps: list[FailedStep] = Field(default_factory=list)
    checkpoint: Checkpoint | None = None


class ActionRecord(BaseModel):
    action: ActionRequest
    success: bool
    error: str | None = None
    timestamp: float = Field(default_factory=now)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

ACTION_HISTORY_LIMIT = 100


class SessionState(BaseModel):
    """
    One record per session key. Mutated only via DialogueController /
    ExecutionEngine operations, each a load → modify → save.
    """

    session_id: str | None = None
    status: SessionStatus = SessionStatus.IDLE
    current_task: str | None = None
    start_time: float | None = None
    last_action_time: float | None = None
    error: str | None = None
    result: str | None = None
    iteration: int = 0
    max_iterations: int = 50
    action_history: list[ActionRecord] = Field(default_factory=list)

    conversation_history: list[ConversationEntry] = Field(default_factory=list)
    dialogue_state: DialogueState = Field(default_factory=DialogueState)
    execution_state: ExecutionState = Field(default_factory=ExecutionState)
    current_plan: Plan | None = None
    plan_history: list[Plan] = Field(default_factory=list)
    confidence: Confidence = Field(default_factory=Confidence)

    @classmethod
    def fresh(
        cls,
        session_id: str | None = None,
        dialogue: DialogueConfig | None = None,
        max_iterations: int = 50,
    ) -> "SessionState":
        return cls(
            session_id=session_id,
            dialogue_state=DialogueState.from_config(dialogue),
            max_iterations=max_iterations,
        )

    def next_timestamp(self) -> float:
        """A timestamp never earlier than the last conversation entry."""
        ts = now()
        if self.conversation_history:
            ts = max(ts, self.conversation_history[-1].timestamp)
        return ts

    def append_message(
        self,
        role: str,
        content: str,
        message_type: str,
        selected_option_id: str | None = None,
    ) -> ConversationEntry:
        entry = ConversationEntry(
            role=role,
            content=content,
            timestamp=self.next_timestamp(),
            message_type=message_type,
            selected_option_id=selected_option_id,
        )
        self.conversation_history.append(entry)
        return entry

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
