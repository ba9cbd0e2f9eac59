"""
TABPILOT Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A constrained output schema

Agents are stateless between runs. State lives in the SessionStore.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from tabpilot.router import Router, RouterResponse
from tabpilot.state import ConversationEntry, PageElement, Plan

MAX_PROMPT_ELEMENTS = 150


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    task: str
    url: str = ""
    elements: list[PageElement] = []
    history: list[ConversationEntry] = []
    plan: Plan | None = None
    feedback: list[str] = []


class BaseAgent(ABC):
    """
    Base class for TABPILOT agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — contract for the model
      - build_messages() — constructs the chat messages
      - parse_response() — extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    def run(self, context: AgentContext, **kwargs) -> Any:
        """Execute the agent: build messages → call model → parse."""
        kwargs.setdefault("response_format", {"type": "json_object"})
        messages = self.build_messages(context)
        response = self.router.complete(role=self.role, messages=messages, **kwargs)
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> Any:
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# Shared prompt/response helpers
# ---------------------------------------------------------------------------

def format_elements(elements: list[PageElement], limit: int = MAX_PROMPT_ELEMENTS) -> str:
    lines = []
    for el in elements[:limit]:
        if not el.visible:
            continue
        parts = [f"[{el.id}]", el.tag or el.type or "element"]
        if el.text:
            parts.append(f'"{el.text[:80]}"')
        if el.placeholder:
            parts.append(f"placeholder={el.placeholder!r}")
        if el.href:
            parts.append(f"href={el.href}")
        lines.append(" ".join(parts))
    if len(elements) > limit:
        lines.append(f"... {len(elements) - limit} more elements omitted")
    return "\n".join(lines) or "(no interactable elements)"


def format_history(history: list[ConversationEntry]) -> str:
    if not history:
        return "(none)"
    return "\n".join(f"{h.role} [{h.message_type}]: {h.content}" for h in history)


def strip_fences(content: str) -> str:
    """Strip markdown code fences if the model ignored JSON mode."""
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```") and not l.strip().lower() == "json"]
        content = "\n".join(lines)
    return content


def load_json(content: str) -> dict[str, Any]:
    """Parse a JSON object reply. Top-level nulls are dropped so record defaults apply."""
    data = json.loads(strip_fences(content))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return {k: v for k, v in data.items() if v is not None}
