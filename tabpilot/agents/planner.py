"""
The Planner — turns a task plus a page snapshot into a plan with an
honest confidence breakdown, the assumptions behind it, and the questions
it would ask if it could.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from tabpilot.agents import AgentContext, BaseAgent, format_elements, format_history, load_json
from tabpilot.interfaces import PlanResponse
from tabpilot.router import RouterResponse
from tabpilot.state import CAMEL_IN, Assumption, ClarifyingQuestion, Confidence, Plan, PlanStep


class PlannerReply(BaseModel):
    """The planner's JSON as written: camelCase, plan fields at the top level."""
    model_config = CAMEL_IN

    understood: bool = True
    summary: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    estimated_actions: int | None = None
    confidence: Confidence = Field(default_factory=Confidence)
    assumptions: list[Assumption] = Field(default_factory=list)
    clarifying_questions: list[ClarifyingQuestion | str] = Field(default_factory=list)
    plan_score: float = 0.0

    def to_response(self) -> PlanResponse:
        return PlanResponse(
            plan=Plan(
                summary=self.summary,
                steps=self.steps,
                risks=self.risks,
                estimated_actions=self.estimated_actions,
            ),
            confidence=self.confidence,
            assumptions=self.assumptions,
            clarifying_questions=[
                ClarifyingQuestion(question=q) if isinstance(q, str) else q
                for q in self.clarifying_questions
            ],
            plan_score=self.plan_score,
            understood=self.understood,
        )


class PlannerAgent(BaseAgent):
    role = "planner"

    system_prompt = """You are the planning engine inside TABPILOT, a browser automation agent.

Given a task and the interactable elements of the current page, produce a plan
and rate how confident you are that the plan does what the user meant.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

Output schema:
{
  "understood": true,
  "summary": "One sentence describing what the plan does",
  "steps": [
    {
      "action": "click|type|scroll|select|wait|navigate",
      "targetId": "ai-target-3",
      "value": "text to type, option to select, or URL",
      "targetDescription": "Human description of the element",
      "expectedResult": "What should happen after this step"
    }
  ],
  "risks": ["Irreversible or sensitive effects of the plan"],
  "estimatedActions": 1,
  "confidence": {
    "overall": 0.0-1.0,
    "intentClarity": 0.0-1.0,
    "targetMatch": 0.0-1.0,
    "valueConfidence": 0.0-1.0
  },
  "assumptions": [
    {"field": "target", "assumedValue": "Submit button", "confidence": 0.7}
  ],
  "clarifyingQuestions": [
    {"question": "Which account?", "options": [{"id": "a", "label": "Work"}]}
  ],
  "planScore": 0.0-1.0
}

Rules:
- Only use targetId values that appear in the element list.
- intentClarity: how unambiguous the request is.
- targetMatch: elements found / elements needed.
- valueConfidence: values stated explicitly / values needed.
- overall is a weighted average; do not inflate it.
- List every assumption you made about something the user did not say.
- Ask clarifying questions only when overall is below 0.5.
- Anything that deletes, submits, purchases, sends or publishes is a risk.
- Use the conversation history: answers there override your assumptions.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Task: {context.task}

Current URL: {context.url or 'unknown'}

Interactable elements:
{format_elements(context.elements)}

Conversation so far:
{format_history(context.history)}

Produce your plan as JSON."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> PlanResponse:
        try:
            result = PlannerReply.model_validate(load_json(response.content)).to_response()
        except (json.JSONDecodeError, ValidationError, ValueError, TypeError) as e:
            logger.error(f"[PLANNER] Failed to parse/validate plan JSON: {e}")
            logger.debug(f"[PLANNER] Raw response: {response.content[:500]}")
            return PlanResponse(understood=False, error=f"Failed to parse plan: {e}")

        logger.info(
            f"[PLANNER] Plan ready — "
            f"{len(result.plan.steps)} steps, "
            f"confidence={result.confidence.overall:.2f}, "
            f"assumptions={len(result.assumptions)}, "
            f"questions={len(result.clarifying_questions)}"
        )
        return result
