"""
The Refiner — rewrites a plan to address structured feedback and scores
the result.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import ValidationError

from tabpilot.agents import AgentContext, BaseAgent, format_elements, load_json
from tabpilot.interfaces import RefineResponse
from tabpilot.router import RouterResponse
from tabpilot.state import Plan


def _plan_json(plan: Plan) -> str:
    return plan.model_dump_json(
        indent=2,
        include={"summary", "steps", "risks", "estimated_actions"},
        exclude_none=True,
        by_alias=True,
    )


class RefinerAgent(BaseAgent):
    role = "refiner"

    system_prompt = """You are the plan reviewer inside TABPILOT, a browser automation agent.

You receive a plan, a list of problems found in it, and the current page
elements. Fix every problem you can without changing what the plan is for.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.

Output schema:
{
  "plan": {
    "summary": "...",
    "steps": [{"action": "...", "targetId": "...", "value": "...", "targetDescription": "...", "expectedResult": "..."}],
    "risks": ["..."],
    "estimatedActions": 1
  },
  "score": 0.0-1.0,
  "improvements": ["What you changed and why"]
}

Rules:
- Only use targetId values that appear in the element list.
- score is your honest estimate that the refined plan completes the task.
- If nothing can be improved, return the plan unchanged with the same score.
"""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        feedback = "\n".join(f"- {f}" for f in context.feedback) or "- No specific problems; tighten the plan."
        user_content = f"""Task: {context.task}

Current plan:
{_plan_json(context.plan) if context.plan else '{}'}

Problems to address:
{feedback}

Interactable elements:
{format_elements(context.elements)}

Return the refined plan as JSON."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> RefineResponse:
        original = context.plan or Plan()
        try:
            result = RefineResponse.model_validate({"plan": original, **load_json(response.content)})
        except (json.JSONDecodeError, ValidationError, ValueError, TypeError) as e:
            # Fall back to the original plan; the loop keeps whichever scores best
            logger.error(f"[REFINER] Failed to parse refinement JSON: {e}")
            return RefineResponse(plan=original, score=0.0, improvements=[])

        logger.info(f"[REFINER] score={result.score:.2f}, {len(result.improvements)} improvements")
        return result
