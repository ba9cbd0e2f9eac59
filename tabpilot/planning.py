"""LiteLLM-backed PlanningService built on the planner and refiner agents."""

from __future__ import annotations

import asyncio

from tabpilot.agents import AgentContext
from tabpilot.agents.planner import PlannerAgent
from tabpilot.agents.refiner import RefinerAgent
from tabpilot.interfaces import PlanResponse, RefineResponse
from tabpilot.router import Router
from tabpilot.state import ConversationEntry, PageElement, Plan


class LLMPlanningService:
    """
    Runs the (blocking) LiteLLM calls in a worker thread so the event loop
    keeps servicing other sessions while a model is thinking.
    """

    def __init__(self, router: Router):
        self.router = router
        self.planner = PlannerAgent(router)
        self.refiner = RefinerAgent(router)

    async def get_plan_with_confidence(
        self,
        task: str,
        url: str,
        elements: list[PageElement],
        history: list[ConversationEntry],
    ) -> PlanResponse:
        context = AgentContext(task=task, url=url, elements=elements, history=history)
        return await asyncio.to_thread(self.planner.run, context)

    async def refine(
        self,
        plan: Plan,
        feedback: list[str],
        elements: list[PageElement],
        task: str,
    ) -> RefineResponse:
        context = AgentContext(task=task, elements=elements, plan=plan, feedback=feedback)
        return await asyncio.to_thread(self.refiner.run, context, max_tokens=2000)
