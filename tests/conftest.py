from __future__ import annotations

from typing import Any

import pytest

from tabpilot.config_loader import DialogueConfig, LimitsConfig, TabPilotConfig
from tabpilot.dialogue import DialogueController
from tabpilot.event_bus import EventBus
from tabpilot.interfaces import Callbacks, PlanResponse, RefineResponse
from tabpilot.state import (
    ActionRequest,
    ActionResult,
    Confidence,
    PageElement,
    PageState,
    Plan,
    PlanStep,
)
from tabpilot.store import SessionStore


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def step(action: str = "click", target_id: str | None = "e1", **kwargs: Any) -> PlanStep:
    return PlanStep(action=action, target_id=target_id, **kwargs)


def make_plan(*steps: PlanStep, summary: str = "Click submit", risks: list[str] | None = None) -> Plan:
    return Plan(summary=summary, steps=list(steps) or [step()], risks=risks or [])


def plan_response(overall: float, plan: Plan | None = None, **kwargs: Any) -> PlanResponse:
    return PlanResponse(
        plan=plan or make_plan(),
        confidence=Confidence(overall=overall, intent_clarity=overall, target_match=overall, value_confidence=overall),
        plan_score=kwargs.pop("plan_score", 0.95),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakePage:
    def __init__(self, elements: list[PageElement] | None = None, url: str = "https://example.com"):
        self.url = url
        self.elements = elements if elements is not None else [
            PageElement(id="e1", text="Submit form", tag="button"),
        ]
        self.captures = 0

    async def capture(self) -> PageState:
        self.captures += 1
        return PageState(url=self.url, elements=list(self.elements))


class FakeExecutor:
    """Replays queued results (or raises queued exceptions); succeeds once the queue is empty."""

    def __init__(self, results: list[ActionResult | Exception] | None = None):
        self.results = list(results or [])
        self.calls: list[ActionRequest] = []

    async def execute(self, action: ActionRequest) -> ActionResult:
        self.calls.append(action)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ActionResult(success=True)


class FakePlanner:
    """Queued plan responses; the last one repeats once the queue is down to one."""

    def __init__(
        self,
        responses: list[PlanResponse | Exception] | None = None,
        refinements: list[RefineResponse | Exception] | None = None,
    ):
        self.responses = list(responses or [plan_response(0.95)])
        self.refinements = list(refinements or [])
        self.plan_calls: list[dict[str, Any]] = []
        self.refine_calls: list[dict[str, Any]] = []

    async def get_plan_with_confidence(self, task, url, elements, history) -> PlanResponse:
        self.plan_calls.append({"task": task, "url": url, "history": list(history)})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def refine(self, plan, feedback, elements, task) -> RefineResponse:
        self.refine_calls.append({"plan": plan, "feedback": list(feedback), "task": task})
        if not self.refinements:
            return RefineResponse(plan=plan, score=0.0)
        response = self.refinements.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class Recorder:
    """Records every callback invocation by name."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def hook(self, name: str, returns: Any = None):
        def _hook(*args):
            self.calls.append((name, args))
            return returns
        return _hook

    def callbacks(self, approve: bool = True, **overrides: Any) -> Callbacks:
        hooks = {name: self.hook(name) for name in Callbacks.names()}
        hooks["on_plan_ready"] = self.hook("on_plan_ready", returns=approve)
        for name, fn in overrides.items():
            def _wrapped(*args, _name=name, _fn=fn):
                self.calls.append((_name, args))
                return _fn(*args)
            hooks[name] = _wrapped
        return Callbacks(**hooks)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def args(self, name: str) -> list[tuple]:
        return [args for n, args in self.calls if n == name]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> TabPilotConfig:
    return TabPilotConfig(
        dialogue=DialogueConfig(auto_execute_delay_ms=50, mid_exec_timeout_ms=200),
        limits=LimitsConfig(action_delay_ms=0),
    )


@pytest.fixture
def store(config) -> SessionStore:
    return SessionStore(dialogue=config.dialogue, max_iterations=config.limits.max_iterations)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def dialogue(store, config, event_bus) -> DialogueController:
    return DialogueController(store, config.dialogue, event_bus)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
