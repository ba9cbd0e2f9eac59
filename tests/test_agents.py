import json

import pytest

from tabpilot.agents import AgentContext, format_elements, load_json, strip_fences
from tabpilot.agents.planner import PlannerAgent
from tabpilot.agents.refiner import RefinerAgent
from tabpilot.planning import LLMPlanningService
from tabpilot.router import RouterResponse
from tabpilot.state import ConversationEntry, PageElement, Plan, PlanStep


class StubRouter:
    def __init__(self, content: str):
        self.content = content
        self.calls: list[dict] = []

    def complete(self, role, messages, **kwargs):
        self.calls.append({"role": role, "messages": messages, **kwargs})
        return RouterResponse(content=self.content, model="stub")


PLAN_JSON = {
    "understood": True,
    "summary": "Submit the contact form",
    "steps": [
        {"action": "type", "targetId": "e2", "value": "hi", "targetDescription": "Message box"},
        {"action": "click", "targetId": "e1", "expectedResult": "Form submitted"},
    ],
    "risks": ["Sends a message"],
    "estimatedActions": 2,
    "confidence": {"overall": 0.72, "intentClarity": 0.9, "targetMatch": 0.8, "valueConfidence": 0.5},
    "assumptions": [{"field": "message", "assumedValue": "hi", "confidence": 0.5}],
    "clarifyingQuestions": ["Which inbox?"],
    "planScore": 0.8,
}


def test_load_json_drops_top_level_nulls():
    assert load_json('{"summary": null, "steps": [{"targetId": null}]}') == {"steps": [{"targetId": None}]}


def test_strip_fences_and_load_json():
    assert load_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert strip_fences("  {}  ") == "{}"
    with pytest.raises(ValueError):
        load_json("[1, 2]")


def test_format_elements_skips_hidden_and_truncates():
    elements = [PageElement(id=f"e{i}", text=f"item {i}", tag="a") for i in range(3)]
    elements.append(PageElement(id="hidden", text="secret", visible=False))

    text = format_elements(elements, limit=2)

    assert '[e0] a "item 0"' in text
    assert "e2" not in text
    assert "2 more elements omitted" in text


def test_planner_parses_camel_case_response():
    router = StubRouter(json.dumps(PLAN_JSON))
    agent = PlannerAgent(router)

    response = agent.run(AgentContext(task="contact them", url="https://x.test"))

    assert response.error is None
    assert response.plan.summary == "Submit the contact form"
    assert response.plan.steps[0] == PlanStep(action="type", target_id="e2", value="hi", target_description="Message box")
    assert response.plan.steps[1].expected_result == "Form submitted"
    assert response.plan.estimated_actions == 2
    assert response.confidence.overall == 0.72
    assert response.confidence.value_confidence == 0.5
    assert response.assumptions[0].assumed_value == "hi"
    assert response.clarifying_questions[0].question == "Which inbox?"
    assert response.plan_score == 0.8
    assert router.calls[0]["role"] == "planner"
    assert router.calls[0]["response_format"] == {"type": "json_object"}


def test_planner_accepts_snake_case_and_nulls():
    reply = {
        "summary": None,
        "steps": [{"action": "click", "target_id": "e1", "expectedResult": "Sent"}],
        "plan_score": 0.6,
        "clarifyingQuestions": None,
    }

    response = PlannerAgent(StubRouter(json.dumps(reply))).run(AgentContext(task="x"))

    assert response.error is None
    assert response.plan.summary == ""
    assert response.plan.steps[0].target_id == "e1"
    assert response.plan.steps[0].expected_result == "Sent"
    assert response.plan_score == 0.6
    assert response.clarifying_questions == []
    # Records keep snake_case once parsed
    assert "target_id" in response.plan.steps[0].model_dump()


def test_planner_prompt_carries_page_and_history():
    router = StubRouter(json.dumps(PLAN_JSON))
    history = [ConversationEntry(role="user", content="use work inbox", timestamp=1.0, message_type="clarification_answer")]

    PlannerAgent(router).run(AgentContext(
        task="contact them",
        url="https://x.test",
        elements=[PageElement(id="e1", text="Send", tag="button")],
        history=history,
    ))

    user_msg = router.calls[0]["messages"][1]["content"]
    assert "https://x.test" in user_msg
    assert '[e1] button "Send"' in user_msg
    assert "user [clarification_answer]: use work inbox" in user_msg


def test_planner_reports_unparseable_response():
    response = PlannerAgent(StubRouter("I think you should click it")).run(AgentContext(task="x"))

    assert response.understood is False
    assert response.error.startswith("Failed to parse plan")


def test_refiner_parses_and_falls_back():
    original = Plan(summary="orig", steps=[PlanStep(action="click")])
    good = StubRouter(json.dumps({
        "plan": {"summary": "better", "steps": [{"action": "click", "targetId": "e1"}]},
        "score": 0.93,
        "improvements": ["Added target"],
    }))

    refined = RefinerAgent(good).run(AgentContext(task="x", plan=original, feedback=["Step 1 has no target"]))

    assert refined.plan.steps[0].target_id == "e1"
    assert refined.score == 0.93
    assert "Step 1 has no target" in good.calls[0]["messages"][1]["content"]

    fallback = RefinerAgent(StubRouter("nope")).run(AgentContext(task="x", plan=original))
    assert fallback.plan == original
    assert fallback.score == 0.0


def test_refiner_shows_the_plan_in_the_reply_schema_casing():
    router = StubRouter(json.dumps({"score": 0.4}))
    original = Plan(summary="orig", steps=[PlanStep(action="click", target_id="e1", target_description="Send")])

    response = RefinerAgent(router).run(AgentContext(task="x", plan=original))

    prompt = router.calls[0]["messages"][1]["content"]
    assert '"targetId": "e1"' in prompt
    assert "target_id" not in prompt
    assert response.plan == original


@pytest.mark.asyncio
async def test_planning_service_runs_agents_off_loop():
    router = StubRouter(json.dumps(PLAN_JSON))
    service = LLMPlanningService(router)

    response = await service.get_plan_with_confidence("contact them", "https://x.test", [], [])

    assert response.confidence.overall == 0.72
    assert router.calls[0]["role"] == "planner"


@pytest.mark.asyncio
async def test_planning_service_refine_uses_refiner_budget():
    router = StubRouter(json.dumps({"plan": {"summary": "s", "steps": []}, "score": 0.5}))
    service = LLMPlanningService(router)

    response = await service.refine(Plan(summary="s"), ["fix"], [], "task")

    assert response.score == 0.5
    assert router.calls[0]["role"] == "refiner"
    assert router.calls[0]["max_tokens"] == 2000
