import pytest

from conftest import make_plan, step
from tabpilot.confidence import ConfidenceZone, zone_of
from tabpilot.errors import InvalidTransitionError
from tabpilot.state import (
    ActionRequest,
    ActionResult,
    Assumption,
    ClarifyingQuestion,
    Confidence,
    MidExecDecision,
    PageState,
    SessionStatus,
)


# ---------------------------------------------------------------------------
# transition_to
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("bad", ["running", "IDLE", "", "done", None, 3])
def test_invalid_status_rejected_without_mutation(dialogue, store, bad):
    dialogue.start_planning("s1", "click submit")
    before = store.backend.read("s1")

    with pytest.raises(InvalidTransitionError, match="Invalid status"):
        dialogue.transition_to("s1", bad)

    assert store.backend.read("s1") == before


def test_transition_merges_updates_and_stamps_time(dialogue):
    dialogue.start_planning("s1", "click submit")
    state = dialogue.transition_to("s1", "error", error="boom")

    assert state.status is SessionStatus.ERROR
    assert state.error == "boom"
    assert state.last_action_time is not None


def test_transition_emits_event(dialogue, event_bus):
    events = []
    event_bus.subscribe(events.append)

    dialogue.transition_to("s1", SessionStatus.PLANNING)

    assert events[-1].event_type == "STATE_TRANSITION"
    assert events[-1].payload == {"status": "planning", "previous": "idle"}


# ---------------------------------------------------------------------------
# Entry operations
# ---------------------------------------------------------------------------

def test_start_planning_resets_and_seeds_history(dialogue):
    dialogue.start_planning("s1", "old task")
    dialogue.set_plan("s1", make_plan())

    state = dialogue.start_planning("s1", "click submit")

    assert state.status is SessionStatus.PLANNING
    assert state.current_task == "click submit"
    assert state.current_plan is None
    assert state.plan_history == []
    assert [(e.role, e.message_type, e.content) for e in state.conversation_history] == [
        ("user", "task", "click submit"),
    ]
    assert state.start_time is not None


def test_fourth_clarification_routes_to_approval(dialogue):
    dialogue.start_planning("s1", "do something")
    for _ in range(3):
        state = dialogue.enter_clarifying("s1", ["Which one?"])
        assert state.status is SessionStatus.CLARIFYING

    state = dialogue.enter_clarifying("s1", ["Which one?"])

    assert state.status is SessionStatus.AWAITING_APPROVAL
    assert state.dialogue_state.clarification_round == 3


def test_clarifying_joins_questions(dialogue):
    dialogue.start_planning("s1", "book a table")
    state = dialogue.enter_clarifying("s1", [
        ClarifyingQuestion(question="Which restaurant?"),
        {"question": "What time?", "options": [{"id": "a", "label": "7pm"}]},
    ])

    entry = state.conversation_history[-1]
    assert (entry.role, entry.message_type) == ("assistant", "clarification")
    assert entry.content == "Which restaurant?\nWhat time?"
    assert len(state.dialogue_state.pending_questions) == 2


def test_assume_announce_stores_plan_and_assumptions(dialogue):
    dialogue.start_planning("s1", "click submit")
    plan = make_plan()

    state = dialogue.enter_assume_announce(
        "s1",
        [{"field": "target", "assumed_value": "Submit button", "confidence": 0.7}],
        plan,
    )

    assert state.status is SessionStatus.ASSUME_ANNOUNCE
    assert state.current_plan.steps == plan.steps
    assert state.dialogue_state.assumptions == [
        Assumption(field="target", assumed_value="Submit button", confidence=0.7),
    ]


def test_enter_refining_increments_without_cap(dialogue):
    dialogue.start_planning("s1", "x")
    for _ in range(5):
        state = dialogue.enter_refining("s1")
    assert state.status is SessionStatus.REFINING
    assert state.dialogue_state.refine_iteration == 5


def test_set_plan_twice_versions_and_history(dialogue):
    dialogue.start_planning("s1", "x")

    first = dialogue.set_plan("s1", make_plan(summary="v1"), Confidence(overall=0.6))
    assert first.current_plan.version == 1
    assert first.plan_history == []

    second = dialogue.set_plan("s1", make_plan(summary="v2"), {"overall": 0.8})
    assert second.current_plan.version == 2
    assert [p.summary for p in second.plan_history] == ["v1"]
    assert second.current_plan.id != first.current_plan.id
    assert second.confidence.overall == 0.8


def test_start_execution_resets_execution_state(dialogue):
    dialogue.start_planning("s1", "x")
    dialogue.set_plan("s1", make_plan(step(), step(target_id="e2"), step(target_id="e3")))

    state = dialogue.start_execution("s1")

    es = state.execution_state
    assert state.status is SessionStatus.EXECUTING
    assert (es.current_step_index, es.total_steps) == (0, 3)
    assert es.completed_steps == [] and es.failed_steps == []


def _executing(dialogue, steps=3):
    dialogue.start_planning("s1", "x")
    dialogue.set_plan("s1", make_plan(*[step(target_id=f"e{i}") for i in range(steps)]))
    return dialogue.start_execution("s1")


def test_skip_advances_by_one(dialogue):
    _executing(dialogue)
    dialogue.enter_mid_exec_dialog("s1", step(), "Element e0 not found")

    state = dialogue.record_mid_exec_decision("s1", "skip")

    assert state.status is SessionStatus.EXECUTING
    assert state.execution_state.current_step_index == 1


def test_retry_keeps_index(dialogue):
    _executing(dialogue)
    dialogue.enter_mid_exec_dialog("s1", step(), "timeout")

    state = dialogue.record_mid_exec_decision("s1", MidExecDecision.RETRY)

    assert state.status is SessionStatus.EXECUTING
    assert state.execution_state.current_step_index == 0


def test_abort_goes_idle_and_replan_goes_replanning(dialogue):
    _executing(dialogue)
    dialogue.enter_mid_exec_dialog("s1", step(), "boom")
    assert dialogue.record_mid_exec_decision("s1", "replan").status is SessionStatus.REPLANNING

    dialogue.enter_mid_exec_dialog("s1", step(), "boom")
    assert dialogue.record_mid_exec_decision("s1", "abort").status is SessionStatus.IDLE


def test_skip_never_runs_past_the_plan(dialogue):
    _executing(dialogue, steps=1)
    dialogue.enter_mid_exec_dialog("s1", step(), "boom")
    dialogue.record_mid_exec_decision("s1", "skip")
    dialogue.enter_mid_exec_dialog("s1", step(), "boom")

    state = dialogue.record_mid_exec_decision("s1", "skip")

    assert state.execution_state.current_step_index == 1


def test_skip_on_an_empty_plan_stays_in_bounds(dialogue):
    dialogue.start_planning("s1", "x")
    dialogue.set_plan("s1", {"steps": []})
    dialogue.start_execution("s1")
    dialogue.enter_mid_exec_dialog("s1", None, "nothing to do")

    state = dialogue.record_mid_exec_decision("s1", "skip")

    es = state.execution_state
    assert (es.current_step_index, es.total_steps) == (0, 0)


def test_failure_report_cannot_revive_a_stopped_session(dialogue):
    _executing(dialogue)
    dialogue.stop("s1")

    with pytest.raises(InvalidTransitionError):
        dialogue.enter_mid_exec_dialog("s1", step(), "Timed out")

    state = dialogue.load("s1")
    assert state.status is SessionStatus.IDLE
    assert state.execution_state.failed_steps == []


def test_unknown_decision_rejected(dialogue):
    _executing(dialogue)
    with pytest.raises(InvalidTransitionError):
        dialogue.record_mid_exec_decision("s1", "later")


def test_failed_step_error_kept_verbatim(dialogue):
    _executing(dialogue)
    error = "Element not found: " + "x" * 5000

    state = dialogue.enter_mid_exec_dialog("s1", step(), error)

    failed = state.execution_state.failed_steps[-1]
    assert failed.error == error
    assert (failed.step_index, failed.retry_count, failed.resolution) == (0, 0, None)


def test_stop_soft_resets_but_keeps_audit_trail(dialogue):
    dialogue.start_planning("s1", "x")
    dialogue.set_plan("s1", make_plan(summary="v1"))
    dialogue.set_plan("s1", make_plan(summary="v2"), Confidence(overall=0.9))
    dialogue.start_execution("s1")

    state = dialogue.stop("s1")

    assert state.status is SessionStatus.IDLE
    assert state.current_task is None
    assert state.current_plan is None
    assert state.confidence == Confidence()
    assert state.execution_state.total_steps == 0
    assert len(state.plan_history) == 1
    assert state.conversation_history[0].content == "x"


# ---------------------------------------------------------------------------
# Execution bookkeeping
# ---------------------------------------------------------------------------

def test_progress_checkpoint_and_action_records(dialogue):
    _executing(dialogue)
    page = PageState(url="https://example.com")

    dialogue.create_checkpoint("s1", page)
    dialogue.record_action("s1", ActionRequest(action="click", target_id="e0"), ActionResult(success=True))
    state = dialogue.update_execution_progress("s1", 0, ActionResult(success=True))

    es = state.execution_state
    assert es.checkpoint.before_step_index == 0
    assert es.checkpoint.page_state.url == "https://example.com"
    assert es.current_step_index == 1
    assert es.completed_steps[0].action.target_id == "e0"
    assert state.iteration == 1
    assert state.action_history[0].success


def test_action_history_is_bounded(dialogue, store):
    _executing(dialogue)
    for i in range(105):
        dialogue.record_action("s1", ActionRequest(action="scroll"), ActionResult(success=True))

    state = store.load("s1")
    assert len(state.action_history) == 100
    assert state.iteration == 105


def test_max_iterations_guard(dialogue, store):
    _executing(dialogue)
    store.update({"iteration": 50}, "s1")
    assert dialogue.has_reached_max_iterations("s1")


def test_summary(dialogue):
    _executing(dialogue)
    dialogue.update_execution_progress("s1", 0, ActionResult(success=True))

    summary = dialogue.summary("s1")

    assert summary["status"] == "executing"
    assert summary["step"] == "1/3"
    assert summary["plan_version"] == 1


def test_history_timestamps_never_go_backwards(dialogue):
    dialogue.start_planning("s1", "x")
    dialogue.enter_clarifying("s1", ["a?"])
    dialogue.record_clarification_answer("s1", "b")
    state = dialogue.enter_clarifying("s1", ["c?"])

    stamps = [e.timestamp for e in state.conversation_history]
    assert stamps == sorted(stamps)


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

def test_sessions_never_observe_each_other(dialogue, store):
    dialogue.start_planning(111, "task one")
    dialogue.start_planning(222, "task two")

    dialogue.enter_clarifying(111, ["Which?"])
    dialogue.set_plan(222, make_plan())
    dialogue.start_execution(222)

    one, two = store.load(111), store.load(222)
    assert (one.status, one.current_task) == (SessionStatus.CLARIFYING, "task one")
    assert (two.status, two.current_task) == (SessionStatus.EXECUTING, "task two")
    assert one.dialogue_state.clarification_round == 1
    assert two.dialogue_state.clarification_round == 0

    dialogue.stop(111)
    assert store.load(222).status is SessionStatus.EXECUTING


def test_fresh_states_share_nothing(store):
    a, b = store.load("a"), store.load("b")
    a.append_message("user", "hello", "task")
    assert b.conversation_history == []


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

def test_scenario_proceed_to_completion(dialogue):
    dialogue.start_planning("s1", "click submit")
    state = dialogue.set_plan("s1", make_plan(), Confidence(overall=0.95))
    assert zone_of(state.confidence.overall) is ConfidenceZone.PROCEED

    dialogue.transition_to("s1", "awaiting_approval")
    dialogue.start_execution("s1")
    dialogue.update_execution_progress("s1", 0, ActionResult(success=True))
    state = dialogue.transition_to("s1", "completed")

    assert state.status is SessionStatus.COMPLETED
    assert len(state.execution_state.completed_steps) == 1


def test_scenario_clarify_then_answer(dialogue):
    dialogue.start_planning("s1", "click it")
    state = dialogue.set_plan("s1", make_plan(), Confidence(overall=0.3))
    assert zone_of(state.confidence.overall) is ConfidenceZone.ASK

    state = dialogue.enter_clarifying("s1", ["Which button?"])
    assert state.status is SessionStatus.CLARIFYING

    state = dialogue.record_clarification_answer("s1", "X", "opt-1")

    assert len(state.dialogue_state.pending_questions) == 0
    last = state.conversation_history[-1]
    assert (last.role, last.message_type, last.content) == ("user", "clarification_answer", "X")
    assert last.selected_option_id == "opt-1"
    assert state.status is SessionStatus.CLARIFYING


def test_scenario_assume_announce_message(dialogue):
    dialogue.start_planning("s1", "click submit")
    state = dialogue.set_plan("s1", make_plan(), Confidence(overall=0.7))
    assert zone_of(state.confidence.overall) is ConfidenceZone.ASSUME_ANNOUNCE

    state = dialogue.enter_assume_announce(
        "s1",
        [Assumption(field="target", assumed_value="Submit button", confidence=0.7)],
        make_plan(),
    )

    assert state.status is SessionStatus.ASSUME_ANNOUNCE
    assert any("target: Submit button" in e.content for e in state.conversation_history)


def test_scenario_three_failures_three_resolutions(dialogue):
    _executing(dialogue)
    decisions = ["retry", "skip", "replan"]

    for i, decision in enumerate(decisions):
        dialogue.enter_mid_exec_dialog("s1", step(), f"failure {i}")
        state = dialogue.record_mid_exec_decision("s1", decision)
        if state.status is SessionStatus.REPLANNING:
            break

    failed = state.execution_state.failed_steps
    assert len(failed) == 3
    assert [f.resolution.value for f in failed] == decisions
    assert [f.error for f in failed] == ["failure 0", "failure 1", "failure 2"]
