import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import model_response
from helpline.intake import IntakeProcessor
from helpline.ledger import PROMPT_EXTRACTION, SEVERITY_CLASSIFICATION
from helpline.session import NOT_PROVIDED
from helpline.state_machine import NO_SPEECH_NOTICE, PROCESSING_APOLOGY, DialogueStateMachine
from helpline.states import IntakeFlow, Stage

FULL_DETAILS = {
    "name": "Alice",
    "department": "Cardiology",
    "issue": "the label printer is jammed",
    "severity": "High",
}


@pytest.fixture
def model():
    m = MagicMock()
    m.request = AsyncMock(return_value=model_response(json.dumps(FULL_DETAILS)))
    return m


def make_intake(registry, model, ledger, gate, scripts, store, flow=IntakeFlow.COLLECT_ALL):
    return IntakeProcessor(
        registry, DialogueStateMachine(flow), model, ledger, gate, scripts, store,
        classify_severity_with_model=True,
    )


@pytest.fixture
def intake(registry, model, ledger, gate, scripts, fake_store):
    return make_intake(registry, model, ledger, gate, scripts, fake_store)


@pytest.fixture
def staged_intake(registry, model, ledger, gate, scripts, fake_store):
    return make_intake(registry, model, ledger, gate, scripts, fake_store, IntakeFlow.STAGED)


def sent_scripts(gate):
    return [c.args[1] for c in gate.update_if_active.await_args_list]


@pytest.mark.asyncio
async def test_start_call_greets_and_registers(intake, registry, fake_store):
    xml = await intake.start_call("CA1", from_number="+15125551234", to_number="+15125550000")
    assert "Clinical Help Desk" in xml
    assert 'action="/process-details"' in xml
    assert "/no-input?stage=collecting_all_details" in xml
    assert (await registry.get("CA1")).stage == Stage.COLLECTING_ALL_DETAILS
    fake_store.insert_call.assert_called_once_with("CA1", "+15125551234", "+15125550000")


@pytest.mark.asyncio
async def test_start_call_twice_keeps_session(intake, registry, fake_store):
    await intake.start_call("CA1")
    await registry.mutate("CA1", lambda s: s.slots.update(name="Alice"))
    xml = await intake.start_call("CA1")
    assert (await registry.get("CA1")).slot("name") == "Alice"
    assert "Clinical Help Desk" not in xml
    fake_store.insert_call.assert_called_once()


@pytest.mark.asyncio
async def test_concurrent_start_calls_insert_once(intake, fake_store):
    await asyncio.gather(intake.start_call("CA1"), intake.start_call("CA1"), intake.start_call("CA1"))
    fake_store.insert_call.assert_called_once()


@pytest.mark.asyncio
async def test_utterance_holds_then_delivers_next_script(intake, registry, ledger, gate, fake_store):
    await intake.start_call("CA1")
    xml = await intake.handle_utterance(
        "CA1", Stage.COLLECTING_ALL_DETAILS, "I'm Alice from Cardiology, the label printer is jammed, it's urgent"
    )
    assert '<Pause length="15"/>' in xml
    assert "/no-input?stage=collecting_all_details" in xml

    await intake.drain()

    session = await registry.get("CA1")
    assert session.stage == Stage.STREAMING
    assert session.slots["name"] == "Alice"
    assert session.slots["severity"] == "High"
    script = sent_scripts(gate)[-1]
    assert '<Stream url="wss://helpline.example.com/media-stream"/>' in script
    assert [e.kind for e in ledger.for_call("CA1")] == [PROMPT_EXTRACTION]
    fake_store.update_slots.assert_called()
    fake_store.mark_stream_started.assert_called_once_with("CA1")


@pytest.mark.asyncio
async def test_partial_answer_reprompts_for_missing(intake, registry, model, gate):
    model.request.return_value = model_response(json.dumps({"name": "Alice", "department": "Cardiology"}))
    await intake.start_call("CA1")
    await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "Alice from cardiology")
    await intake.drain()

    session = await registry.get("CA1")
    assert session.stage == Stage.COLLECTING_MISSING_FIELDS
    assert session.missing_fields == ["issue", "severity"]
    script = sent_scripts(gate)[-1]
    assert 'action="/collect-missing-fields"' in script
    assert "issue and issue severity" in script


@pytest.mark.asyncio
async def test_inactive_call_skips_extraction(intake, registry, model, gate):
    await intake.start_call("CA1")
    gate.is_active.return_value = False
    await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "Alice from cardiology")
    await intake.drain()

    model.request.assert_not_awaited()
    gate.update_if_active.assert_not_awaited()
    assert (await registry.get("CA1")).stage == Stage.COLLECTING_ALL_DETAILS


@pytest.mark.asyncio
async def test_stale_stage_repeats_current_prompt(intake, model):
    await intake.start_call("CA1")
    xml = await intake.handle_utterance("CA1", Stage.COLLECTING_SEVERITY, "high")
    assert 'action="/process-details"' in xml
    await intake.drain()
    model.request.assert_not_awaited()


@pytest.mark.asyncio
async def test_utterance_for_unknown_call_starts_over(intake, registry):
    xml = await intake.handle_utterance("CA9", Stage.COLLECTING_ISSUE, "hello")
    assert "Clinical Help Desk" in xml
    assert "CA9" in registry


@pytest.mark.asyncio
async def test_extraction_failure_is_logged(intake, registry, model, gate, fake_store):
    model.request.side_effect = RuntimeError("socket closed")
    await intake.start_call("CA1")
    await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "Alice")
    await intake.drain()

    fake_store.insert_error_log.assert_called_once_with("CA1", "collecting_all_details", "socket closed")

@pytest.mark.asyncio
async def test_failed_turn_apologizes_without_spending_retries(intake, registry, model, gate):
    model.request.side_effect = RuntimeError("socket closed")
    await intake.start_call("CA1")
    await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "Alice from cardiology")
    await intake.drain()

    script = sent_scripts(gate)[-1]
    assert PROCESSING_APOLOGY in script
    assert 'action="/process-details"' in script
    session = await registry.get("CA1")
    assert session.stage == Stage.COLLECTING_ALL_DETAILS
    assert session.retry_count() == 0
    assert session.no_speech_count() == 0


@pytest.mark.asyncio
async def test_failed_turn_on_ended_call_stays_silent(intake, model, gate):
    model.request.side_effect = RuntimeError("socket closed")
    await intake.start_call("CA1")
    await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "Alice")
    await intake.end_call("CA1")
    await intake.drain()
    gate.update_if_active.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_speech_result_is_no_speech(intake, registry):
    await intake.start_call("CA1")
    xml = await intake.handle_utterance("CA1", Stage.COLLECTING_ALL_DETAILS, "   ")
    assert NO_SPEECH_NOTICE in xml
    assert (await registry.get("CA1")).no_speech_count() == 1


@pytest.mark.asyncio
async def test_staged_flow_captures_issue_verbatim(staged_intake, registry, model, ledger, gate):
    await staged_intake.start_call("CA1")
    await registry.mutate("CA1", lambda s: setattr(s, "stage", Stage.COLLECTING_ISSUE))

    await staged_intake.handle_utterance("CA1", Stage.COLLECTING_ISSUE, "  my badge reader is broken ")
    await staged_intake.drain()

    session = await registry.get("CA1")
    assert session.slot("issue") == "my badge reader is broken"
    assert session.stage == Stage.COLLECTING_SEVERITY
    model.request.assert_not_awaited()
    assert ledger.for_call("CA1") == []
    assert 'action="/process-severity"' in sent_scripts(gate)[-1]


@pytest.mark.asyncio
async def test_staged_flow_classifies_severity(staged_intake, registry, model, ledger):
    model.request.return_value = model_response("Low")
    await staged_intake.start_call("CA1")
    await registry.mutate("CA1", lambda s: setattr(s, "stage", Stage.COLLECTING_SEVERITY))

    await staged_intake.handle_utterance("CA1", Stage.COLLECTING_SEVERITY, "it can wait until tomorrow")
    await staged_intake.drain()

    session = await registry.get("CA1")
    assert session.slot("severity") == "Low"
    assert session.stage == Stage.STREAMING
    assert [e.kind for e in ledger.for_call("CA1")] == [SEVERITY_CLASSIFICATION]


@pytest.mark.asyncio
async def test_scenario_b_silence_on_issue(staged_intake, registry):
    await staged_intake.start_call("CA1")
    await registry.mutate("CA1", lambda s: setattr(s, "stage", Stage.COLLECTING_ISSUE))

    first = await staged_intake.handle_no_speech("CA1", Stage.COLLECTING_ISSUE)
    assert NO_SPEECH_NOTICE in first
    assert 'action="/process-issue"' in first

    second = await staged_intake.handle_no_speech("CA1", Stage.COLLECTING_ISSUE)
    assert 'action="/process-severity"' in second
    session = await registry.get("CA1")
    assert session.stage == Stage.COLLECTING_SEVERITY
    assert session.slot("issue") == NOT_PROVIDED


@pytest.mark.asyncio
async def test_no_speech_on_inactive_call_returns_empty(intake, gate):
    await intake.start_call("CA1")
    gate.is_active.return_value = False
    assert await intake.handle_no_speech("CA1", Stage.COLLECTING_ALL_DETAILS) == "<Response></Response>"


@pytest.mark.asyncio
async def test_no_speech_for_unknown_call_returns_empty(intake):
    assert await intake.handle_no_speech("CA9", Stage.COLLECTING_ALL_DETAILS) == "<Response></Response>"


@pytest.mark.asyncio
async def test_no_speech_hand_off_persists_stream_start(intake, registry, fake_store):
    await intake.start_call("CA1")
    await registry.mutate("CA1", lambda s: s.no_speech_counts.update(collecting_all_details=1))
    xml = await intake.handle_no_speech("CA1", Stage.COLLECTING_ALL_DETAILS)
    assert "<Stream" in xml
    fake_store.mark_stream_started.assert_called_once_with("CA1")


@pytest.mark.asyncio
async def test_end_call_removes_session(intake, registry, fake_store):
    await intake.start_call("CA1")
    session = await intake.end_call("CA1")
    assert session.stage == Stage.ENDED
    assert "CA1" not in registry
    fake_store.mark_ended.assert_called_once_with("CA1")
    assert await intake.end_call("CA1") is None
