import logging
from dataclasses import dataclass

from helpline.extraction import SlotExtractionResult
from helpline.session import NOT_PROVIDED, UNKNOWN, CallSession
from helpline.states import IntakeFlow, Stage
from helpline.validation import DEFAULT_SEVERITY

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
NO_SPEECH_RETRIES = 1


@dataclass
class Action:
    """What to say next. ``stage`` is the stage the caller's next answer belongs to."""

    stage: Stage
    speak: str = ""
    prompt: str = ""
    start_stream: bool = False
    end_call: bool = False


STAGE_FIELDS = {
    Stage.COLLECTING_IDENTITY: ("name", "department"),
    Stage.COLLECTING_ISSUE: ("issue",),
    Stage.COLLECTING_SEVERITY: ("severity",),
    Stage.COLLECTING_ALL_DETAILS: ("name", "department", "issue", "severity"),
}

NEXT_STAGE = {
    Stage.COLLECTING_IDENTITY: Stage.COLLECTING_ISSUE,
    Stage.COLLECTING_ISSUE: Stage.COLLECTING_SEVERITY,
    Stage.COLLECTING_SEVERITY: Stage.STREAMING,
    Stage.COLLECTING_ALL_DETAILS: Stage.STREAMING,
    Stage.COLLECTING_MISSING_FIELDS: Stage.STREAMING,
}

FIRST_STAGE = {
    IntakeFlow.COLLECT_ALL: Stage.COLLECTING_ALL_DETAILS,
    IntakeFlow.STAGED: Stage.COLLECTING_IDENTITY,
}

GREETING = "Hello and welcome to the Clinical Help Desk. I'm your automated support assistant."

STAGE_PROMPTS = {
    Stage.COLLECTING_ALL_DETAILS: (
        "Please provide your name, role and department. "
        "What is the issue you're experiencing and what is the severity of this issue?"
    ),
    Stage.COLLECTING_IDENTITY: "Please provide your name and department.",
    Stage.COLLECTING_ISSUE: "Please describe the issue you're experiencing.",
    Stage.COLLECTING_SEVERITY: "Please tell me the severity of this issue. Is it high, medium, or low?",
}

ADVANCE_ACKS = {
    Stage.COLLECTING_IDENTITY: "Thank you. I've got that information.",
    Stage.COLLECTING_ISSUE: "Thank you for describing your issue.",
}

NO_SPEECH_NOTICE = "I didn't hear your response."
PROCESSING_APOLOGY = "I'm sorry, I had trouble processing that."
STREAMING_HANDOFF = "Thank you for the information. Connecting you with our AI assistant now."

FIELD_LABELS = {
    "name": "name",
    "department": "department",
    "issue": "issue",
    "severity": "issue severity",
}


def describe_fields(fields) -> str:
    labels = [FIELD_LABELS.get(f, f) for f in fields]
    if len(labels) <= 1:
        return "".join(labels)
    return ", ".join(labels[:-1]) + " and " + labels[-1]


def missing_prompt(fields) -> str:
    return f"Please tell me your {describe_fields(fields)}."


def _transition(session: CallSession, new_stage: Stage):
    logger.info(f"[{session.call_id}] {session.stage.value} -> {new_stage.value}")
    session.stage = new_stage
    session.missing_fields = []


class DialogueStateMachine:
    """Intake sequencing with bounded retries.

    Every method mutates the ``CallSession`` it is given and returns the
    ``Action`` describing the script to emit. Nothing here awaits; callers run
    these methods inside ``SessionRegistry.mutate`` so that each transition is
    atomic for its call.
    """

    def __init__(self, flow: IntakeFlow = IntakeFlow.COLLECT_ALL):
        self.flow = flow

    def start(self, session: CallSession) -> Action:
        stage = FIRST_STAGE[self.flow]
        _transition(session, stage)
        return Action(stage=stage, speak=GREETING, prompt=STAGE_PROMPTS[stage])

    def fields_for(self, session: CallSession) -> tuple:
        if session.stage == Stage.COLLECTING_MISSING_FIELDS:
            return tuple(session.missing_fields)
        return STAGE_FIELDS.get(session.stage, ())

    def prompt_for(self, session: CallSession) -> str:
        if session.stage == Stage.COLLECTING_MISSING_FIELDS:
            return missing_prompt(session.missing_fields)
        return STAGE_PROMPTS.get(session.stage, "")

    def current(self, session: CallSession) -> Action:
        """Repeat the open prompt without consuming any retry budget."""
        if session.stage == Stage.STREAMING:
            return Action(stage=Stage.STREAMING)
        if session.stage == Stage.ENDED:
            return Action(stage=Stage.ENDED, end_call=True)
        return Action(stage=session.stage, prompt=self.prompt_for(session))

    # ── Utterance path ──

    def process_extraction(self, session: CallSession, result: SlotExtractionResult) -> Action:
        if not session.stage.is_intake:
            logger.warning(f"[{session.call_id}] extraction ignored in {session.stage.value}")
            return self.current(session)

        for name, value in result.slots.items():
            if value != NOT_PROVIDED and session.slots.get(name, NOT_PROVIDED) == NOT_PROVIDED:
                session.slots[name] = value

        required = self.fields_for(session)
        missing = [f for f in required if session.slots.get(f, NOT_PROVIDED) == NOT_PROVIDED]
        if not missing:
            return self._advance(session)

        if self.flow == IntakeFlow.COLLECT_ALL and session.stage == Stage.COLLECTING_ALL_DETAILS:
            # The missing-fields stage owns the retry budget for the whole intake
            _transition(session, Stage.COLLECTING_MISSING_FIELDS)

        count = session.retry_count()
        if count < MAX_RETRIES:
            session.retry_counts[session.stage.value] = count + 1
            session.missing_fields = missing
            logger.info(
                f"[{session.stage.value}] missing {missing}, re-prompting (retry {count + 1}/{MAX_RETRIES})"
            )
            lead = (
                f"I need more information about your {describe_fields(missing)}."
                if count == 0
                else f"I still need your {describe_fields(missing)}."
            )
            return Action(stage=session.stage, speak=lead, prompt=missing_prompt(missing))

        logger.warning(f"[{session.stage.value}] retries exhausted, filling {missing}")
        for name in missing:
            session.slots[name] = DEFAULT_SEVERITY if name == "severity" else UNKNOWN
        return self._advance(session)

    # ── No-speech path ──

    def process_no_speech(self, session: CallSession) -> Action:
        if not session.stage.is_intake:
            return self.current(session)

        silent = session.no_speech_count()
        count = session.retry_count()
        if silent < NO_SPEECH_RETRIES and count < MAX_RETRIES:
            session.no_speech_counts[session.stage.value] = silent + 1
            session.retry_counts[session.stage.value] = count + 1
            logger.info(f"[{session.stage.value}] no speech, re-prompting")
            return Action(stage=session.stage, speak=NO_SPEECH_NOTICE, prompt=self.prompt_for(session))

        logger.info(f"[{session.stage.value}] no speech after re-prompt, moving on")
        return self._advance(session, acknowledge=False)

    # ── Transitions ──

    def _advance(self, session: CallSession, acknowledge: bool = True) -> Action:
        ack = ADVANCE_ACKS.get(session.stage, "") if acknowledge else ""
        next_stage = NEXT_STAGE[session.stage]
        if next_stage == Stage.STREAMING:
            return self.enter_streaming(session)
        _transition(session, next_stage)
        return Action(stage=next_stage, speak=ack, prompt=STAGE_PROMPTS[next_stage])

    def enter_streaming(self, session: CallSession) -> Action:
        _transition(session, Stage.STREAMING)
        session.first_interaction_done = False
        session.in_flight = False
        return Action(stage=Stage.STREAMING, speak=STREAMING_HANDOFF, start_stream=True)

    def end(self, session: CallSession) -> Action:
        if session.stage != Stage.ENDED:
            _transition(session, Stage.ENDED)
        return Action(stage=Stage.ENDED, end_call=True)
