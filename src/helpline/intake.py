import asyncio
import logging

from helpline.errors import SessionNotFound
from helpline.extraction import capture_issue, classify_severity, extract_slots
from helpline.gateway import ModelGateway
from helpline.ledger import PROMPT_EXTRACTION, SEVERITY_CLASSIFICATION, CostLedger
from helpline.liveness import LivenessGate
from helpline.registry import SessionRegistry
from helpline.session import CallSession
from helpline.state_machine import PROCESSING_APOLOGY, DialogueStateMachine
from helpline.states import Stage
from helpline.twiml import VoiceScripts

logger = logging.getLogger(__name__)


class IntakeProcessor:
    """Drives the dialogue state machine from telephony webhooks.

    A captured utterance is answered straight away with a hold script; the
    extraction runs as a background task and the resulting script reaches
    the caller through the liveness gate.  Silence is cheap to decide, so the
    no-input webhook answers in-line once the call is confirmed active.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        machine: DialogueStateMachine,
        gateway: ModelGateway,
        ledger: CostLedger,
        gate: LivenessGate,
        scripts: VoiceScripts,
        store=None,
        *,
        classify_severity_with_model: bool = True,
        model: str | None = None,
        timeout: float | None = 5.0,
    ):
        self.registry = registry
        self.machine = machine
        self.gateway = gateway
        self.ledger = ledger
        self.gate = gate
        self.scripts = scripts
        self.store = store
        self.classify_severity_with_model = classify_severity_with_model
        self.model = model
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _persist(self, call_id: str, slots: dict | None, start_stream: bool) -> None:
        if self.store is None:
            return
        if slots:
            self.store.spawn(self.store.update_slots(call_id, slots), "Slot update")
        if start_stream:
            self.store.spawn(self.store.mark_stream_started(call_id), "Stream start update")

    # ── Lifecycle ──

    async def start_call(self, call_id: str, from_number: str = "", to_number: str = "") -> str:
        """Register the call and return the greeting script."""
        _, created = await self.registry.register(call_id, from_number=from_number, to_number=to_number)

        def begin(session: CallSession):
            if session.stage == Stage.GREETING:
                return self.machine.start(session)
            return self.machine.current(session)

        action = await self.registry.mutate(call_id, begin)
        if created and self.store is not None:
            self.store.spawn(self.store.insert_call(call_id, from_number, to_number), "Call insert")
        logger.info(f"Call started: {call_id} from {from_number}")
        return self.scripts.render(action)

    async def end_call(self, call_id: str) -> CallSession | None:
        try:
            await self.registry.mutate(call_id, self.machine.end)
        except SessionNotFound:
            return None
        session = await self.registry.remove(call_id)
        if self.store is not None:
            self.store.spawn(self.store.mark_ended(call_id), "Call end update")
        logger.info(f"Call ended: {call_id}")
        return session

    # ── Webhook turns ──

    async def handle_utterance(self, call_id: str, stage: Stage, text: str) -> str:
        session = await self.registry.get(call_id)
        if session is None:
            logger.warning(f"Utterance for unknown call {call_id}, starting over")
            return await self.start_call(call_id)
        if session.stage != stage:
            logger.info(f"[{call_id}] stale {stage.value} turn, now in {session.stage.value}")
            return self.scripts.render(self.machine.current(session))

        text = (text or "").strip()
        if not text:
            return await self.handle_no_speech(call_id, stage)

        logger.info(f"[{stage.value}] Caller: {text}")
        fields = self.machine.fields_for(session)
        self._spawn(self._process_utterance(call_id, stage, fields, text))
        return self.scripts.hold(stage)

    async def _extract(self, call_id: str, stage: Stage, fields: tuple, text: str):
        if stage == Stage.COLLECTING_ISSUE:
            return capture_issue(text)
        if stage == Stage.COLLECTING_SEVERITY:
            result, response = await classify_severity(
                self.gateway,
                text,
                use_model=self.classify_severity_with_model,
                model=self.model,
                timeout=self.timeout,
            )
            if response is not None:
                self.ledger.record_model_usage(call_id, SEVERITY_CLASSIFICATION, response, detail=text[:200])
            return result

        result, response = await extract_slots(
            self.gateway, text, fields, model=self.model, timeout=self.timeout
        )
        if response is not None:
            self.ledger.record_model_usage(call_id, PROMPT_EXTRACTION, response, detail=text[:200])
        return result

    async def _process_utterance(self, call_id: str, stage: Stage, fields: tuple, text: str) -> None:
        try:
            if not await self.gate.is_active(call_id):
                logger.info(f"Call {call_id} is no longer active, skipping {stage.value} processing")
                return

            result = await self._extract(call_id, stage, fields, text)

            def apply(session: CallSession):
                if session.stage != stage:
                    return None
                action = self.machine.process_extraction(session, result)
                return action, dict(session.slots)

            outcome = await self.registry.mutate(call_id, apply)
            if outcome is None:
                logger.info(f"[{call_id}] discarding {stage.value} extraction, stage moved on")
                return

            action, slots = outcome
            self._persist(call_id, slots, action.start_stream)
            await self.gate.update_if_active(call_id, self.scripts.render(action))
        except SessionNotFound:
            logger.info(f"Call {call_id} ended during {stage.value} processing")
        except Exception as e:
            logger.error(f"[{call_id}] {stage.value} processing failed: {e}", exc_info=True)
            if self.store is not None:
                self.store.spawn(self.store.insert_error_log(call_id, stage.value, str(e)), "Error log insert")
            await self._apologize(call_id)

    async def _apologize(self, call_id: str) -> None:
        """Repeat the open prompt after a failed turn; retry budgets are untouched."""
        session = await self.registry.get(call_id)
        if session is None or not session.stage.is_intake:
            return
        action = self.machine.current(session)
        action.speak = PROCESSING_APOLOGY
        await self.gate.update_if_active(call_id, self.scripts.render(action))

    async def handle_no_speech(self, call_id: str, stage: Stage) -> str:
        session = await self.registry.get(call_id)
        if session is None:
            return self.scripts.empty()
        if not await self.gate.is_active(call_id):
            logger.info(f"Call {call_id} is no longer active, not re-prompting")
            return self.scripts.empty()

        def apply(session: CallSession):
            if session.stage != stage:
                return self.machine.current(session)
            return self.machine.process_no_speech(session)

        try:
            action = await self.registry.mutate(call_id, apply)
        except SessionNotFound:
            return self.scripts.empty()
        # Silence never fills a slot, so only the stream hand-off needs persisting
        self._persist(call_id, None, action.start_stream)
        return self.scripts.render(action)
