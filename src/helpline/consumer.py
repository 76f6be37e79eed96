"""Streaming transcript consumer.

One consumer per call in the streaming phase.  A reader task pulls
``TranscriptEvent``s off the call's queue in arrival order.  Interim
events only refresh the utterance buffer.  A final event claims the call's
``in_flight`` flag and is answered in its own task; finals that arrive
while a turn is in flight are dropped, not queued.
"""

import asyncio
import logging
from dataclasses import dataclass

from helpline.errors import ModelRateLimitError, SessionNotFound
from helpline.ledger import CostLedger
from helpline.liveness import LivenessGate
from helpline.registry import SessionRegistry
from helpline.retrieval import RetrievalPipeline
from helpline.session import CallSession
from helpline.states import Stage
from helpline.twiml import VoiceScripts

logger = logging.getLogger(__name__)

RATE_LIMIT_APOLOGY = (
    "I'm sorry, our assistant is handling a lot of requests right now. "
    "Please ask your question again in a moment."
)
GENERIC_APOLOGY = "I'm sorry, something went wrong while I was looking into that. Could you please repeat your question?"


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    duration_seconds: float = 0.0
    sequence: int = 0


class StreamingTranscriptConsumer:
    def __init__(
        self,
        call_id: str,
        registry: SessionRegistry,
        retrieval: RetrievalPipeline,
        ledger: CostLedger,
        gate: LivenessGate,
        scripts: VoiceScripts,
        store=None,
        *,
        acknowledge: bool = True,
    ):
        self.call_id = call_id
        self.registry = registry
        self.retrieval = retrieval
        self.ledger = ledger
        self.gate = gate
        self.scripts = scripts
        self.store = store
        self.acknowledge = acknowledge
        self.queue: asyncio.Queue = asyncio.Queue()
        self.dropped = 0
        self._reader: asyncio.Task | None = None
        self._turns: set[asyncio.Task] = set()

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self.run())

    def feed(self, event: TranscriptEvent) -> None:
        self.queue.put_nowait(event)

    async def stop(self) -> None:
        """Stop reading; turns already in flight run to completion."""
        self.queue.put_nowait(None)
        if self._reader is not None:
            await self._reader
        await self.drain()

    async def drain(self) -> None:
        if self._turns:
            await asyncio.gather(*list(self._turns), return_exceptions=True)

    async def run(self) -> None:
        while True:
            event = await self.queue.get()
            if event is None:
                break
            try:
                await self.handle(event)
            except SessionNotFound:
                logger.info(f"[{self.call_id}] session gone, stopping consumer")
                break

    async def handle(self, event: TranscriptEvent) -> asyncio.Task | None:
        text = event.text.strip()
        if not event.is_final:
            if text:
                await self.registry.mutate(self.call_id, lambda s: setattr(s, "current_utterance", text))
            return None
        if not text:
            return None

        def claim(session: CallSession) -> bool:
            if session.stage != Stage.STREAMING or session.in_flight:
                return False
            session.in_flight = True
            session.current_utterance = text
            session.utterance_count += 1
            return True

        if not await self.registry.mutate(self.call_id, claim):
            self.dropped += 1
            logger.info(f"[{self.call_id}] busy, dropping final transcript: {text[:80]}")
            return None

        logger.info(f"[streaming] Caller: {text}")
        task = asyncio.create_task(self._process_turn(event))
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)
        return task

    def _choose_issue(self, text: str):
        def choose(session: CallSession):
            if not session.first_interaction_done:
                session.first_interaction_done = True
                issue = session.slot("issue") if session.has_slot("issue") else text
            else:
                issue = text
            caller = {name: session.slot(name) for name in ("name", "role", "department")}
            return issue, caller, session.slot("department"), session.slot("issue")

        return choose

    async def _process_turn(self, event: TranscriptEvent) -> None:
        call_id = self.call_id
        try:
            self.ledger.record_speech(call_id, event.duration_seconds, event.text)

            if not await self.gate.is_active(call_id):
                logger.info(f"Call {call_id} is no longer active, skipping processing")
                return

            issue, caller, department, original_issue = await self.registry.mutate(
                call_id, self._choose_issue(event.text.strip())
            )

            if self.acknowledge:
                await self.gate.update_if_active(call_id, self.scripts.acknowledge())

            result = await self.retrieval.answer(
                call_id, issue, department, caller=caller, original_issue=original_issue
            )
            await self.gate.update_if_active(call_id, self.scripts.speak_and_listen(result.text))
        except SessionNotFound:
            logger.info(f"Call {call_id} ended while a turn was in flight")
        except ModelRateLimitError as e:
            logger.warning(f"[{call_id}] rate limited: {e}")
            self._log_error(e)
            await self._apologize(RATE_LIMIT_APOLOGY)
        except Exception as e:
            logger.error(f"[{call_id}] streaming turn failed: {e}", exc_info=True)
            self._log_error(e)
            await self._apologize(GENERIC_APOLOGY)
        finally:
            try:
                await self.registry.mutate(call_id, lambda s: setattr(s, "in_flight", False))
            except SessionNotFound:
                pass

    def _log_error(self, error: Exception) -> None:
        if self.store is not None:
            self.store.spawn(
                self.store.insert_error_log(self.call_id, Stage.STREAMING.value, str(error)),
                "Error log insert",
            )

    async def _apologize(self, text: str) -> None:
        await self.gate.update_if_active(self.call_id, self.scripts.speak_and_listen(text))


class ConsumerPool:
    """Live consumers by call id."""

    def __init__(self, factory):
        self._factory = factory
        self._consumers: dict[str, StreamingTranscriptConsumer] = {}

    def open(self, call_id: str) -> StreamingTranscriptConsumer:
        consumer = self._consumers.get(call_id)
        if consumer is None:
            consumer = self._factory(call_id)
            self._consumers[call_id] = consumer
            consumer.start()
        return consumer

    def get(self, call_id: str) -> StreamingTranscriptConsumer | None:
        return self._consumers.get(call_id)

    async def close(self, call_id: str) -> None:
        consumer = self._consumers.pop(call_id, None)
        if consumer is not None:
            await consumer.stop()

    async def close_all(self) -> None:
        for call_id in list(self._consumers):
            await self.close(call_id)

    def __len__(self) -> int:
        return len(self._consumers)
