"""Append-only cost ledger.

Every billable operation of a call (speech recognition minutes, each model
request) is appended here.  Entries are immutable and are persisted to the
``charges`` table in the background; a failed write is logged and otherwise
ignored so accounting never delays what the caller hears.
"""

import logging
import time
from dataclasses import dataclass, field

from helpline.gateway import ModelResponse, compute_cost

logger = logging.getLogger(__name__)

SPEECH = "speech"
PROMPT_EXTRACTION = "prompt-extraction"
SEVERITY_CLASSIFICATION = "severity-classification"
KEYWORD_EXTRACTION = "keyword-extraction"
ANSWER_GENERATION = "answer-generation"

KINDS = frozenset({
    SPEECH, PROMPT_EXTRACTION, SEVERITY_CLASSIFICATION,
    KEYWORD_EXTRACTION, ANSWER_GENERATION,
})

# USD per minute of recognized audio
SPEECH_RATE_PER_MINUTE = 0.006


def speech_cost(duration_seconds: float) -> float:
    return (duration_seconds / 60) * SPEECH_RATE_PER_MINUTE


@dataclass(frozen=True)
class CostLedgerEntry:
    call_id: str
    kind: str
    amount: float
    tokens: int = 0
    timestamp: float = field(default_factory=time.time)
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    audio_duration: float = 0.0
    detail: str = ""


class CostLedger:
    def __init__(self, store=None):
        self._store = store
        self._entries: list[CostLedgerEntry] = []

    @property
    def entries(self) -> tuple:
        return tuple(self._entries)

    def for_call(self, call_id: str) -> list[CostLedgerEntry]:
        return [e for e in self._entries if e.call_id == call_id]

    def total(self, call_id: str) -> float:
        return sum(e.amount for e in self.for_call(call_id))

    def append(self, entry: CostLedgerEntry) -> CostLedgerEntry:
        if entry.kind not in KINDS:
            raise ValueError(f"unknown ledger kind: {entry.kind}")
        self._entries.append(entry)
        logger.info(
            "[%s] charge %s $%.6f (%d tokens)",
            entry.call_id, entry.kind, entry.amount, entry.tokens,
        )
        if self._store is not None:
            self._store.spawn(
                self._store.insert_charge(
                    entry.call_id,
                    entry.kind,
                    entry.amount,
                    entry.tokens,
                    prompt_tokens=entry.prompt_tokens,
                    completion_tokens=entry.completion_tokens,
                    model=entry.model,
                    audio_duration=entry.audio_duration,
                    detail=entry.detail,
                ),
                f"Charge insert ({entry.kind})",
            )
        return entry

    def record_speech(self, call_id: str, duration_seconds: float, transcript: str = "") -> CostLedgerEntry:
        return self.append(CostLedgerEntry(
            call_id=call_id,
            kind=SPEECH,
            amount=speech_cost(duration_seconds),
            audio_duration=duration_seconds,
            detail=transcript,
        ))

    def record_model_usage(self, call_id: str, kind: str, response: ModelResponse, detail: str = "") -> CostLedgerEntry:
        """Charge a model response.

        Degraded responses carry nominal usage, which is what gets billed.
        Cache hits never reached the provider and are recorded at zero cost.
        """
        if response.cached:
            return self.append(CostLedgerEntry(
                call_id=call_id, kind=kind, amount=0.0, model=response.model,
                detail=detail or "cached",
            ))
        return self.append(CostLedgerEntry(
            call_id=call_id,
            kind=kind,
            amount=compute_cost(response),
            tokens=response.total_tokens,
            model=response.model,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            detail=detail,
        ))
