import time
from dataclasses import dataclass, field

from helpline.states import Stage

NOT_PROVIDED = "Not provided"
UNKNOWN = "Unknown"

SLOT_NAMES = ("name", "department", "issue", "severity")


def default_slots() -> dict:
    return {name: NOT_PROVIDED for name in SLOT_NAMES} | {"role": NOT_PROVIDED}


@dataclass
class CallSession:
    call_id: str
    stage: Stage = Stage.GREETING

    # Intake slots, sentinel until captured
    slots: dict = field(default_factory=default_slots)

    # Retry bookkeeping (per stage value)
    retry_counts: dict = field(default_factory=dict)
    no_speech_counts: dict = field(default_factory=dict)
    missing_fields: list = field(default_factory=list)

    # Streaming phase
    in_flight: bool = False
    first_interaction_done: bool = False
    current_utterance: str = ""
    utterance_count: int = 0

    # Call metadata
    from_number: str = ""
    to_number: str = ""
    created_at: float = field(default_factory=time.time)

    def retry_count(self, stage: Stage | None = None) -> int:
        return self.retry_counts.get((stage or self.stage).value, 0)

    def no_speech_count(self, stage: Stage | None = None) -> int:
        return self.no_speech_counts.get((stage or self.stage).value, 0)

    def slot(self, name: str) -> str:
        return self.slots.get(name, NOT_PROVIDED)

    def has_slot(self, name: str) -> bool:
        return self.slot(name) not in (NOT_PROVIDED, UNKNOWN, "")
