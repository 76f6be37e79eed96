from enum import Enum

INTAKE_STAGES = {
    "collecting_identity", "collecting_issue", "collecting_severity",
    "collecting_all_details", "collecting_missing_fields",
}
TERMINAL_STAGES = {"ended"}


class Stage(Enum):
    GREETING = "greeting"
    COLLECTING_IDENTITY = "collecting_identity"
    COLLECTING_ISSUE = "collecting_issue"
    COLLECTING_SEVERITY = "collecting_severity"
    COLLECTING_ALL_DETAILS = "collecting_all_details"
    COLLECTING_MISSING_FIELDS = "collecting_missing_fields"
    STREAMING = "streaming"
    ENDED = "ended"

    @property
    def is_intake(self) -> bool:
        return self.value in INTAKE_STAGES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STAGES


class IntakeFlow(Enum):
    COLLECT_ALL = "collect_all"
    STAGED = "staged"
