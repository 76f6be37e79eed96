"""TwiML voice scripts.

Documents are plain XML strings; every piece of caller-derived text goes
through ``escape`` before it is placed in a script.
"""

from urllib.parse import urlencode
from xml.sax.saxutils import escape, quoteattr

from helpline.state_machine import Action
from helpline.states import Stage

# Webhook each intake stage's <Gather> posts the caller's answer to
STAGE_ACTIONS = {
    Stage.COLLECTING_ALL_DETAILS: "/process-details",
    Stage.COLLECTING_MISSING_FIELDS: "/collect-missing-fields",
    Stage.COLLECTING_IDENTITY: "/process-basic-details",
    Stage.COLLECTING_ISSUE: "/process-issue",
    Stage.COLLECTING_SEVERITY: "/process-severity",
}

LISTEN_PATH = "/listen"
NO_INPUT_PATH = "/no-input"
MEDIA_STREAM_PATH = "/media-stream"

HOLD_TEXT = "Thank you, I'm processing that information."
ACK_TEXT = "Processing your request..."
HOLD_PAUSE_S = 15


def no_input_url(stage: Stage) -> str:
    return f"{NO_INPUT_PATH}?{urlencode({'stage': stage.value})}"


class VoiceScripts:
    def __init__(
        self,
        public_host: str,
        voice: str = "Polly.Danielle-Generative",
        listen_timeout: int = 7,
        stream_listen_timeout: int = 5,
    ):
        self.public_host = public_host
        self.voice = voice
        self.listen_timeout = listen_timeout
        self.stream_listen_timeout = stream_listen_timeout

    @property
    def stream_url(self) -> str:
        return f"wss://{self.public_host}{MEDIA_STREAM_PATH}"

    def _say(self, text: str) -> str:
        if not text:
            return ""
        return f"<Say voice={quoteattr(self.voice)}>{escape(text)}</Say>"

    def _gather(self, stage: Stage, prompt: str) -> str:
        action = STAGE_ACTIONS[stage]
        return (
            f'<Gather input="speech" action={quoteattr(action)} method="POST" '
            f'timeout="{self.listen_timeout}">'
            f"{self._say(prompt)}"
            "</Gather>"
            f"<Redirect method=\"POST\">{escape(no_input_url(stage))}</Redirect>"
        )

    def _listen_window(self) -> str:
        return (
            f'<Gather input="speech" action="{LISTEN_PATH}" method="POST" '
            f'timeout="{self.stream_listen_timeout}"/>'
            f'<Redirect method="POST">{LISTEN_PATH}</Redirect>'
        )

    def render(self, action: Action) -> str:
        """Turn a state machine action into a complete document."""
        if action.end_call:
            return f"<Response>{self._say(action.speak)}<Hangup/></Response>"
        if action.start_stream:
            return (
                "<Response>"
                f"{self._say(action.speak)}"
                f"<Start><Stream url={quoteattr(self.stream_url)}/></Start>"
                f"{self._listen_window()}"
                "</Response>"
            )
        if action.stage == Stage.STREAMING:
            return self.speak_and_listen(action.speak)
        return (
            "<Response>"
            f"{self._say(action.speak)}"
            f"{self._gather(action.stage, action.prompt)}"
            "</Response>"
        )

    def hold(self, stage: Stage, text: str = HOLD_TEXT) -> str:
        """Keep the caller on the line while a turn is processed in the background."""
        return (
            "<Response>"
            f"{self._say(text)}"
            f'<Pause length="{HOLD_PAUSE_S}"/>'
            f"<Redirect method=\"POST\">{escape(no_input_url(stage))}</Redirect>"
            "</Response>"
        )

    def acknowledge(self, text: str = ACK_TEXT) -> str:
        return self.speak_and_listen(text)

    def speak_and_listen(self, text: str = "") -> str:
        """Speak (optionally) and reopen the streaming-phase listening window."""
        return f"<Response>{self._say(text)}{self._listen_window()}</Response>"

    @staticmethod
    def empty() -> str:
        return "<Response></Response>"
