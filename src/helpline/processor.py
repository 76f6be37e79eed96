import logging
import time
from typing import Callable

from pipecat.frames.frames import Frame, InterimTranscriptionFrame, TranscriptionFrame
from pipecat.processors.frame_processor import FrameDirection, FrameProcessor

from helpline.consumer import TranscriptEvent

logger = logging.getLogger(__name__)


class TranscriptBridge(FrameProcessor):
    """Turns STT frames into ``TranscriptEvent``s for the call's consumer.

    Sits right after STT in the pipeline:
      transport.input() -> STT -> [TranscriptBridge]

    Audio duration comes from the STT result when it carries one (Deepgram
    reports ``start`` and ``duration`` per result); otherwise it is the wall
    time since the first interim of the utterance.
    """

    def __init__(
        self,
        sink: Callable[[TranscriptEvent], None],
        clock: Callable[[], float] = time.monotonic,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._sink = sink
        self._clock = clock
        self._sequence = 0
        self._utterance_started: float | None = None

    async def process_frame(self, frame: Frame, direction: FrameDirection):
        await super().process_frame(frame, direction)

        if isinstance(frame, TranscriptionFrame):
            self._emit(frame.text, is_final=True, duration=self._duration(frame))
            self._utterance_started = None
        elif isinstance(frame, InterimTranscriptionFrame):
            if self._utterance_started is None:
                self._utterance_started = self._clock()
            self._emit(frame.text, is_final=False, duration=self._duration(frame))

        await self.push_frame(frame, direction)

    def _duration(self, frame: Frame) -> float:
        result = getattr(frame, "result", None)
        duration = getattr(result, "duration", None)
        if isinstance(duration, (int, float)) and duration > 0:
            return float(duration)
        if self._utterance_started is not None:
            return max(self._clock() - self._utterance_started, 0.0)
        return 0.0

    def _emit(self, text: str, *, is_final: bool, duration: float):
        if not text or not text.strip():
            return
        self._sequence += 1
        if is_final:
            logger.debug(f"Final transcript #{self._sequence} ({duration:.1f}s): {text.strip()}")
        self._sink(TranscriptEvent(
            text=text,
            is_final=is_final,
            duration_seconds=duration,
            sequence=self._sequence,
        ))
