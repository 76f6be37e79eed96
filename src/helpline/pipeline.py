import logging
from typing import Awaitable, Callable

from fastapi import WebSocket
from pipecat.audio.vad.silero import SileroVADAnalyzer
from pipecat.audio.vad.vad_analyzer import VADParams
from pipecat.frames.frames import EndFrame
from pipecat.pipeline.pipeline import Pipeline
from pipecat.pipeline.runner import PipelineRunner
from pipecat.pipeline.task import PipelineParams, PipelineTask
from pipecat.runner.utils import parse_telephony_websocket
from pipecat.serializers.twilio import TwilioFrameSerializer
from pipecat.services.deepgram.stt import DeepgramSTTService
from pipecat.transports.websocket.fastapi import (
    FastAPIWebsocketParams,
    FastAPIWebsocketTransport,
)

from helpline.config import Settings
from helpline.consumer import ConsumerPool
from helpline.processor import TranscriptBridge

logger = logging.getLogger(__name__)

# Twilio media streams are 8 kHz mu-law
TELEPHONY_SAMPLE_RATE = 8000


def listen_only_transport(
    websocket: WebSocket, settings: Settings, stream_sid: str, call_sid: str
) -> FastAPIWebsocketTransport:
    """Inbound-audio transport; replies go out as script updates, not audio."""
    serializer = TwilioFrameSerializer(
        stream_sid=stream_sid,
        call_sid=call_sid,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
    )
    vad = SileroVADAnalyzer(
        params=VADParams(
            confidence=0.85,  # hospital floors are noisy
            start_secs=0.4,
            stop_secs=0.3,
            min_volume=0.8,
        ),
    )
    return FastAPIWebsocketTransport(
        websocket=websocket,
        params=FastAPIWebsocketParams(
            audio_in_enabled=True,
            audio_out_enabled=False,
            add_wav_header=False,
            vad_analyzer=vad,
            serializer=serializer,
        ),
    )


async def run_media_stream(
    websocket: WebSocket,
    settings: Settings,
    consumers: ConsumerPool,
    on_stop: Callable[[str], Awaitable[None]],
):
    """Transcribe a call's media stream into its consumer until the stream stops."""
    transport_type, call_data = await parse_telephony_websocket(websocket)
    stream_sid = call_data["stream_id"]
    call_sid = call_data["call_id"]
    logger.info(f"Media stream started for {call_sid} ({transport_type})")

    consumer = consumers.open(call_sid)
    transport = listen_only_transport(websocket, settings, stream_sid, call_sid)

    task = PipelineTask(
        Pipeline([
            transport.input(),
            DeepgramSTTService(api_key=settings.deepgram_api_key),
            TranscriptBridge(sink=consumer.feed),
        ]),
        params=PipelineParams(
            audio_in_sample_rate=TELEPHONY_SAMPLE_RATE,
            audio_out_sample_rate=TELEPHONY_SAMPLE_RATE,
        ),
    )

    @transport.event_handler("on_client_disconnected")
    async def on_disconnected(transport, client):
        logger.info(f"Media stream for {call_sid} disconnected")
        await task.queue_frames([EndFrame()])

    await PipelineRunner().run(task)

    logger.info(f"Media stream stopped for {call_sid}")
    await on_stop(call_sid)
