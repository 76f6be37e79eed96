import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response

from helpline.config import Settings, validate_config
from helpline.consumer import ConsumerPool, StreamingTranscriptConsumer
from helpline.gateway import CredentialPool, ModelGateway, ResponseCache
from helpline.intake import IntakeProcessor
from helpline.ledger import CostLedger
from helpline.liveness import LivenessGate
from helpline.pipeline import run_media_stream
from helpline.registry import SessionRegistry
from helpline.retrieval import RetrievalPipeline
from helpline.search import DocumentSearch
from helpline.state_machine import DialogueStateMachine
from helpline.states import Stage
from helpline.store import CallStore
from helpline.telephony import TelephonyClient
from helpline.twiml import LISTEN_PATH, NO_INPUT_PATH, STAGE_ACTIONS, VoiceScripts

load_dotenv()

logger = logging.getLogger(__name__)

# Twilio statuses that mean the call is over
ENDED_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})


def xml_response(xml: str) -> Response:
    return Response(content=xml, media_type="application/xml")


@dataclass
class AppContext:
    settings: Settings
    registry: SessionRegistry
    ledger: CostLedger
    store: CallStore
    gateway: ModelGateway
    telephony: TelephonyClient
    gate: LivenessGate
    scripts: VoiceScripts
    search: DocumentSearch
    retrieval: RetrievalPipeline
    machine: DialogueStateMachine
    intake: IntakeProcessor
    consumers: ConsumerPool

    @classmethod
    def build(cls, settings: Settings, **overrides) -> "AppContext":
        """Wire every component; ``overrides`` replaces collaborators (tests)."""
        store = overrides.get("store") or CallStore(settings.database_url)
        registry = overrides.get("registry") or SessionRegistry()
        ledger = overrides.get("ledger") or CostLedger(store)
        gateway = overrides.get("gateway") or ModelGateway(
            CredentialPool(settings.openai_api_keys),
            ResponseCache(settings.cache_ttl_s),
            default_model=settings.openai_model,
            default_timeout=settings.model_timeout_s,
            max_tokens=settings.model_max_tokens,
            prefix_chars=settings.cache_prefix_chars,
            base_url=settings.openai_base_url,
        )
        telephony = overrides.get("telephony") or TelephonyClient(
            settings.twilio_account_sid, settings.twilio_auth_token
        )
        gate = overrides.get("gate") or LivenessGate(telephony)
        scripts = VoiceScripts(
            settings.public_host,
            voice=settings.voice,
            listen_timeout=settings.listen_timeout_s,
            stream_listen_timeout=settings.stream_listen_timeout_s,
        )
        search = overrides.get("search") or DocumentSearch(
            settings.weaviate_url,
            settings.weaviate_api_key,
            limit=settings.search_limit,
        )
        retrieval = RetrievalPipeline(
            gateway,
            search,
            ledger,
            store,
            search_timeout=settings.search_timeout_s,
            context_token_budget=settings.context_token_budget,
        )
        machine = DialogueStateMachine(settings.intake_flow)
        intake = IntakeProcessor(
            registry,
            machine,
            gateway,
            ledger,
            gate,
            scripts,
            store,
            classify_severity_with_model=settings.classify_severity_with_model,
            timeout=settings.intake_model_timeout_s,
        )

        def new_consumer(call_id: str) -> StreamingTranscriptConsumer:
            return StreamingTranscriptConsumer(
                call_id,
                registry,
                retrieval,
                ledger,
                gate,
                scripts,
                store,
                acknowledge=settings.stream_acknowledge,
            )

        return cls(
            settings=settings,
            registry=registry,
            ledger=ledger,
            store=store,
            gateway=gateway,
            telephony=telephony,
            gate=gate,
            scripts=scripts,
            search=search,
            retrieval=retrieval,
            machine=machine,
            intake=intake,
            consumers=ConsumerPool(new_consumer),
        )

    async def end_call(self, call_id: str) -> None:
        await self.consumers.close(call_id)
        await self.intake.end_call(call_id)

    async def startup(self) -> None:
        await self.store.init()
        if self.settings.openai_api_keys:
            await self.gateway.warm_up()

    async def shutdown(self) -> None:
        await self.consumers.close_all()
        await self.intake.drain()
        await self.store.close()
        await self.gateway.close()
        await self.telephony.close()
        await self.search.close()


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    settings = settings or (context.settings if context else Settings.from_env())
    ctx = context or AppContext.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ctx.startup()
        yield
        await ctx.shutdown()

    app = FastAPI(title="Helpline Voice Desk", lifespan=lifespan)
    app.state.ctx = ctx

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/incoming-call")
    async def incoming_call(request: Request):
        form = await request.form()
        xml = await ctx.intake.start_call(
            form.get("CallSid", ""),
            from_number=form.get("From", ""),
            to_number=form.get("To", "") or settings.twilio_phone_number,
        )
        return xml_response(xml)

    def stage_route(stage: Stage):
        async def handle(request: Request):
            form = await request.form()
            xml = await ctx.intake.handle_utterance(
                form.get("CallSid", ""), stage, form.get("SpeechResult", "")
            )
            return xml_response(xml)

        handle.__name__ = f"handle_{stage.value}"
        return handle

    for stage, path in STAGE_ACTIONS.items():
        app.add_api_route(path, stage_route(stage), methods=["POST"])

    @app.post(NO_INPUT_PATH)
    async def no_input(request: Request, stage: str):
        try:
            current = Stage(stage)
        except ValueError:
            return PlainTextResponse(f"unknown stage {stage!r}", status_code=400)
        form = await request.form()
        xml = await ctx.intake.handle_no_speech(form.get("CallSid", ""), current)
        return xml_response(xml)

    @app.post(LISTEN_PATH)
    async def listen(request: Request):
        """Keep the streaming phase's listening window open; speech arrives on the media stream."""
        form = await request.form()
        if form.get("CallSid", "") not in ctx.registry:
            return xml_response(ctx.scripts.empty())
        return xml_response(ctx.scripts.speak_and_listen())

    @app.post("/call-status")
    async def call_status(request: Request):
        form = await request.form()
        call_sid = form.get("CallSid", "")
        status = form.get("CallStatus", "")
        logger.info(f"Call status {call_sid}: {status}")
        if status in ENDED_STATUSES:
            await ctx.end_call(call_sid)
        return PlainTextResponse("ok")

    @app.websocket("/media-stream")
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        await run_media_stream(websocket, settings, ctx.consumers, ctx.end_call)

    return app


def main():
    validate_config()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("helpline.bot:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
