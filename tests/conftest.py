import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from helpline.gateway import CredentialPool, ModelGateway, ModelResponse, ResponseCache
from helpline.ledger import CostLedger
from helpline.registry import SessionRegistry
from helpline.session import CallSession
from helpline.store import CallStore
from helpline.twiml import VoiceScripts

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
HOST = "helpline.example.com"


def completion(content, prompt_tokens=20, completion_tokens=5, model="gpt-3.5-turbo-0125"):
    """Chat-completions response body."""
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def model_response(text, prompt_tokens=20, completion_tokens=5, model="gpt-3.5-turbo", **kwargs):
    return ModelResponse(
        text=text, model=model, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, **kwargs
    )


@pytest.fixture
def session():
    return CallSession(call_id="CA123", from_number="+15125551234")


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def gateway():
    return ModelGateway(
        CredentialPool(["sk-primary", "sk-backup"]),
        ResponseCache(ttl_seconds=60),
        default_timeout=2.0,
    )


@pytest.fixture
def ledger():
    return CostLedger()


@pytest.fixture
def scripts():
    return VoiceScripts(HOST, voice="Polly.Danielle-Generative")


@pytest.fixture
def gate():
    """Liveness gate for a call that stays active."""
    gate = MagicMock()
    gate.is_active = AsyncMock(return_value=True)
    gate.update_if_active = AsyncMock(return_value=True)
    return gate


@pytest.fixture
def fake_store():
    store = MagicMock()
    store.init = AsyncMock()
    store.close = AsyncMock()
    return store


@pytest_asyncio.fixture
async def store(tmp_path):
    store = CallStore(f"sqlite:///{tmp_path}/helpline.db")
    await store.init()
    yield store
    await store.close()
