"""Startup configuration.

Settings come from environment variables (a local ``.env`` is loaded by the
entry point).  ``validate_config()`` is called before the server accepts
calls so that a missing key fails loudly at boot instead of mid-call.
"""

import logging
import os
import sys
from dataclasses import dataclass

from helpline.states import IntakeFlow

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
    "DEEPGRAM_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "DATABASE_URL",
]

OPTIONAL_VARS = [
    "OPENAI_API_KEY_BACKUP",
    "TWILIO_PHONE_NUMBER",
    "PUBLIC_HOST",
    "WEAVIATE_URL",
    "WEAVIATE_API_KEY",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid value for %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class Settings:
    openai_api_keys: tuple = ()
    openai_model: str = "gpt-3.5-turbo"
    openai_base_url: str = "https://api.openai.com/v1"
    model_timeout_s: float = 15.0
    intake_model_timeout_s: float = 5.0
    model_max_tokens: int = 500
    cache_ttl_s: float = 3600.0
    cache_prefix_chars: int = 100

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    public_host: str = "localhost:8765"
    voice: str = "Polly.Danielle-Generative"

    deepgram_api_key: str = ""

    weaviate_url: str = "http://localhost:8080"
    weaviate_api_key: str = ""
    search_timeout_s: float = 3.0
    search_limit: int = 10
    context_token_budget: int = 3000

    database_url: str = "sqlite:///./helpline.db"

    intake_flow: IntakeFlow = IntakeFlow.COLLECT_ALL
    classify_severity_with_model: bool = True
    stream_acknowledge: bool = True
    listen_timeout_s: int = 7
    stream_listen_timeout_s: int = 5

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        keys = tuple(
            k for k in (os.getenv("OPENAI_API_KEY"), os.getenv("OPENAI_API_KEY_BACKUP")) if k
        )
        flow_raw = os.getenv("INTAKE_FLOW", IntakeFlow.COLLECT_ALL.value)
        try:
            flow = IntakeFlow(flow_raw)
        except ValueError:
            logger.warning("Unknown INTAKE_FLOW %r, using collect_all", flow_raw)
            flow = IntakeFlow.COLLECT_ALL

        return cls(
            openai_api_keys=keys,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            model_timeout_s=_env_float("MODEL_TIMEOUT_S", 15.0),
            intake_model_timeout_s=_env_float("INTAKE_MODEL_TIMEOUT_S", 5.0),
            model_max_tokens=_env_int("MODEL_MAX_TOKENS", 500),
            cache_ttl_s=_env_float("CACHE_TTL_S", 3600.0),
            cache_prefix_chars=_env_int("CACHE_PREFIX_CHARS", 100),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
            public_host=os.getenv("PUBLIC_HOST", "localhost:8765"),
            voice=os.getenv("VOICE", "Polly.Danielle-Generative"),
            deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
            weaviate_url=os.getenv("WEAVIATE_URL", "http://localhost:8080"),
            weaviate_api_key=os.getenv("WEAVIATE_API_KEY", ""),
            search_timeout_s=_env_float("SEARCH_TIMEOUT_S", 3.0),
            search_limit=_env_int("SEARCH_LIMIT", 10),
            context_token_budget=_env_int("CONTEXT_TOKEN_BUDGET", 3000),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./helpline.db"),
            intake_flow=flow,
            classify_severity_with_model=_env_bool("CLASSIFY_SEVERITY_WITH_MODEL", True),
            stream_acknowledge=_env_bool("STREAM_ACKNOWLEDGE", True),
            listen_timeout_s=_env_int("LISTEN_TIMEOUT_S", 7),
            stream_listen_timeout_s=_env_int("STREAM_LISTEN_TIMEOUT_S", 5),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
