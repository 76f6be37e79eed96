"""Language-model orchestration gateway.

All model traffic (intake extraction, severity classification, keyword
extraction, grounded answers) goes through ``ModelGateway.request``, which:

- serves repeated prompts from a shared TTL cache keyed by
  ``(model, prompt[:prefix_chars])``, or by the whole prompt when the caller
  asks for it,
- races the inference call against a timeout and substitutes a degraded
  canned response instead of raising,
- rotates to the next API key (round-robin) on an auth failure and retries once,
- raises ``ModelRateLimitError`` on HTTP 429 so callers can apologize.

Usage cost is priced per 1K tokens after collapsing versioned model names to
their family (``gpt-3.5-turbo-0125`` -> ``gpt-3.5-turbo``).
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

import httpx

from helpline.errors import ModelError, ModelRateLimitError, ModelTimeout

logger = logging.getLogger(__name__)

DEGRADED_TEXT = "I'm processing your request. Could you please repeat that?"
NOMINAL_PROMPT_TOKENS = 10
NOMINAL_COMPLETION_TOKENS = 10

# USD per 1K tokens
PRICING = {
    "gpt-3.5-turbo": {"prompt": 0.001, "completion": 0.002},
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
    "gpt-4": {"prompt": 0.03, "completion": 0.06},
}
DEFAULT_PRICING_MODEL = "gpt-3.5-turbo"

_USE_DEFAULT = object()


@dataclass(frozen=True)
class ModelResponse:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    degraded: bool = False
    cached: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def degraded_response(model: str) -> ModelResponse:
    return ModelResponse(
        text=DEGRADED_TEXT,
        model=model,
        prompt_tokens=NOMINAL_PROMPT_TOKENS,
        completion_tokens=NOMINAL_COMPLETION_TOKENS,
        degraded=True,
    )


def base_model_name(model: str) -> str:
    """Collapse a versioned model id to its pricing family (longest prefix wins)."""
    for family in sorted(PRICING, key=len, reverse=True):
        if model.startswith(family):
            return family
    return model


def price(model: str) -> dict:
    return PRICING.get(base_model_name(model), PRICING[DEFAULT_PRICING_MODEL])


def compute_cost(response: ModelResponse) -> float:
    rates = price(response.model)
    prompt_cost = response.prompt_tokens * rates["prompt"] / 1000
    completion_cost = response.completion_tokens * rates["completion"] / 1000
    return prompt_cost + completion_cost


class ResponseCache:
    """Model responses shared across calls, evicted only when their TTL expires."""

    def __init__(self, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple, tuple[float, ModelResponse]] = {}

    def get(self, key: tuple) -> ModelResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, response = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return response

    def put(self, key: tuple, response: ModelResponse) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, response)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self.ttl_seconds, self._expire, key)

    def _expire(self, key: tuple) -> None:
        entry = self._entries.get(key)
        if entry is not None and self._clock() >= entry[0]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class CredentialPool:
    """Fixed pool of API keys handed out round-robin.

    ``itertools.count`` advances atomically, so concurrent callers at worst
    share a key; they never get an invalid index.
    """

    def __init__(self, keys):
        self._keys = tuple(k for k in keys if k)
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> str:
        if not self._keys:
            return ""
        return self._keys[next(self._counter) % len(self._keys)]


class ModelGateway:
    def __init__(
        self,
        credentials: CredentialPool,
        cache: ResponseCache,
        *,
        default_model: str = "gpt-3.5-turbo",
        default_timeout: float | None = 15.0,
        max_tokens: int = 500,
        prefix_chars: int = 100,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.AsyncClient | None = None,
    ):
        self.credentials = credentials
        self.cache = cache
        self.default_model = default_model
        self.default_timeout = default_timeout
        self.max_tokens = max_tokens
        self.prefix_chars = prefix_chars
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self._client.aclose()

    def cache_key(self, prompt: str, model: str, whole_prompt: bool = False) -> tuple:
        if whole_prompt:
            return (model, prompt)
        return (model, prompt[: self.prefix_chars])

    async def request(
        self,
        prompt: str,
        model: str | None = None,
        timeout=_USE_DEFAULT,
        *,
        max_tokens: int | None = None,
        use_cache: bool = True,
        cache_whole_prompt: bool = False,
    ) -> ModelResponse:
        """Run one completion. ``timeout=None`` disables the timeout race.

        Prompts that carry one caller's details must either skip the cache
        (``use_cache=False``) or be keyed on the whole prompt
        (``cache_whole_prompt=True``); the default prefix key is only safe for
        prompts whose leading text identifies the request.
        """
        model = model or self.default_model
        if timeout is _USE_DEFAULT:
            timeout = self.default_timeout

        key = self.cache_key(prompt, model, cache_whole_prompt)
        if use_cache:
            hit = self.cache.get(key)
            if hit is not None:
                logger.debug("Model cache hit (%s)", model)
                return replace(hit, cached=True)

        call = self._infer_with_rotation(prompt, model, max_tokens or self.max_tokens)
        try:
            response = await self._race(call, timeout)
        except ModelTimeout as e:
            logger.warning("Model request timed out (%s): %s, degrading", model, e)
            return degraded_response(model)
        except ModelRateLimitError:
            raise
        except (ModelError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Model request failed ({model}): {e}")
            return degraded_response(model)

        if use_cache:
            self.cache.put(key, response)
        return response

    @staticmethod
    async def _race(call, timeout):
        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise ModelTimeout(f"no response within {timeout:.1f}s") from e

    async def _infer_with_rotation(self, prompt: str, model: str, max_tokens: int) -> ModelResponse:
        try:
            return await self._infer(prompt, model, max_tokens, self.credentials.next_key())
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise ModelRateLimitError("Model rate limit reached") from e
            if status == 401 and len(self.credentials) > 1:
                logger.warning("Model auth failed, rotating to next API key")
                try:
                    return await self._infer(prompt, model, max_tokens, self.credentials.next_key())
                except httpx.HTTPStatusError as retry_error:
                    if retry_error.response.status_code == 429:
                        raise ModelRateLimitError("Model rate limit reached") from retry_error
                    raise
            raise

    async def _infer(self, prompt: str, model: str, max_tokens: int, api_key: str) -> ModelResponse:
        resp = await self._client.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": max_tokens,
            },
        )
        resp.raise_for_status()
        body = resp.json()
        try:
            usage = body.get("usage") or {}
            return ModelResponse(
                text=body["choices"][0]["message"]["content"].strip(),
                model=body.get("model", model),
                prompt_tokens=int(usage.get("prompt_tokens", 0)),
                completion_tokens=int(usage.get("completion_tokens", 0)),
            )
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ModelError(f"malformed completion body: {e!r}") from e

    async def warm_up(self) -> None:
        """Open the connection pool before the first caller arrives."""
        try:
            await self.request("Hello", timeout=10.0, max_tokens=5, use_cache=False)
            logger.info("Model connection pre-warmed")
        except ModelRateLimitError as e:
            logger.error(f"Model warm-up failed: {e}")
