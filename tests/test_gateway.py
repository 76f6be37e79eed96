import asyncio
import json

import httpx
import pytest
import respx

from conftest import OPENAI_URL, completion
from helpline.errors import ModelRateLimitError
from helpline.gateway import (
    DEGRADED_TEXT,
    CredentialPool,
    ModelGateway,
    ModelResponse,
    ResponseCache,
    base_model_name,
    compute_cost,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCost:
    def test_versioned_names_collapse_to_family(self):
        assert base_model_name("gpt-3.5-turbo-0125") == "gpt-3.5-turbo"
        assert base_model_name("gpt-4-0613") == "gpt-4"
        assert base_model_name("gpt-4o-mini-2024-07-18") == "gpt-4o-mini"
        assert base_model_name("gpt-4o-2024-08-06") == "gpt-4o"

    def test_gpt35_rates(self):
        r = ModelResponse("x", "gpt-3.5-turbo-0125", prompt_tokens=1000, completion_tokens=1000)
        assert compute_cost(r) == pytest.approx(0.001 + 0.002)

    def test_gpt4_rates(self):
        r = ModelResponse("x", "gpt-4-0613", prompt_tokens=500, completion_tokens=100)
        assert compute_cost(r) == pytest.approx(0.015 + 0.006)

    def test_unknown_model_uses_default_rates(self):
        r = ModelResponse("x", "some-other-model", prompt_tokens=1000, completion_tokens=0)
        assert compute_cost(r) == pytest.approx(0.001)


class TestResponseCache:
    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=10, clock=clock)
        r = ModelResponse("hi", "gpt-3.5-turbo")
        cache.put(("m", "p"), r)
        clock.now = 9.9
        assert cache.get(("m", "p")) is r

    def test_expired_entry_is_evicted(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=10, clock=clock)
        cache.put(("m", "p"), ModelResponse("hi", "gpt-3.5-turbo"))
        clock.now = 10
        assert cache.get(("m", "p")) is None
        assert len(cache) == 0

    def test_no_capacity_eviction(self):
        cache = ResponseCache(ttl_seconds=10)
        for i in range(500):
            cache.put(("m", str(i)), ModelResponse(str(i), "gpt-3.5-turbo"))
        assert len(cache) == 500


def test_credentials_round_robin():
    pool = CredentialPool(["a", "b", ""])
    assert len(pool) == 2
    assert [pool.next_key() for _ in range(4)] == ["a", "b", "a", "b"]


class TestRequest:
    @respx.mock
    @pytest.mark.asyncio
    async def test_success_returns_text_and_usage(self, gateway):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("Hello there")))
        r = await gateway.request("Say hello")
        assert r.text == "Hello there"
        assert r.prompt_tokens == 20
        assert r.completion_tokens == 5
        assert not r.degraded
        assert not r.cached

    @respx.mock
    @pytest.mark.asyncio
    async def test_sends_bearer_key_and_max_tokens(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("ok")))
        await gateway.request("Say hello", max_tokens=42)
        req = route.calls[0].request
        assert req.headers["authorization"] == "Bearer sk-primary"
        assert json.loads(req.content)["max_tokens"] == 42

    @respx.mock
    @pytest.mark.asyncio
    async def test_same_prefix_served_from_cache(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("cached answer")))
        first = await gateway.request("What is the wifi password?")
        second = await gateway.request("What is the wifi password?")
        assert route.call_count == 1
        assert second.text == first.text
        assert second.cached

    @respx.mock
    @pytest.mark.asyncio
    async def test_cache_key_uses_prompt_prefix_only(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("same")))
        prefix = "x" * 100
        await gateway.request(prefix + " tail one")
        r = await gateway.request(prefix + " tail two")
        assert route.call_count == 1
        assert r.cached

    @respx.mock
    @pytest.mark.asyncio
    async def test_whole_prompt_key_separates_shared_prefix(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("answer")))
        prefix = "x" * 100
        await gateway.request(prefix + " caller Alice", cache_whole_prompt=True)
        r = await gateway.request(prefix + " caller Bob", cache_whole_prompt=True)
        assert route.call_count == 2
        assert not r.cached
        again = await gateway.request(prefix + " caller Bob", cache_whole_prompt=True)
        assert again.cached
        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_different_models_do_not_share_cache(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("a")))
        await gateway.request("prompt", "gpt-3.5-turbo")
        await gateway.request("prompt", "gpt-4")
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout_returns_degraded_response(self, gateway):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        gateway._infer_with_rotation = slow
        r = await gateway.request("anything", timeout=0.01)
        assert r.degraded
        assert r.text == DEGRADED_TEXT
        assert (r.prompt_tokens, r.completion_tokens) == (10, 10)

    @pytest.mark.asyncio
    async def test_degraded_responses_are_not_cached(self, gateway):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        gateway._infer_with_rotation = slow
        await gateway.request("anything", timeout=0.01)
        assert len(gateway.cache) == 0

    @respx.mock
    @pytest.mark.asyncio
    async def test_auth_failure_rotates_key_and_retries_once(self, gateway):
        route = respx.post(OPENAI_URL).mock(side_effect=[
            httpx.Response(401, json={"error": {"message": "bad key"}}),
            httpx.Response(200, json=completion("second key worked")),
        ])
        r = await gateway.request("hello")
        assert r.text == "second key worked"
        assert route.call_count == 2
        keys = [c.request.headers["authorization"] for c in route.calls]
        assert keys == ["Bearer sk-primary", "Bearer sk-backup"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_auth_failure_on_both_keys_degrades(self, gateway):
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(401))
        r = await gateway.request("hello")
        assert r.degraded
        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_single_key_does_not_retry_auth_failure(self):
        gw = ModelGateway(CredentialPool(["only"]), ResponseCache(60))
        route = respx.post(OPENAI_URL).mock(return_value=httpx.Response(401))
        r = await gw.request("hello")
        assert r.degraded
        assert route.call_count == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_raises_distinct_error(self, gateway):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(429))
        with pytest.raises(ModelRateLimitError):
            await gateway.request("hello")

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_degrades(self, gateway):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(500))
        r = await gateway.request("hello")
        assert r.degraded

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_body_degrades(self, gateway):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json={"choices": []}))
        r = await gateway.request("hello")
        assert r.degraded

    @respx.mock
    @pytest.mark.asyncio
    async def test_warm_up_bypasses_cache(self, gateway):
        respx.post(OPENAI_URL).mock(return_value=httpx.Response(200, json=completion("hi")))
        await gateway.warm_up()
        assert len(gateway.cache) == 0
