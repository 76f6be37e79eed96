import httpx
import pytest
import respx

from helpline.errors import CallInactive
from helpline.liveness import LivenessGate
from helpline.telephony import TelephonyClient

BASE = "https://api.twilio.com/2010-04-01"
CALL_URL = f"{BASE}/Accounts/AC123/Calls/CA1.json"


@pytest.fixture
def telephony():
    return TelephonyClient("AC123", "secret")


@pytest.fixture
def liveness(telephony):
    return LivenessGate(telephony)


class TestTelephonyClient:
    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_status_uses_basic_auth(self, telephony):
        route = respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": "in-progress"}))
        assert await telephony.fetch_status("CA1") == "in-progress"
        assert route.calls[0].request.headers["authorization"].startswith("Basic ")

    @respx.mock
    @pytest.mark.asyncio
    async def test_fetch_status_error_returns_none(self, telephony):
        respx.get(CALL_URL).mock(return_value=httpx.Response(404, json={"code": 20404}))
        assert await telephony.fetch_status("CA1") is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_update_posts_twiml(self, telephony):
        route = respx.post(CALL_URL).mock(return_value=httpx.Response(200, json={"status": "in-progress"}))
        assert await telephony.update_twiml("CA1", "<Response></Response>")
        assert b"Twiml=" in route.calls[0].request.content

    @respx.mock
    @pytest.mark.asyncio
    async def test_update_on_finished_call_raises(self, telephony):
        respx.post(CALL_URL).mock(return_value=httpx.Response(400, json={"code": 21220}))
        with pytest.raises(CallInactive):
            await telephony.update_twiml("CA1", "<Response></Response>")

    @respx.mock
    @pytest.mark.asyncio
    async def test_update_other_error_returns_false(self, telephony):
        respx.post(CALL_URL).mock(return_value=httpx.Response(500, text="boom"))
        assert await telephony.update_twiml("CA1", "<Response></Response>") is False


class TestLivenessGate:
    @respx.mock
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["queued", "ringing", "in-progress"])
    async def test_active_statuses(self, liveness, status):
        respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": status}))
        assert await liveness.is_active("CA1")

    @respx.mock
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["completed", "busy", "failed", "no-answer", "canceled"])
    async def test_inactive_statuses(self, liveness, status):
        respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": status}))
        assert not await liveness.is_active("CA1")

    @respx.mock
    @pytest.mark.asyncio
    async def test_lookup_failure_counts_as_inactive(self, liveness):
        respx.get(CALL_URL).mock(side_effect=httpx.ConnectError("down"))
        assert not await liveness.is_active("CA1")

    @respx.mock
    @pytest.mark.asyncio
    async def test_update_applied_when_active(self, liveness):
        respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": "in-progress"}))
        update = respx.post(CALL_URL).mock(return_value=httpx.Response(200, json={}))
        assert await liveness.update_if_active("CA1", "<Response><Say>hi</Say></Response>")
        assert update.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_inactive_call_is_never_mutated(self, liveness):
        respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": "completed"}))
        update = respx.post(CALL_URL).mock(return_value=httpx.Response(200, json={}))
        assert await liveness.update_if_active("CA1", "<Response><Say>hi</Say></Response>") is False
        assert not update.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_call_ending_between_check_and_update(self, liveness):
        respx.get(CALL_URL).mock(return_value=httpx.Response(200, json={"status": "in-progress"}))
        respx.post(CALL_URL).mock(return_value=httpx.Response(400, json={"code": 21220}))
        assert await liveness.update_if_active("CA1", "<Response></Response>") is False
