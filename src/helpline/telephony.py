import logging

import httpx

from helpline.errors import CallInactive

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"

# Twilio error code: "Call is not in-progress. Cannot redirect."
CALL_NOT_IN_PROGRESS = 21220


class TelephonyClient:
    """Twilio REST calls for call status and in-place script updates.

    Status lookups never raise: a failed lookup returns ``None`` and the
    liveness gate treats that as an inactive call.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        base_url: str = TWILIO_API_URL,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                auth=(account_sid, auth_token),
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    def _call_url(self, call_id: str) -> str:
        return f"{self.base_url}/Accounts/{self.account_sid}/Calls/{call_id}.json"

    async def fetch_status(self, call_id: str) -> str | None:
        try:
            resp = await self._client.get(self._call_url(call_id))
            resp.raise_for_status()
            return resp.json().get("status")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Call status lookup failed for %s: %s", call_id, e)
            return None

    async def update_twiml(self, call_id: str, twiml: str) -> bool:
        """Replace the script of a live call. Raises ``CallInactive`` on error 21220."""
        try:
            resp = await self._client.post(self._call_url(call_id), data={"Twiml": twiml})
        except httpx.HTTPError as e:
            logger.error("Call update failed for %s: %s", call_id, e)
            return False

        if resp.is_success:
            return True

        try:
            code = resp.json().get("code")
        except ValueError:
            code = None
        if code == CALL_NOT_IN_PROGRESS:
            raise CallInactive(call_id)
        logger.error("Call update for %s rejected: HTTP %d %s", call_id, resp.status_code, resp.text[:200])
        return False
