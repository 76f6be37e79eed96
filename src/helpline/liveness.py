"""Liveness gate.

The only sanctioned way to make a live call say something.  Every script
sent after the initial webhook response goes through ``update_if_active``,
which checks the call status first; a dead call is left untouched.
"""

import logging

from helpline.errors import CallInactive
from helpline.telephony import TelephonyClient

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"queued", "ringing", "in-progress"})


class LivenessGate:
    def __init__(self, telephony: TelephonyClient):
        self.telephony = telephony

    async def is_active(self, call_id: str) -> bool:
        status = await self.telephony.fetch_status(call_id)
        return status in ACTIVE_STATUSES

    async def update_if_active(self, call_id: str, twiml: str) -> bool:
        """Apply ``twiml`` to the call if it is still active. Returns True if applied."""
        if not await self.is_active(call_id):
            logger.info(f"Call {call_id} is no longer active, skipping update")
            return False
        try:
            applied = await self.telephony.update_twiml(call_id, twiml)
        except CallInactive:
            # Ended between the status check and the update
            logger.info(f"Call {call_id} ended before the update landed")
            return False
        if applied:
            logger.debug(f"Call {call_id} updated")
        return applied
