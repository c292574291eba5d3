"""
Entitlement Manager - free-trial and session-pass tracks per module per identity

Try-once:      eligible -> used (24h)
Session pass:  issued -> (validated)* -> exhausted | expired
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .session_pass import SessionPassInfo, SessionPassPayload, SessionPassService, SessionPolicy
from .try_once import TryOnceEligibility, TryOnceService, truncate_for_preview

logger = logging.getLogger("Entitlements")


@dataclass
class SessionRedemption:
    """Outcome of spending one session-pass credit on a request"""
    accepted: bool
    wrong_module: bool = False
    payload: Optional[SessionPassPayload] = None
    credits_remaining: int = 0
    error: Optional[str] = None


class EntitlementManager:
    """Facade over the try-once quota and session passes"""

    def __init__(self, try_once: TryOnceService, session_passes: SessionPassService):
        self.try_once = try_once
        self.session_passes = session_passes

    # ── try-once ──

    async def check_try_once(self, module_id: str, wallet: Optional[str] = None,
                             ip: Optional[str] = None) -> TryOnceEligibility:
        return await self.try_once.check_eligible(module_id, wallet=wallet, ip=ip)

    async def record_try_once(self, module_id: str, wallet: Optional[str] = None, ip: Optional[str] = None):
        await self.try_once.record_usage(module_id, wallet=wallet, ip=ip)

    @staticmethod
    def preview(text: str) -> str:
        return truncate_for_preview(text)

    # ── session pass ──

    async def redeem_session(self, token: str, module_id: str) -> SessionRedemption:
        """Validate a pass for this module and spend one credit from it"""
        validation = await self.session_passes.validate(token)
        if not validation.valid:
            logger.info(f"Session pass rejected for {module_id}: {validation.error}")
            return SessionRedemption(False, error=validation.error)

        payload = validation.payload
        if payload.moduleId != module_id:
            return SessionRedemption(False, wrong_module=True, payload=payload,
                                     error="Session pass not valid for this module")

        # The decrement, not the earlier read, decides admission
        remaining = await self.session_passes.spend_credit(module_id, payload.sub, payload.paymentTxHash)
        if remaining is None:
            return SessionRedemption(False, payload=payload, error="Session pass not found or expired")
        if remaining < 0:
            logger.info(f"Session pass for {module_id} lost the race for its last credit")
            return SessionRedemption(False, payload=payload, error="Session pass credits exhausted")
        return SessionRedemption(True, payload=payload, credits_remaining=remaining)

    async def grant_session(self, wallet: str, module_id: str, payment_tx_hash: str,
                            policy: SessionPolicy) -> SessionPassInfo:
        """Issue a pass after payment; the paying message spends the first credit"""
        info = await self.session_passes.issue(wallet, module_id, payment_tx_hash, policy)
        info.credits_remaining = await self.session_passes.consume_credit(module_id, wallet, payment_tx_hash)
        return info
