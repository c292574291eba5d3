"""
Try-Once Quota - one free preview per module per identity per 24h

Both wallet and IP are recorded on use, so switching identity type does not
reset the quota. Wallet is checked before IP.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from infrastructure.counter_store import CounterStore
from infrastructure.errors import CounterStoreError

logger = logging.getLogger("TryOnce")

TRY_ONCE_PREFIX = "tryonce:"
TRY_ONCE_TTL_SECONDS = 24 * 60 * 60

MAX_PREVIEW_CHARS = 500
PREVIEW_SUFFIX = "... [Preview truncated. Pay to see full response]"


@dataclass
class TryOnceEligibility:
    eligible: bool
    reason: Optional[str] = None
    used_at: Optional[str] = None


def _wallet_key(module_id: str, wallet: str) -> str:
    return f"{TRY_ONCE_PREFIX}{module_id}:wallet:{wallet.lower()}"


def _ip_key(module_id: str, ip: str) -> str:
    return f"{TRY_ONCE_PREFIX}{module_id}:ip:{ip}"


def truncate_for_preview(text: str, limit: int = MAX_PREVIEW_CHARS) -> str:
    """Cut preview output at a word boundary and mark it as truncated"""
    if len(text) <= limit:
        return text

    truncated = text[:limit]
    last_space = truncated.rfind(" ")
    if last_space > limit * 0.8:
        truncated = truncated[:last_space]
    return truncated + PREVIEW_SUFFIX


class TryOnceService:
    """Free-trial quota backed by the shared counter store"""

    def __init__(self, store: CounterStore):
        self.store = store

    def _keys(self, module_id: str, wallet: Optional[str], ip: Optional[str]) -> List[str]:
        keys = []
        if wallet:
            keys.append(_wallet_key(module_id, wallet))
        if ip:
            keys.append(_ip_key(module_id, ip))
        return keys

    async def check_eligible(
        self,
        module_id: str,
        wallet: Optional[str] = None,
        ip: Optional[str] = None
    ) -> TryOnceEligibility:
        if not wallet and not ip:
            return TryOnceEligibility(False, reason="No identifier provided")

        try:
            if wallet:
                used_at = await self.store.get(_wallet_key(module_id, wallet))
                if used_at:
                    return TryOnceEligibility(False, "Free try already used for this wallet", used_at)
            if ip:
                used_at = await self.store.get(_ip_key(module_id, ip))
                if used_at:
                    return TryOnceEligibility(False, "Free try already used for this IP", used_at)
        except CounterStoreError as e:
            # Fail closed: no free output while the quota cannot be read
            logger.warning(f"Try-once check unavailable for {module_id}: {e.message}")
            return TryOnceEligibility(False, reason="Free try temporarily unavailable")

        return TryOnceEligibility(True)

    async def record_usage(self, module_id: str, wallet: Optional[str] = None, ip: Optional[str] = None):
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        items = [(key, TRY_ONCE_TTL_SECONDS, timestamp) for key in self._keys(module_id, wallet, ip)]
        if items:
            await self.store.setex_many(items)
            logger.info(f"Free try recorded for module {module_id}")

    async def get_expiry(self, module_id: str, wallet: Optional[str] = None,
                         ip: Optional[str] = None) -> Optional[int]:
        """Seconds until the identity can try again, None if it already can"""
        for key in self._keys(module_id, wallet, ip):
            ttl = await self.store.ttl(key)
            if ttl > 0:
                return ttl
        return None

    async def clear_usage(self, module_id: str, wallet: Optional[str] = None, ip: Optional[str] = None):
        """Admin reset of the quota for an identity"""
        keys = self._keys(module_id, wallet, ip)
        if keys:
            await self.store.delete(*keys)
            logger.info(f"Free try cleared for module {module_id}")
