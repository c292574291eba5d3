"""
Session Pass - time and credit bounded entitlement after a per-session payment

Features:
- Signed claim (JWT, HS256) handed to the client
- Live credit counter in the counter store with TTL = session length
- The counter is authoritative: an old high-balance token cannot be replayed
- validate() never raises; issue()/consume_credit() raise CounterStoreError
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import jwt

from infrastructure.counter_store import CounterStore
from infrastructure.errors import CounterStoreError

logger = logging.getLogger("SessionPass")

SESSION_PASS_PREFIX = "sessionpass:"
DEV_JWT_SECRET = "insecure-dev-secret-change-in-production"
JWT_ALGORITHM = "HS256"

PER_SESSION = "per_session"


@dataclass(frozen=True)
class SessionPolicy:
    minutes: int
    message_credits: int

    def to_dict(self) -> Dict[str, int]:
        return {"minutes": self.minutes, "messageCredits": self.message_credits}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SessionPolicy"]:
        if not data:
            return None
        return cls(int(data["minutes"]), int(data.get("messageCredits", data.get("message_credits"))))


DEFAULT_SESSION_POLICY = SessionPolicy(minutes=30, message_credits=10)


@dataclass
class SessionPassPayload:
    sub: str  # payer wallet, lowercase
    moduleId: str
    paymentTxHash: str
    creditsRemaining: int
    maxCredits: int
    issuedAt: int
    expiresAt: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionPassInfo:
    token: str
    credits_remaining: int
    max_credits: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "creditsRemaining": self.credits_remaining,
            "maxCredits": self.max_credits,
            "expiresAt": self.expires_at,
        }


@dataclass
class SessionPassValidation:
    valid: bool
    payload: Optional[SessionPassPayload] = None
    error: Optional[str] = None


def supports_session_pass(pricing_mode: str, policy: Optional[SessionPolicy]) -> bool:
    return pricing_mode == PER_SESSION and policy is not None


def _counter_key(module_id: str, wallet: str, payment_tx_hash: str) -> str:
    return f"{SESSION_PASS_PREFIX}{module_id}:{wallet.lower()}:{payment_tx_hash}"


class SessionPassService:
    """Issues, validates and meters session passes"""

    def __init__(self, store: CounterStore, jwt_secret: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self._secret = jwt_secret or DEV_JWT_SECRET
        self._clock = clock
        if not jwt_secret:
            logger.warning("JWT_SECRET not configured - session passes use the development secret")

    async def issue(
        self,
        wallet: str,
        module_id: str,
        payment_tx_hash: str,
        policy: SessionPolicy
    ) -> SessionPassInfo:
        ttl_seconds = policy.minutes * 60
        now = int(self._clock())
        payload = SessionPassPayload(
            sub=wallet.lower(),
            moduleId=module_id,
            paymentTxHash=payment_tx_hash,
            creditsRemaining=policy.message_credits,
            maxCredits=policy.message_credits,
            issuedAt=now,
            expiresAt=now + ttl_seconds,
        )
        token = jwt.encode(
            {**payload.to_dict(), "iat": now, "exp": payload.expiresAt},
            self._secret,
            algorithm=JWT_ALGORITHM,
        )

        await self.store.setex(
            _counter_key(module_id, wallet, payment_tx_hash),
            ttl_seconds,
            str(policy.message_credits),
        )
        logger.info(
            f"Session pass issued for module {module_id} to {wallet[:10]}... "
            f"({policy.message_credits} credits, {policy.minutes} min)"
        )
        return SessionPassInfo(token, policy.message_credits, policy.message_credits, payload.expiresAt)

    async def validate(self, token: str) -> SessionPassValidation:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            return SessionPassValidation(False, error="Session pass expired")
        except jwt.InvalidTokenError:
            return SessionPassValidation(False, error="Invalid session pass token")

        try:
            payload = SessionPassPayload(
                sub=str(claims.get("sub") or ""),
                moduleId=str(claims["moduleId"]),
                paymentTxHash=str(claims["paymentTxHash"]),
                creditsRemaining=int(claims["creditsRemaining"]),
                maxCredits=int(claims["maxCredits"]),
                issuedAt=int(claims["issuedAt"]),
                expiresAt=int(claims["expiresAt"]),
            )
        except (KeyError, TypeError, ValueError):
            return SessionPassValidation(False, error="Invalid session pass token")

        if payload.expiresAt < int(self._clock()):
            return SessionPassValidation(False, error="Session pass expired")

        try:
            credits_str = await self.store.get(_counter_key(payload.moduleId, payload.sub, payload.paymentTxHash))
        except CounterStoreError as e:
            logger.warning(f"Session pass counter unavailable: {e.message}")
            return SessionPassValidation(False, error="Session pass validation failed")

        if credits_str is None:
            return SessionPassValidation(False, error="Session pass not found or expired")

        credits = int(credits_str)
        if credits <= 0:
            return SessionPassValidation(False, error="Session pass credits exhausted")

        payload.creditsRemaining = credits
        return SessionPassValidation(True, payload=payload)

    async def spend_credit(self, module_id: str, wallet: str, payment_tx_hash: str) -> Optional[int]:
        """
        Atomically spend one credit and return the raw counter.

        None means the counter is gone (expired or never issued); a negative
        value means another request took the last credit first.
        """
        return await self.store.decr_existing(_counter_key(module_id, wallet, payment_tx_hash))

    async def consume_credit(self, module_id: str, wallet: str, payment_tx_hash: str) -> int:
        """Atomically spend one credit; returns the remaining count, never below zero"""
        remaining = await self.spend_credit(module_id, wallet, payment_tx_hash)
        return max(0, remaining or 0)

    async def get_credits(self, module_id: str, wallet: str, payment_tx_hash: str) -> Optional[int]:
        credits_str = await self.store.get(_counter_key(module_id, wallet, payment_tx_hash))
        return None if credits_str is None else int(credits_str)
