"""
Payment Gate - decides how one paid-module request is served

Order:
1. Session pass (X-Session-Pass): spend a credit, full reply
2. Free try (offers that allow it; mode "try" or no payment header): truncated preview, quota recorded
3. No payment header: 402 with requirements, try-once and session-pass hints
4. Verify + settle the header, ledger the outcome, issue a session pass

Settlement is never retried. If the reply cannot be produced after the payer
was charged, SettledButUndeliveredError carries the tx hash to the boundary.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from infrastructure.errors import CounterStoreError, ExternalAPIError, SettledButUndeliveredError
from payments.facilitator import FacilitatorAdapter
from sentry_config import capture_payment_breadcrumb
from .entitlements import EntitlementManager
from .payment_ledger import PaymentEvent, PaymentEventType, PaymentLedger
from .session_pass import SessionPolicy, supports_session_pass
from .try_once import TryOnceEligibility

logger = logging.getLogger("PaymentGate")

PER_MESSAGE = "per_message"
PREVIEW_MESSAGE = "This is a free preview. Pay to unlock full responses."

# generate(preview) -> reply text
GenerateReply = Callable[[bool], Awaitable[str]]


@dataclass
class UpstreamPayment:
    """A remix module pays this upstream price before every delivered reply"""
    pay_to: str
    price_amount: str
    upstream_module_id: Optional[str] = None


@dataclass
class ModuleOffer:
    module_id: str
    pay_to: str
    price_amount: str
    pricing_mode: str = PER_MESSAGE
    session_policy: Optional[SessionPolicy] = None
    network: Optional[str] = None
    upstream: Optional[UpstreamPayment] = None
    free_try: bool = True

    @property
    def description(self) -> str:
        unit = "message" if self.pricing_mode == PER_MESSAGE else "session"
        return f"module:{self.module_id} / 1 {unit}"


@dataclass
class GateRequest:
    payment_header: Optional[str] = None
    session_pass: Optional[str] = None
    wallet: Optional[str] = None
    ip: Optional[str] = None
    mode: Optional[str] = None  # "try" | "paid"


@dataclass
class GateOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def public_reason(error: Optional[str]) -> str:
    """Short user-facing reason; raw facilitator bodies stay in the logs"""
    if not error:
        return "Payment failed"
    for op in ("Verify", "Settle"):
        if error.startswith(f"{op} request failed"):
            return "Payment facilitator unavailable"
        if error.startswith(f"{op} failed:"):
            status = error.split(":", 1)[1].strip().split(" ", 1)[0]
            return f"Payment facilitator rejected the request ({status})"
    return error[:200]


class PaymentGate:
    """Composes entitlements, the facilitator and agent payments for one request"""

    def __init__(
        self,
        facilitator: FacilitatorAdapter,
        entitlements: EntitlementManager,
        ledger: PaymentLedger,
        agent_payments=None
    ):
        self.facilitator = facilitator
        self.entitlements = entitlements
        self.ledger = ledger
        self.agent_payments = agent_payments

    async def handle(self, offer: ModuleOffer, request: GateRequest, generate: GenerateReply) -> GateOutcome:
        session_error = None

        # 1. Session pass
        if request.session_pass:
            redemption = await self.entitlements.redeem_session(request.session_pass, offer.module_id)
            if redemption.wrong_module:
                return GateOutcome(403, {"error": "Session pass not valid for this module"})
            if redemption.accepted:
                await self._pay_upstream(offer)
                reply = await generate(False)
                return GateOutcome(200, {
                    "reply": reply,
                    "sessionPass": {
                        "creditsRemaining": redemption.credits_remaining,
                        "expiresAt": redemption.payload.expiresAt,
                    },
                })
            session_error = redemption.error

        # 2. Free try
        eligibility = None
        if offer.free_try and (request.mode == "try" or not request.payment_header):
            eligibility = await self.entitlements.check_try_once(offer.module_id, request.wallet, request.ip)
            if eligibility.eligible:
                await self._pay_upstream(offer)
                reply = await generate(True)
                await self.entitlements.record_try_once(offer.module_id, request.wallet, request.ip)
                return GateOutcome(200, {
                    "reply": self.entitlements.preview(reply),
                    "isTryOnce": True,
                    "message": PREVIEW_MESSAGE,
                })

        # 3. Payment required
        if not request.payment_header:
            return GateOutcome(402, self._payment_required_body(offer, eligibility, session_error))

        # 4. Verify and settle
        return await self._paid(offer, request.payment_header, generate)

    def _payment_required_body(self, offer: ModuleOffer, eligibility: Optional[TryOnceEligibility],
                               session_error: Optional[str]) -> Dict[str, Any]:
        requirements = self.facilitator.build_requirements(offer.pay_to, offer.price_amount, offer.description)
        body: Dict[str, Any] = {
            "error": "Payment Required",
            "paymentRequirements": requirements.model_dump(),
        }
        if eligibility is not None:
            body["tryOnceUsed"] = True
            if eligibility.used_at:
                body["tryOnceUsedAt"] = eligibility.used_at
        if supports_session_pass(offer.pricing_mode, offer.session_policy):
            body["sessionPassSupported"] = True
            body["sessionPolicy"] = offer.session_policy.to_dict()
        if session_error:
            body["sessionPassError"] = session_error
        return body

    def _record(self, offer: ModuleOffer, network: str, payer: Optional[str], value: Optional[str],
                event: PaymentEventType, tx_hash: Optional[str] = None, error: Optional[str] = None):
        self.ledger.record(PaymentEvent(
            module_id=offer.module_id,
            payer_wallet=payer or "unknown",
            pay_to=offer.pay_to,
            value=value or offer.price_amount,
            network=network,
            event=event,
            tx_hash=tx_hash,
            error=error,
        ))

    async def _paid(self, offer: ModuleOffer, header: str, generate: GenerateReply) -> GateOutcome:
        requirements = self.facilitator.build_requirements(offer.pay_to, offer.price_amount, offer.description)
        network = offer.network or requirements.network

        verified = await self.facilitator.verify(header, requirements)
        if not verified.valid:
            self._record(offer, network, verified.payer, verified.value, PaymentEventType.FAILED, error=verified.error)
            return GateOutcome(402, {"error": "Payment verification failed", "details": public_reason(verified.error),
                                     "paymentRequirements": requirements.model_dump()})

        settled = await self.facilitator.settle(header, requirements)
        if not settled.success:
            self._record(offer, network, verified.payer, verified.value, PaymentEventType.FAILED, error=settled.error)
            return GateOutcome(402, {"error": "Payment settlement failed", "details": public_reason(settled.error),
                                     "paymentRequirements": requirements.model_dump()})

        self._record(offer, network, verified.payer, verified.value, PaymentEventType.SETTLED, tx_hash=settled.txHash)
        capture_payment_breadcrumb("settled", settled.txHash, network)

        # Charged from here on: failures become "paid but undelivered", never a re-settle
        try:
            await self._pay_upstream(offer)
            reply = await generate(False)
        except Exception as e:
            logger.error(f"Reply failed after settlement tx={settled.txHash}: {e}")
            raise SettledButUndeliveredError(settled.txHash, reason=type(e).__name__) from e

        body: Dict[str, Any] = {
            "reply": reply,
            "payment": {
                "txHash": settled.txHash,
                "from": verified.payer,
                "to": requirements.payTo,
                "value": verified.value or offer.price_amount,
                "network": network,
            },
        }
        if settled.isMock:
            body["payment"]["isMock"] = True
        if settled.onchainStatus:
            body["payment"]["onchainStatus"] = settled.onchainStatus

        if supports_session_pass(offer.pricing_mode, offer.session_policy) and verified.payer and settled.txHash:
            try:
                info = await self.entitlements.grant_session(
                    verified.payer, offer.module_id, settled.txHash, offer.session_policy)
                body["sessionPass"] = info.to_dict()
            except CounterStoreError as e:
                # Reply already delivered; the payer just pays per message next time
                logger.warning(f"Failed to issue session pass for tx={settled.txHash}: {e.message}")

        return GateOutcome(200, body)

    async def _pay_upstream(self, offer: ModuleOffer):
        if offer.upstream is None:
            return
        if self.agent_payments is None:
            raise ExternalAPIError("upstream", message="Remix module has no agent payment builder")

        result = await self.agent_payments.settle_upstream(
            offer.module_id,
            offer.upstream.pay_to,
            offer.upstream.price_amount,
            description=f"module:{offer.upstream.upstream_module_id or offer.upstream.pay_to} / remix of {offer.module_id}",
        )
        if not result.success:
            logger.error(f"Upstream payment for remix {offer.module_id} failed: {result.error}")
            raise ExternalAPIError("upstream", message="Upstream module payment failed")
        logger.info(f"Remix {offer.module_id} paid upstream tx={result.txHash}")
