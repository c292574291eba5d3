"""
x402 Facilitator Adapter for Soulforge
Builds payment requirements, verifies and settles signed payment headers

Features:
- PaymentBackend chosen once at construction (mock or remote facilitator)
- Tagged union over the facilitator response shapes seen in the wild
- Untrusted input failures returned as values, never raised
- Optional on-chain cross-check of settled transactions
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx

from infrastructure.config import PaymentConfig
from infrastructure.errors import ConfigMissingError
from .header import decode_payment_header
from .models import (
    X402_VERSION,
    SCHEME_EXACT,
    ZERO_ADDRESS,
    DecodedHeader,
    PaymentRequirements,
    SettleResult,
    VerifyResult,
    normalize_address,
)

logger = logging.getLogger("x402Facilitator")

UNEXPECTED_RESPONSE = "Unexpected facilitator response"


def _short(value: Optional[str]) -> str:
    return f"{value[:10]}..." if value else "-"


# ============================================
# FACILITATOR RESPONSE VARIANTS
# ============================================

class ResponseKind(str, Enum):
    IS_VALID = "is_valid"        # {isValid, invalidReason, payer?}
    VALID = "valid"              # {valid, payer, value}
    EVENT = "event"              # {event, txHash}
    SUCCESS = "success"          # {success, txHash|transaction, error|errorReason}
    UNRECOGNIZED = "unrecognized"


@dataclass
class FacilitatorResponse:
    kind: ResponseKind
    ok: bool = False
    payer: Optional[str] = None
    value: Optional[str] = None
    tx_hash: Optional[str] = None
    event: Optional[str] = None
    error: Optional[str] = None


def parse_facilitator_response(data: Any) -> FacilitatorResponse:
    """Classify a decoded JSON body into one of the known variants"""
    if not isinstance(data, dict):
        return FacilitatorResponse(ResponseKind.UNRECOGNIZED)

    if "isValid" in data:
        return FacilitatorResponse(
            ResponseKind.IS_VALID,
            ok=data.get("isValid") is True,
            payer=data.get("payer"),
            error=data.get("invalidReason"),
        )
    if "valid" in data:
        value = data.get("value")
        return FacilitatorResponse(
            ResponseKind.VALID,
            ok=data.get("valid") is True,
            payer=data.get("payer"),
            value=str(value) if value is not None else None,
            error=data.get("error") or data.get("invalidReason"),
        )
    if "event" in data:
        return FacilitatorResponse(
            ResponseKind.EVENT,
            event=str(data.get("event") or "").lower(),
            tx_hash=data.get("txHash"),
            error=data.get("error"),
        )
    if "success" in data:
        return FacilitatorResponse(
            ResponseKind.SUCCESS,
            ok=data.get("success") is True,
            tx_hash=data.get("txHash") or data.get("transaction"),
            error=data.get("error") or data.get("errorReason"),
        )
    return FacilitatorResponse(ResponseKind.UNRECOGNIZED)


def to_verify_result(response: FacilitatorResponse, decoded: DecodedHeader) -> VerifyResult:
    kind = response.kind
    if kind in (ResponseKind.IS_VALID, ResponseKind.VALID, ResponseKind.SUCCESS):
        valid = response.ok
    elif kind == ResponseKind.EVENT:
        valid = response.event in ("verified", "payment.verified")
    else:
        return VerifyResult(valid=False, error=UNEXPECTED_RESPONSE)

    if not valid:
        return VerifyResult(valid=False, error=response.error or "Payment verification failed")

    payer = response.payer or decoded.payer
    return VerifyResult(
        valid=True,
        payer=normalize_address(payer) if payer else None,
        value=response.value or decoded.value,
    )


def to_settle_result(response: FacilitatorResponse) -> SettleResult:
    kind = response.kind
    if kind == ResponseKind.SUCCESS:
        success = response.ok
    elif kind == ResponseKind.EVENT:
        success = response.event in ("settled", "payment.settled")
    else:
        # verify-shaped bodies are not a settlement answer
        return SettleResult(success=False, error=UNEXPECTED_RESPONSE)

    if not success:
        return SettleResult(success=False, error=response.error or "Settlement failed")
    return SettleResult(success=True, txHash=response.tx_hash, isMock=False)


# ============================================
# PAYMENT BACKENDS
# ============================================

class PaymentBackend:
    """Capability interface: verify and settle a payment header"""

    is_mock = False

    async def verify(self, header_text: str, decoded: DecodedHeader,
                     requirements: PaymentRequirements) -> VerifyResult:
        raise NotImplementedError

    async def settle(self, header_text: str, decoded: DecodedHeader,
                     requirements: PaymentRequirements) -> SettleResult:
        raise NotImplementedError

    async def close(self):
        pass


class MockPaymentBackend(PaymentBackend):
    """Structural checks only; settlement fabricates a tx hash"""

    is_mock = True

    async def verify(self, header_text, decoded, requirements):
        if decoded.error:
            return VerifyResult(valid=False, error=decoded.error)
        if not decoded.payer or not decoded.value:
            return VerifyResult(valid=False, error="Invalid payment structure")
        return VerifyResult(valid=True, payer=decoded.payer, value=decoded.value)

    async def settle(self, header_text, decoded, requirements):
        return SettleResult(success=True, txHash=f"0x{secrets.token_hex(32)}", isMock=True)


class RemoteFacilitatorBackend(PaymentBackend):
    """HTTP facilitator: POST {base}/verify and {base}/settle"""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        if not base_url:
            raise ConfigMissingError("X402_FACILITATOR_BASE_URL")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(self, header_text: str, decoded: DecodedHeader,
              requirements: PaymentRequirements) -> Dict[str, Any]:
        body = {
            "x402Version": X402_VERSION,
            "scheme": requirements.scheme,
            "network": requirements.network,
            "paymentHeader": header_text,
            "paymentRequirements": requirements.model_dump(),
        }
        if decoded.header is not None:
            body["paymentPayload"] = decoded.header.to_wire()
        return body

    async def _post(self, op: str, body: Dict[str, Any]) -> Tuple[Optional[FacilitatorResponse], Optional[str]]:
        label = op.capitalize()
        try:
            resp = await self._client.post(f"{self.base_url}/{op}", headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            return None, f"{label} request failed: {e or type(e).__name__}"

        if not resp.is_success:
            return None, f"{label} failed: {resp.status_code} {resp.text}"

        try:
            data = resp.json()
        except ValueError:
            data = None
        return parse_facilitator_response(data), None

    async def verify(self, header_text, decoded, requirements):
        response, error = await self._post("verify", self._body(header_text, decoded, requirements))
        if error:
            logger.warning(f"Facilitator verify error: {error[:200]}")
            return VerifyResult(valid=False, error=error)
        logger.info(f"Facilitator verify answered with {response.kind.value} shape")
        return to_verify_result(response, decoded)

    async def settle(self, header_text, decoded, requirements):
        response, error = await self._post("settle", self._body(header_text, decoded, requirements))
        if error:
            logger.warning(f"Facilitator settle error: {error[:200]}")
            return SettleResult(success=False, error=error)
        logger.info(f"Facilitator settle answered with {response.kind.value} shape")
        return to_settle_result(response)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


class UnavailablePaymentBackend(PaymentBackend):
    """Installed when remote mode is misconfigured: every payment fails, the process keeps serving"""

    def __init__(self, reason: str):
        self.reason = reason

    async def verify(self, header_text, decoded, requirements):
        return VerifyResult(valid=False, error=self.reason)

    async def settle(self, header_text, decoded, requirements):
        return SettleResult(success=False, error=self.reason)


def create_payment_backend(payment_config: PaymentConfig) -> PaymentBackend:
    """Raises ConfigMissingError in remote mode without a facilitator URL"""
    if payment_config.mock_mode:
        logger.info("x402 running in MOCK mode")
        return MockPaymentBackend()
    return RemoteFacilitatorBackend(
        payment_config.facilitator_base_url,
        api_key=payment_config.facilitator_api_key,
        timeout=payment_config.facilitator_timeout,
    )


# ============================================
# ADAPTER
# ============================================

class FacilitatorAdapter:
    """Boundary-facing x402 operations over one PaymentBackend"""

    def __init__(self, payment_config: PaymentConfig, backend: PaymentBackend = None, reconciler=None):
        self.config = payment_config
        self.backend = backend or create_payment_backend(payment_config)
        self.reconciler = reconciler

    @property
    def is_mock(self) -> bool:
        return self.backend.is_mock

    def build_requirements(self, pay_to: str, amount: str, description: str) -> PaymentRequirements:
        return PaymentRequirements(
            scheme=SCHEME_EXACT,
            network=self.config.network,
            payTo=normalize_address(pay_to),
            asset=normalize_address(self.config.asset_contract or ZERO_ADDRESS),
            description=description,
            mimeType="application/json",
            maxAmountRequired=amount,
            maxTimeoutSeconds=self.config.max_timeout_seconds,
        )

    def decode_header(self, header_text: str) -> DecodedHeader:
        return decode_payment_header(header_text)

    async def verify(self, header_text: str, requirements: PaymentRequirements) -> VerifyResult:
        decoded = self.decode_header(header_text)
        result = await self.backend.verify(header_text, decoded, requirements)
        if result.valid:
            logger.info(f"Payment verified from {_short(result.payer)} value={result.value}")
        else:
            logger.info(f"Payment rejected: {result.error}")
        return result

    async def settle(self, header_text: str, requirements: PaymentRequirements) -> SettleResult:
        decoded = self.decode_header(header_text)
        result = await self.backend.settle(header_text, decoded, requirements)
        if not result.success:
            logger.warning(f"Settlement failed: {(result.error or '')[:200]}")
            return result

        logger.info(f"Payment settled tx={_short(result.txHash)} mock={bool(result.isMock)}")
        if self.config.onchain_crosscheck and self.reconciler and not result.isMock and result.txHash:
            result = await self._crosscheck(result, decoded, requirements)
        return result

    async def _crosscheck(self, result: SettleResult, decoded: DecodedHeader,
                          requirements: PaymentRequirements) -> SettleResult:
        from services.onchain_reconciler import TxStatus

        check = await self.reconciler.verify_transfer(
            result.txHash,
            requirements.network,
            requirements.asset,
            requirements.payTo,
            decoded.value or requirements.maxAmountRequired,
            expected_from=decoded.payer,
        )
        result.onchainStatus = check.status.value
        if check.status in (TxStatus.REVERTED, TxStatus.MISMATCH):
            logger.error(f"On-chain check failed for {_short(result.txHash)}: {check.status.value}")
            result.success = False
            result.error = f"On-chain check failed: {check.status.value}"
        return result

    async def close(self):
        await self.backend.close()
