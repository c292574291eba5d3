"""
x402 API Router
Demo paid endpoint plus read-only access to the payment core
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from infrastructure.container import Services
from infrastructure.errors import BlockchainError, PaymentRequiredError, ValidationError
from services.payment_gate import GateRequest, ModuleOffer

logger = logging.getLogger("x402API")

router = APIRouter(tags=["x402"])

# Lowercase so strict mixed-case checksum validation in clients never trips
DEMO_PAY_TO = "0x742d35cc6634c0532925a3b844bc9e7595f8bbf5"
DEMO_PRICE = "10000"  # 0.01 USDC (6 decimals)
DEMO_MODULE_ID = "demo-module"


# ============================================
# MODELS
# ============================================

class EchoRequest(BaseModel):
    message: str = "Hello"


class VerifyTxRequest(BaseModel):
    """On-chain verification of a claimed payment"""
    txHash: str
    expectedTo: str
    expectedValue: str
    expectedFrom: Optional[str] = None
    network: Optional[str] = None
    assetContract: Optional[str] = None


# ============================================
# HELPERS
# ============================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def _asset_or_error(services: Services, asset: Optional[str]) -> str:
    asset = asset or services.config.payments.asset_contract
    if not asset:
        raise ValidationError("assetContract is required (X402_ASSET_CONTRACT not configured)")
    return asset


# ============================================
# DEMO PAID ENDPOINT
# ============================================

@router.post("/api/premium/echo")
async def premium_echo(
    body: Optional[EchoRequest] = Body(None),
    x_payment: Optional[str] = Header(None),
    x_session_pass: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    """Echo a message behind a one-message x402 paywall"""
    message = (body or EchoRequest()).message
    offer = ModuleOffer(module_id=DEMO_MODULE_ID, pay_to=DEMO_PAY_TO, price_amount=DEMO_PRICE, free_try=False)
    gate_request = GateRequest(payment_header=x_payment, session_pass=x_session_pass, mode="paid")

    async def generate(preview: bool) -> str:
        return message

    outcome = await services.gate.handle(offer, gate_request, generate)
    if outcome.status_code == 402:
        raise PaymentRequiredError.from_body(outcome.body)
    if outcome.status_code != 200:
        raise HTTPException(status_code=outcome.status_code, detail=outcome.body)

    response = {"echo": outcome.body["reply"]}
    for key in ("payment", "sessionPass"):
        if key in outcome.body:
            response[key] = outcome.body[key]
    return response


@router.get("/api/premium/payments")
async def list_payments(
    module_id: Optional[str] = Query(None, alias="moduleId"),
    services: Services = Depends(get_services)
):
    return {"payments": [p.to_dict() for p in services.ledger.list(module_id)]}


# ============================================
# PAYMENT CORE
# ============================================

@router.get("/api/x402/requirements")
async def payment_requirements(
    pay_to: str = Query(..., alias="payTo"),
    amount: str = Query(...),
    description: str = Query("x402 payment"),
    services: Services = Depends(get_services)
):
    try:
        requirements = services.facilitator.build_requirements(pay_to, amount, description)
    except PydanticValidationError as e:
        raise ValidationError("Invalid payment requirements", {"errors": e.errors(include_url=False, include_context=False)}) from e
    return {"paymentRequirements": requirements.model_dump()}


@router.post("/api/x402/verify-tx")
async def verify_tx(request: VerifyTxRequest, services: Services = Depends(get_services)):
    """Confirm a claimed payment directly against the chain"""
    result = await services.reconciler.verify_transfer(
        request.txHash,
        request.network or services.config.payments.network,
        _asset_or_error(services, request.assetContract),
        request.expectedTo,
        request.expectedValue,
        expected_from=request.expectedFrom,
    )
    return result.to_dict()


@router.get("/api/x402/transfers")
async def list_transfers(
    to: str = Query(..., description="Comma-separated recipient addresses"),
    since: int = Query(..., description="Unix timestamp (seconds)"),
    network: Optional[str] = Query(None),
    asset: Optional[str] = Query(None),
    services: Services = Depends(get_services)
):
    network = network or services.config.payments.network
    asset = _asset_or_error(services, asset)
    addresses = [a.strip() for a in to.split(",") if a.strip()]
    try:
        scan = await services.reconciler.list_transfers_to(network, asset, addresses, since)
    except Exception as e:
        logger.error(f"Transfer scan failed on {network}: {e}")
        raise BlockchainError(network, "Transfer scan failed") from e
    return scan.to_dict()


@router.get("/api/x402/session-pass")
async def session_pass_status(
    x_session_pass: Optional[str] = Header(None),
    services: Services = Depends(get_services)
):
    if not x_session_pass:
        raise ValidationError("X-Session-Pass header is required")

    validation = await services.entitlements.session_passes.validate(x_session_pass)
    body = {"valid": validation.valid}
    if validation.payload:
        body["payload"] = validation.payload.to_dict()
    if validation.error:
        body["error"] = validation.error
    return body
