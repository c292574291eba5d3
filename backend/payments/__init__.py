"""
x402 payment primitives
Wire models, header codec and the facilitator adapter
"""

from .models import (
    PaymentRequirements,
    PaymentHeader,
    PaymentPayload,
    DecodedHeader,
    VerifyResult,
    SettleResult,
    normalize_address,
    is_tx_hash,
)
from .header import encode_payment_header, decode_payment_header
from .facilitator import (
    FacilitatorAdapter,
    PaymentBackend,
    MockPaymentBackend,
    RemoteFacilitatorBackend,
    ResponseKind,
    parse_facilitator_response,
)

__all__ = [
    "PaymentRequirements",
    "PaymentHeader",
    "PaymentPayload",
    "DecodedHeader",
    "VerifyResult",
    "SettleResult",
    "normalize_address",
    "is_tx_hash",
    "encode_payment_header",
    "decode_payment_header",
    "FacilitatorAdapter",
    "PaymentBackend",
    "MockPaymentBackend",
    "RemoteFacilitatorBackend",
    "ResponseKind",
    "parse_facilitator_response",
]
