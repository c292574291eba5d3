"""
Payment header transport codec

The header is base64(JSON) of the x402 envelope. Input comes from untrusted
clients, so decoding never raises: failures come back as DecodedHeader.error.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Union

from pydantic import ValidationError as PydanticValidationError

from .models import DecodedHeader, PaymentHeader, normalize_address

logger = logging.getLogger("PaymentHeader")


def encode_payment_header(header: Union[PaymentHeader, Dict[str, Any]]) -> str:
    """Serialize an envelope to the opaque transport string"""
    if isinstance(header, PaymentHeader):
        header = header.to_wire()
    raw = json.dumps(header, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_payment_header(header_text: str) -> DecodedHeader:
    """Parse the transport string into payer/value, or an error"""
    if not header_text or not isinstance(header_text, str):
        return DecodedHeader(error="Missing payment header")

    try:
        raw = base64.b64decode(header_text.strip(), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return DecodedHeader(error="Failed to decode payment header")

    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
        return DecodedHeader(error="Invalid payment structure")

    try:
        header = PaymentHeader.model_validate(data)
    except PydanticValidationError as e:
        logger.debug(f"Payment header rejected: {e.error_count()} validation errors")
        return DecodedHeader(error="Invalid payment structure")

    payload = header.payload
    return DecodedHeader(
        payer=normalize_address(payload.from_) if payload.from_ else None,
        value=payload.value,
        header=header,
    )
