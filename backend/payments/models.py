"""
x402 wire models for Soulforge

Amounts are always decimal integer strings in the token's smallest unit.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

X402_VERSION = 1
SCHEME_EXACT = "exact"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
AMOUNT_RE = re.compile(r"^[0-9]+$")


def normalize_address(value: str) -> str:
    """Lowercase well-formed EVM addresses; leave anything else untouched"""
    if isinstance(value, str) and ADDRESS_RE.match(value.strip()):
        return value.strip().lower()
    return value


def is_tx_hash(value: str) -> bool:
    return isinstance(value, str) and bool(TX_HASH_RE.match(value))


def _check_amount(value: Union[str, int]) -> str:
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("amount must be an integer string, not a float")
    value = str(value)
    if not AMOUNT_RE.match(value):
        raise ValueError(f"amount must be a non-negative integer string, got {value!r}")
    return value


class PaymentRequirements(BaseModel):
    """Returned in a 402 response. Immutable, produced per request."""
    model_config = ConfigDict(frozen=True)

    scheme: str = SCHEME_EXACT
    network: str
    payTo: str
    asset: str
    description: str
    mimeType: str = "application/json"
    maxAmountRequired: str
    maxTimeoutSeconds: int = 300

    @field_validator("maxAmountRequired", mode="before")
    @classmethod
    def _amount_is_integer_string(cls, value):
        return _check_amount(value)


class PaymentPayload(BaseModel):
    """Signed transfer authorization carried inside a payment header"""
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    value: Optional[str] = None
    validAfter: Optional[int] = None
    validBefore: Optional[int] = None
    nonce: Optional[str] = None
    signature: Optional[str] = None
    asset: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _value_is_integer_string(cls, value):
        return None if value is None else _check_amount(value)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentHeader(BaseModel):
    """Envelope that is JSON + base64 encoded into the X-PAYMENT header"""
    x402Version: int = X402_VERSION
    scheme: str = SCHEME_EXACT
    network: Optional[str] = None
    payload: PaymentPayload

    def to_wire(self) -> Dict[str, Any]:
        return {
            "x402Version": self.x402Version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": self.payload.to_wire(),
        }


# ============================================
# RESULTS
# ============================================

@dataclass
class DecodedHeader:
    """Outcome of decoding an untrusted header; never raised, only returned"""
    payer: Optional[str] = None
    value: Optional[str] = None
    error: Optional[str] = None
    header: Optional[PaymentHeader] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class VerifyResult:
    valid: bool
    payer: Optional[str] = None
    value: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"valid": self.valid}
        for key in ("payer", "value", "error"):
            if getattr(self, key) is not None:
                data[key] = getattr(self, key)
        return data


@dataclass
class SettleResult:
    success: bool
    txHash: Optional[str] = None
    isMock: Optional[bool] = None
    error: Optional[str] = None
    onchainStatus: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": self.success}
        for key in ("txHash", "isMock", "error", "onchainStatus"):
            if getattr(self, key) is not None:
                data[key] = getattr(self, key)
        return data
