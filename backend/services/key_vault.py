"""
Key Vault - custody of per-module agent wallet keys

Features:
- AES-256-GCM encryption, fresh 96-bit IV per call
- Self-contained blob: base64(iv(12) || tag(16) || ciphertext)
- Lazy master key validation (first use, not startup)
- EIP-712 typed-data signing via eth-account

Decrypted keys are returned transiently and must never be logged.
"""

import base64
import binascii
import logging
import os
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from eth_account.messages import encode_typed_data

from infrastructure.errors import ConfigMissingError, DecryptionFailedError

logger = logging.getLogger("KeyVault")

MASTER_KEY_SETTING = "AGENT_WALLET_ENCRYPTION_KEY"
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

DOMAIN_FIELD_TYPES = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)


def _with_domain_types(typed_data: Dict[str, Any]) -> Dict[str, Any]:
    """Add the EIP712Domain schema when the caller only supplied the domain values"""
    types = dict(typed_data["types"])
    if "EIP712Domain" not in types:
        domain = typed_data["domain"]
        types["EIP712Domain"] = [
            {"name": name, "type": kind} for name, kind in DOMAIN_FIELD_TYPES if name in domain
        ]
    return {**typed_data, "types": types}


class KeyVault:
    """Encrypts, decrypts and signs with agent wallet private keys"""

    def __init__(self, master_key_b64: Optional[str] = None):
        self._master_key_b64 = master_key_b64

    def _master_key(self, master_key_b64: Optional[str] = None) -> bytes:
        key_str = master_key_b64 or self._master_key_b64
        if not key_str:
            raise ConfigMissingError(MASTER_KEY_SETTING)

        try:
            key = base64.b64decode(key_str)
        except (binascii.Error, ValueError):
            raise ConfigMissingError(MASTER_KEY_SETTING, f"{MASTER_KEY_SETTING} is not valid base64")

        if len(key) != KEY_LENGTH:
            raise ConfigMissingError(
                MASTER_KEY_SETTING,
                f"{MASTER_KEY_SETTING} must be 32 bytes (got {len(key)}). "
                "Generate with: openssl rand -base64 32"
            )
        return key

    def is_configured(self) -> bool:
        try:
            self._master_key()
            return True
        except ConfigMissingError:
            return False

    def encrypt(self, plaintext_key: str, master_key_b64: Optional[str] = None) -> str:
        key = self._master_key(master_key_b64)
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext; stored layout puts it first
        sealed = AESGCM(key).encrypt(iv, plaintext_key.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str, master_key_b64: Optional[str] = None) -> str:
        key = self._master_key(master_key_b64)
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptionFailedError("Encrypted key blob is not valid base64")

        if len(data) <= IV_LENGTH + TAG_LENGTH:
            raise DecryptionFailedError("Encrypted key blob is truncated")

        iv = data[:IV_LENGTH]
        tag = data[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = data[IV_LENGTH + TAG_LENGTH:]
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            logger.error("Agent key decryption failed (wrong master key or corrupted blob)")
            raise DecryptionFailedError()
        return plaintext.decode("utf-8")

    @staticmethod
    def generate_wallet() -> Tuple[str, str]:
        """New random account -> (address, 0x-prefixed private key)"""
        account = Account.create()
        return account.address, "0x" + bytes(account.key).hex()

    @staticmethod
    def sign(typed_data: Dict[str, Any], plaintext_key: str) -> str:
        """
        EIP-712 signature over {domain, types, primaryType, message}.
        The domain binds the signature to one chain id and verifying contract.
        """
        signable = encode_typed_data(full_message=_with_domain_types(typed_data))
        signed = Account.sign_message(signable, private_key=plaintext_key)
        return "0x" + bytes(signed.signature).hex()

    @staticmethod
    def address_of(plaintext_key: str) -> str:
        return Account.from_key(plaintext_key).address
