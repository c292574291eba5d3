"""
Agent Payment Builder - lets a remix module pay its upstream module

Builds the same x402 envelope an end-user wallet would send, signed with the
module's agent wallet, so upstream payment reuses the Facilitator Adapter.
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

from web3 import Web3

from infrastructure.config import PaymentConfig
from infrastructure.errors import KeyNotFoundError
from payments.header import encode_payment_header
from payments.models import X402_VERSION, SCHEME_EXACT, PaymentHeader, PaymentPayload, SettleResult
from .agent_wallet import AgentWalletManager

logger = logging.getLogger("AgentPayments")

AUTHORIZATION_WINDOW_SECONDS = 300

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


class AgentPaymentBuilder:
    """Signs upstream payment authorizations with a module's agent wallet"""

    def __init__(
        self,
        wallets: AgentWalletManager,
        payment_config: PaymentConfig,
        facilitator=None,
        clock: Callable[[], float] = time.time
    ):
        self.wallets = wallets
        self.config = payment_config
        self.facilitator = facilitator
        self._clock = clock

    def build_typed_data(
        self,
        from_address: str,
        pay_to: str,
        value: str,
        network: str,
        asset: str,
        valid_before: int,
        nonce: str
    ) -> Dict[str, Any]:
        return {
            "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": self.config.eip712_name,
                "version": self.config.eip712_version,
                "chainId": self.config.chain_id_for(network),
                "verifyingContract": Web3.to_checksum_address(asset),
            },
            "message": {
                "from": Web3.to_checksum_address(from_address),
                "to": Web3.to_checksum_address(pay_to),
                "value": int(value),
                "validAfter": 0,
                "validBefore": valid_before,
                "nonce": bytes.fromhex(nonce[2:]),
            },
        }

    async def pay_upstream(self, module_id: str, pay_to: str, value: str, network: str, asset: str) -> str:
        """Signed, transport-encoded payment header from the module's agent wallet"""
        wallet = await self.wallets.get_wallet(module_id)
        if wallet is None:
            raise KeyNotFoundError(module_id)

        valid_before = int(self._clock()) + AUTHORIZATION_WINDOW_SECONDS
        nonce = "0x" + secrets.token_hex(32)
        typed_data = self.build_typed_data(wallet.wallet_address, pay_to, value, network, asset, valid_before, nonce)

        signature, address = await self.wallets.sign_with_agent_wallet(module_id, typed_data)

        header = PaymentHeader(
            x402Version=X402_VERSION,
            scheme=SCHEME_EXACT,
            network=network,
            payload=PaymentPayload(
                **{"from": address},
                to=pay_to,
                value=str(value),
                validAfter=0,
                validBefore=valid_before,
                nonce=nonce,
                signature=signature,
                asset=asset,
            ),
        )
        logger.info(f"Upstream payment signed by module {module_id} to {pay_to[:10]}... value={value}")
        return encode_payment_header(header)

    async def settle_upstream(
        self,
        module_id: str,
        pay_to: str,
        value: str,
        description: Optional[str] = None
    ) -> SettleResult:
        """Pay an upstream module end to end: requirements, sign, verify, settle"""
        if self.facilitator is None:
            raise RuntimeError("AgentPaymentBuilder has no facilitator attached")

        requirements = self.facilitator.build_requirements(
            pay_to, value, description or f"upstream payment from module:{module_id}")
        header = await self.pay_upstream(
            module_id, requirements.payTo, value, requirements.network, requirements.asset)

        verified = await self.facilitator.verify(header, requirements)
        if not verified.valid:
            logger.warning(f"Upstream payment for {module_id} rejected: {verified.error}")
            return SettleResult(success=False, error=verified.error)

        return await self.facilitator.settle(header, requirements)
