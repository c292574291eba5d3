# infrastructure/rpc.py
"""
Centralized chain RPC access for Soulforge.
Thin async wrapper over web3's AsyncWeb3 exposing only the JSON-RPC surface
the reconciler needs: receipts, blocks, logs and the head block number.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import TransactionNotFound

from .config import ChainConfig, normalize_network

logger = logging.getLogger("ChainRPC")


class ChainRPC:
    """Async JSON-RPC client for one network"""

    def __init__(self, network: str, rpc_url: str, request_timeout: int = 30, w3: AsyncWeb3 = None):
        self.network = network
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """eth_getTransactionReceipt; None while the tx is unknown/pending"""
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def block_number(self) -> int:
        """eth_blockNumber"""
        return int(await self.w3.eth.block_number)

    async def get_block_timestamp(self, block_number: int) -> int:
        """eth_getBlockByNumber -> unix seconds"""
        block = await self.w3.eth.get_block(block_number)
        return int(block["timestamp"])

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Any],
        from_block: int,
        to_block: int
    ) -> List[Dict[str, Any]]:
        """eth_getLogs for one contract over an inclusive block range"""
        return list(await self.w3.eth.get_logs({
            "address": Web3.to_checksum_address(address),
            "topics": list(topics),
            "fromBlock": from_block,
            "toBlock": to_block,
        }))


class RPCRegistry:
    """One ChainRPC per (network, rpc_url), created lazily"""

    def __init__(self, chain_config: ChainConfig):
        self.chain_config = chain_config
        self._clients: Dict[str, ChainRPC] = {}

    def get(self, network: str) -> ChainRPC:
        canonical = normalize_network(network)
        if canonical is None:
            raise ValueError(f"Unsupported network: {network}")

        rpc_url = self.chain_config.rpc_url_for(canonical)
        key = f"{canonical}:{rpc_url}"
        client = self._clients.get(key)
        if client is None:
            client = ChainRPC(canonical, rpc_url, self.chain_config.request_timeout)
            self._clients[key] = client
            logger.info(f"RPC client created for {canonical}")
        return client
