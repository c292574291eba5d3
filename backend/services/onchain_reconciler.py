"""
On-Chain Reconciler for Soulforge
Independently confirms token payments by reading the chain directly

Features:
- verify_transfer: receipt + Transfer log matching (exact integer value)
- list_transfers_to: binary-searched start block, adaptive chunked log scan
- Status-dependent result caching (confirmed 24h, not_found 20s, others 5min)
- Bounded worker pool for block timestamp enrichment

Caches are per-process and a pure optimization: every path re-queries the
chain when they are empty.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from infrastructure.config import normalize_network
from infrastructure.rpc import ChainRPC, RPCRegistry
from infrastructure.ttl_cache import TTLCache
from payments.models import is_tx_hash

logger = logging.getLogger("OnchainReconciler")

# Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

CONFIRMED_TTL = 24 * 60 * 60
NOT_FOUND_TTL = 20
DEFAULT_TTL = 5 * 60

INITIAL_CHUNK_BLOCKS = 100_000
MIN_CHUNK_BLOCKS = 5_000
TIMESTAMP_WORKERS = 10

T = TypeVar("T")
U = TypeVar("U")


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    NOT_FOUND = "not_found"
    REVERTED = "reverted"
    MISMATCH = "mismatch"
    UNSUPPORTED_NETWORK = "unsupported_network"
    ERROR = "error"


@dataclass
class VerifyPaymentTxResult:
    status: TxStatus
    tx_hash: str
    network: str
    block_number: Optional[str] = None
    block_timestamp: Optional[str] = None  # ISO-8601
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value: Optional[str] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == TxStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status.value, "txHash": self.tx_hash, "network": self.network}
        if self.confirmed:
            data.update({
                "blockNumber": self.block_number,
                "blockTimestamp": self.block_timestamp,
                "from": self.from_address,
                "to": self.to_address,
                "value": self.value,
            })
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TokenTransfer:
    tx_hash: str
    network: str
    asset_contract: str
    block_number: int
    block_timestamp: str
    log_index: int
    from_address: str
    to_address: str
    value: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "network": self.network,
            "assetContract": self.asset_contract,
            "blockNumber": str(self.block_number),
            "blockTimestamp": self.block_timestamp,
            "logIndex": self.log_index,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
        }


@dataclass
class TransferScan:
    transfers: List[TokenTransfer] = field(default_factory=list)
    from_block: int = 0
    to_block: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfers": [t.to_dict() for t in self.transfers],
            "meta": {"fromBlock": str(self.from_block), "toBlock": str(self.to_block)},
        }


# ============================================
# HELPERS
# ============================================

def _hex(value: Any) -> str:
    """bytes / HexBytes / str -> lowercase hex without 0x"""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    text = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    text = text.lower()
    return text[2:] if text.startswith("0x") else text


def _lower(address: str) -> str:
    return address.strip().lower()


def _topic_for_address(address: str) -> str:
    return "0x" + _lower(address)[2:].rjust(64, "0")


def _iso(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _short(value: str) -> str:
    return f"{value[:10]}..."


def decode_transfer_log(log: Dict[str, Any]) -> Optional[Tuple[str, str, int]]:
    """(from, to, value) for an ERC-20 Transfer log, None if it is not one"""
    try:
        topics = log["topics"]
        if len(topics) != 3 or _hex(topics[0]) != TRANSFER_TOPIC[2:]:
            return None
        data_hex = _hex(log["data"])
        if not data_hex:
            return None
        from_addr = "0x" + _hex(topics[1])[-40:]
        to_addr = "0x" + _hex(topics[2])[-40:]
        return from_addr, to_addr, int(data_hex, 16)
    except (KeyError, TypeError, ValueError):
        return None


async def map_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T], Awaitable[U]]
) -> List[U]:
    """Run fn over items with at most `concurrency` calls in flight, keeping order"""
    results: List[Optional[U]] = [None] * len(items)
    next_index = 0

    async def worker():
        nonlocal next_index
        while next_index < len(items):
            current = next_index
            next_index += 1
            results[current] = await fn(items[current])

    await asyncio.gather(*(worker() for _ in range(min(concurrency, len(items)))))
    return results


# ============================================
# RECONCILER
# ============================================

class OnchainReconciler:
    """Read-only payment confirmation against chain RPC"""

    def __init__(
        self,
        rpc_registry: RPCRegistry,
        initial_chunk: int = INITIAL_CHUNK_BLOCKS,
        min_chunk: int = MIN_CHUNK_BLOCKS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.rpc_registry = rpc_registry
        self.initial_chunk = initial_chunk
        self.min_chunk = min_chunk
        self._verify_cache = TTLCache(max_entries=10000, clock=clock)
        self._timestamp_cache = TTLCache(max_entries=100000, clock=clock)

    # ── verify ──

    def _cache_result(self, key: tuple, result: VerifyPaymentTxResult) -> VerifyPaymentTxResult:
        if result.status == TxStatus.CONFIRMED:
            ttl = CONFIRMED_TTL
        elif result.status == TxStatus.NOT_FOUND:
            ttl = NOT_FOUND_TTL
        else:
            ttl = DEFAULT_TTL
        self._verify_cache.set(key, result, ttl)
        return result

    async def verify_transfer(
        self,
        tx_hash: str,
        network: str,
        asset_contract: str,
        expected_to: str,
        expected_value: str,
        expected_from: Optional[str] = None
    ) -> VerifyPaymentTxResult:
        """Confirm that tx_hash moved exactly expected_value of the asset to expected_to"""
        key = (network, asset_contract, tx_hash, expected_to, str(expected_value), expected_from or "")
        cached = self._verify_cache.get(key)
        if cached is not None:
            return cached

        if not is_tx_hash(tx_hash):
            return self._cache_result(key, VerifyPaymentTxResult(
                TxStatus.ERROR, tx_hash, network, error="Invalid txHash format"))

        canonical = normalize_network(network)
        if canonical is None:
            return self._cache_result(key, VerifyPaymentTxResult(
                TxStatus.UNSUPPORTED_NETWORK, tx_hash, network, error=f"Unsupported network: {network}"))

        try:
            want_value = int(str(expected_value))
        except ValueError:
            return self._cache_result(key, VerifyPaymentTxResult(
                TxStatus.ERROR, tx_hash, canonical, error="Invalid expectedValue"))

        try:
            rpc = self.rpc_registry.get(canonical)
            result = await self._verify_receipt(
                rpc, tx_hash, canonical,
                asset=_lower(asset_contract),
                expected_to=_lower(expected_to),
                expected_value=want_value,
                expected_from=_lower(expected_from) if expected_from else None,
            )
        except Exception as e:
            logger.warning(f"RPC error verifying {_short(tx_hash)} on {canonical}: {e}")
            result = VerifyPaymentTxResult(TxStatus.ERROR, tx_hash, canonical, error=str(e) or type(e).__name__)

        logger.info(f"Verified {_short(tx_hash)} on {canonical}: {result.status.value}")
        return self._cache_result(key, result)

    async def _verify_receipt(
        self,
        rpc: ChainRPC,
        tx_hash: str,
        network: str,
        asset: str,
        expected_to: str,
        expected_value: int,
        expected_from: Optional[str]
    ) -> VerifyPaymentTxResult:
        receipt = await rpc.get_transaction_receipt(tx_hash)
        if receipt is None:
            return VerifyPaymentTxResult(
                TxStatus.NOT_FOUND, tx_hash, network, error="Transaction receipt not found")

        if int(receipt["status"]) == 0:
            return VerifyPaymentTxResult(TxStatus.REVERTED, tx_hash, network, error="Transaction reverted")

        matched = None
        for log in receipt["logs"]:
            address = log.get("address")
            if not address or _lower(address) != asset:
                continue
            decoded = decode_transfer_log(log)
            if decoded is None:
                continue
            from_addr, to_addr, value = decoded
            if to_addr != expected_to or value != expected_value:
                continue
            if expected_from and from_addr != expected_from:
                continue
            matched = decoded
            break

        if matched is None:
            return VerifyPaymentTxResult(
                TxStatus.MISMATCH, tx_hash, network,
                error="No matching Transfer event found in receipt logs")

        block_number = int(receipt["blockNumber"])
        timestamp = await self._block_timestamp(rpc, network, block_number)
        from_addr, to_addr, value = matched
        return VerifyPaymentTxResult(
            TxStatus.CONFIRMED, tx_hash, network,
            block_number=str(block_number),
            block_timestamp=timestamp,
            from_address=from_addr,
            to_address=to_addr,
            value=str(value),
        )

    # ── list ──

    async def _block_timestamp(self, rpc: ChainRPC, network: str, block_number: int) -> str:
        key = (network, block_number)
        cached = self._timestamp_cache.get(key)
        if cached is not None:
            return cached
        iso = _iso(await rpc.get_block_timestamp(block_number))
        # Mined block timestamps never change
        self._timestamp_cache.set(key, iso)
        return iso

    async def _find_block_by_timestamp(self, rpc: ChainRPC, head: int, target_timestamp: int) -> int:
        """Smallest block number in [0, head] whose timestamp is >= target"""
        low, high = 0, head
        while low < high:
            mid = (low + high) // 2
            if await rpc.get_block_timestamp(mid) < target_timestamp:
                low = mid + 1
            else:
                high = mid
        return low

    async def _get_logs_chunked(
        self,
        get_logs: Callable[[int, int], Awaitable[List[Dict[str, Any]]]],
        from_block: int,
        to_block: int
    ) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        cursor = from_block
        step = self.initial_chunk

        while cursor <= to_block:
            end = min(cursor + step - 1, to_block)
            try:
                logs.extend(await get_logs(cursor, end))
                cursor = end + 1
            except Exception as e:
                if step <= self.min_chunk:
                    logger.error(f"Log scan failed at block {cursor} with step {step}: {e}")
                    raise
                step //= 2
                logger.warning(f"Log query {cursor}-{end} failed, retrying with step {step}: {e}")

        return logs

    async def list_transfers_to(
        self,
        network: str,
        asset_contract: str,
        to_addresses: Sequence[str],
        since_timestamp: float
    ) -> TransferScan:
        """Transfers of the asset to any of to_addresses since a unix timestamp, newest first"""
        canonical = normalize_network(network)
        if canonical is None or not to_addresses:
            return TransferScan()

        rpc = self.rpc_registry.get(canonical)
        asset = _lower(asset_contract)
        to_topics = [_topic_for_address(a) for a in to_addresses]

        to_block = await rpc.block_number()
        from_block = await self._find_block_by_timestamp(rpc, to_block, int(since_timestamp))

        logs = await self._get_logs_chunked(
            lambda start, end: rpc.get_logs(asset, [TRANSFER_TOPIC, None, to_topics], start, end),
            from_block,
            to_block,
        )

        async def enrich(log: Dict[str, Any]) -> Optional[TokenTransfer]:
            decoded = decode_transfer_log(log)
            if decoded is None:
                return None
            block_number = int(log["blockNumber"])
            from_addr, to_addr, value = decoded
            return TokenTransfer(
                tx_hash="0x" + _hex(log["transactionHash"]),
                network=canonical,
                asset_contract=asset,
                block_number=block_number,
                block_timestamp=await self._block_timestamp(rpc, canonical, block_number),
                log_index=int(log["logIndex"]),
                from_address=from_addr,
                to_address=to_addr,
                value=str(value),
            )

        enriched = await map_with_concurrency(logs, TIMESTAMP_WORKERS, enrich)
        transfers = [t for t in enriched if t is not None]
        transfers.sort(key=lambda t: (t.block_timestamp, t.block_number, t.log_index), reverse=True)

        logger.info(
            f"Found {len(transfers)} transfers on {canonical} "
            f"blocks {from_block}-{to_block} for {len(to_addresses)} addresses"
        )
        return TransferScan(transfers, from_block, to_block)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "verify_cache": self._verify_cache.get_stats(),
            "timestamp_cache": self._timestamp_cache.get_stats(),
        }
