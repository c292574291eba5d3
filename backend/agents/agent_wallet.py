"""
Agent Wallet System - server-custodied wallets for remix modules
Lets a derivative module pay its upstream module without a human signer

Features:
- One wallet per module; re-creation rotates the key and bumps key_version
- Private key stored only as an AES-256-GCM blob (see services/key_vault.py)
- EIP-712 signing with the decrypted key, never persisted or logged
- Memory store for dev/tests, Supabase (PostgREST) store for production
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from infrastructure.errors import KeyNotFoundError
from infrastructure.supabase_rest import SupabaseREST
from services.key_vault import KeyVault

logger = logging.getLogger("AgentWallet")

AGENT_WALLETS_TABLE = "agent_wallets"


@dataclass
class AgentWallet:
    """Public view of an agent wallet (no key material)"""
    id: str
    module_id: str
    wallet_address: str
    key_version: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "moduleId": self.module_id,
            "walletAddress": self.wallet_address,
            "keyVersion": self.key_version,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class StoredAgentWallet(AgentWallet):
    encrypted_private_key: str = field(default="", repr=False)

    def public(self) -> AgentWallet:
        return AgentWallet(self.id, self.module_id, self.wallet_address, self.key_version, self.created_at)


# ===========================================
# STORES
# ===========================================

class AgentWalletStore:
    """Persistence interface, keyed by module id"""

    async def get(self, module_id: str) -> Optional[StoredAgentWallet]:
        raise NotImplementedError

    async def upsert(self, module_id: str, wallet_address: str, encrypted_private_key: str) -> StoredAgentWallet:
        """Insert with key_version=1, or replace address/key and increment key_version"""
        raise NotImplementedError

    async def delete(self, module_id: str) -> bool:
        raise NotImplementedError


class MemoryAgentWalletStore(AgentWalletStore):

    def __init__(self):
        self._wallets: Dict[str, StoredAgentWallet] = {}

    async def get(self, module_id):
        return self._wallets.get(module_id)

    async def upsert(self, module_id, wallet_address, encrypted_private_key):
        existing = self._wallets.get(module_id)
        if existing:
            existing.wallet_address = wallet_address
            existing.encrypted_private_key = encrypted_private_key
            existing.key_version += 1
            return existing

        wallet = StoredAgentWallet(
            id=str(uuid.uuid4()),
            module_id=module_id,
            wallet_address=wallet_address,
            key_version=1,
            created_at=datetime.now(timezone.utc),
            encrypted_private_key=encrypted_private_key,
        )
        self._wallets[module_id] = wallet
        return wallet

    async def delete(self, module_id):
        return self._wallets.pop(module_id, None) is not None


class SupabaseAgentWalletStore(AgentWalletStore):
    """agent_wallets table: id, module_id (unique), wallet_address, encrypted_private_key, key_version, created_at"""

    def __init__(self, supabase: SupabaseREST):
        self.supabase = supabase

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> StoredAgentWallet:
        created_at = row.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        return StoredAgentWallet(
            id=str(row["id"]),
            module_id=row["module_id"],
            wallet_address=row["wallet_address"],
            key_version=int(row.get("key_version") or 1),
            created_at=created_at or datetime.now(timezone.utc),
            encrypted_private_key=row.get("encrypted_private_key") or "",
        )

    async def get(self, module_id):
        result = await self.supabase.table(AGENT_WALLETS_TABLE).select("*").eq("module_id", module_id).single().execute()
        return self._from_row(result.data) if result.data else None

    async def upsert(self, module_id, wallet_address, encrypted_private_key):
        existing = await self.get(module_id)
        if existing:
            result = await self.supabase.table(AGENT_WALLETS_TABLE).update({
                "wallet_address": wallet_address,
                "encrypted_private_key": encrypted_private_key,
                "key_version": existing.key_version + 1,
            }).eq("module_id", module_id).execute()
        else:
            result = await self.supabase.table(AGENT_WALLETS_TABLE).insert({
                "module_id": module_id,
                "wallet_address": wallet_address,
                "encrypted_private_key": encrypted_private_key,
                "key_version": 1,
            }).execute()
        return self._from_row(result.data[0])

    async def delete(self, module_id):
        result = await self.supabase.table(AGENT_WALLETS_TABLE).delete().eq("module_id", module_id).execute()
        return bool(result.data)


# ===========================================
# MANAGER
# ===========================================

class AgentWalletManager:
    """
    Manages agent wallets for modules

    Security Model:
    - Master key lives only in config (AGENT_WALLET_ENCRYPTION_KEY)
    - Stored blob is useless without it
    - Decrypted key exists only for the duration of one signature
    """

    def __init__(self, store: AgentWalletStore, vault: KeyVault):
        self.store = store
        self.vault = vault

    async def create_wallet(self, module_id: str) -> AgentWallet:
        address, private_key = self.vault.generate_wallet()
        encrypted = self.vault.encrypt(private_key)
        wallet = await self.store.upsert(module_id, address, encrypted)
        logger.info(f"Agent wallet {address[:10]}... for module {module_id} (key v{wallet.key_version})")
        return wallet.public()

    async def get_wallet(self, module_id: str) -> Optional[AgentWallet]:
        wallet = await self.store.get(module_id)
        return wallet.public() if wallet else None

    async def sign_with_agent_wallet(self, module_id: str, typed_data: Dict[str, Any]) -> Tuple[str, str]:
        """EIP-712 sign with the module's key -> (signature, wallet_address)"""
        wallet = await self.store.get(module_id)
        if wallet is None:
            raise KeyNotFoundError(module_id)

        private_key = self.vault.decrypt(wallet.encrypted_private_key)
        signature = self.vault.sign(typed_data, private_key)
        return signature, wallet.wallet_address

    async def delete_wallet(self, module_id: str) -> bool:
        """Called when the owning module is deleted"""
        deleted = await self.store.delete(module_id)
        if deleted:
            logger.info(f"Agent wallet removed for module {module_id}")
        return deleted
