"""
Service container - process-scoped construction of the payment core

Everything is built once at startup and handed to request handlers through
app.state; nothing below reads module globals.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .config import Environment, SoulforgeConfig
from .counter_store import CounterStore, create_counter_store
from .errors import ConfigMissingError
from .rpc import RPCRegistry
from .supabase_rest import SupabaseREST

if TYPE_CHECKING:
    from agents.agent_payments import AgentPaymentBuilder
    from agents.agent_wallet import AgentWalletManager
    from payments.facilitator import FacilitatorAdapter
    from services.entitlements import EntitlementManager
    from services.key_vault import KeyVault
    from services.onchain_reconciler import OnchainReconciler
    from services.payment_gate import PaymentGate
    from services.payment_ledger import PaymentLedger

logger = logging.getLogger("Container")


@dataclass
class Services:
    config: SoulforgeConfig
    counter_store: CounterStore
    rpc_registry: RPCRegistry
    reconciler: "OnchainReconciler"
    facilitator: "FacilitatorAdapter"
    vault: "KeyVault"
    entitlements: "EntitlementManager"
    ledger: "PaymentLedger"
    agent_wallets: "AgentWalletManager"
    agent_payments: "AgentPaymentBuilder"
    gate: "PaymentGate"
    supabase: Optional[SupabaseREST] = None

    async def close(self):
        await self.facilitator.close()
        await self.counter_store.close()
        if self.supabase:
            await self.supabase.close()
        logger.info("Services closed")


async def build_services(
    config: SoulforgeConfig,
    counter_store: CounterStore = None,
    payment_backend=None,
    rpc_registry: RPCRegistry = None
) -> Services:
    """Wire the core; test code passes fakes for the external edges"""
    from agents.agent_payments import AgentPaymentBuilder
    from agents.agent_wallet import AgentWalletManager, MemoryAgentWalletStore, SupabaseAgentWalletStore
    from payments.facilitator import FacilitatorAdapter, UnavailablePaymentBackend, create_payment_backend
    from services.entitlements import EntitlementManager
    from services.key_vault import KeyVault
    from services.onchain_reconciler import OnchainReconciler
    from services.payment_gate import PaymentGate
    from services.payment_ledger import PaymentLedger
    from services.session_pass import SessionPassService
    from services.try_once import TryOnceService

    config.warn_on_missing_secrets()

    store = counter_store or await create_counter_store(config.cache, config.environment)
    rpc_registry = rpc_registry or RPCRegistry(config.chain)
    reconciler = OnchainReconciler(rpc_registry)

    if payment_backend is None:
        try:
            payment_backend = create_payment_backend(config.payments)
        except ConfigMissingError as e:
            logger.error(f"Payments disabled: {e.message}")
            payment_backend = UnavailablePaymentBackend(e.message)
    facilitator = FacilitatorAdapter(config.payments, payment_backend, reconciler=reconciler)

    vault = KeyVault(config.security.agent_wallet_encryption_key)
    if config.security.agent_wallet_encryption_key and not vault.is_configured():
        logger.warning("AGENT_WALLET_ENCRYPTION_KEY is not a base64 32-byte key - agent wallets disabled")

    supabase = None
    if config.supabase.enabled:
        supabase = SupabaseREST(config.supabase)
        wallet_store = SupabaseAgentWalletStore(supabase)
    else:
        if config.environment == Environment.PRODUCTION:
            logger.warning("Supabase not configured - agent wallets are kept in memory only")
        wallet_store = MemoryAgentWalletStore()

    agent_wallets = AgentWalletManager(wallet_store, vault)
    agent_payments = AgentPaymentBuilder(agent_wallets, config.payments, facilitator=facilitator)

    entitlements = EntitlementManager(
        TryOnceService(store),
        SessionPassService(store, config.security.jwt_secret),
    )
    ledger = PaymentLedger()
    gate = PaymentGate(facilitator, entitlements, ledger, agent_payments=agent_payments)

    logger.info(
        f"Payment core ready: network={config.payments.network} "
        f"mock={facilitator.is_mock} store={type(store).__name__}"
    )
    return Services(
        config=config,
        counter_store=store,
        rpc_registry=rpc_registry,
        reconciler=reconciler,
        facilitator=facilitator,
        vault=vault,
        entitlements=entitlements,
        ledger=ledger,
        agent_wallets=agent_wallets,
        agent_payments=agent_payments,
        gate=gate,
        supabase=supabase,
    )
