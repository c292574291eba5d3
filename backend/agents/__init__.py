"""
Soulforge Agents - autonomous payers for remix modules

- agent_wallet.py: per-module server-custodied wallet (create / rotate / sign)
- agent_payments.py: signs x402 payments to the upstream module
"""

from .agent_wallet import (
    AgentWallet,
    AgentWalletManager,
    AgentWalletStore,
    MemoryAgentWalletStore,
    SupabaseAgentWalletStore,
)
from .agent_payments import AgentPaymentBuilder
