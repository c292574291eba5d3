"""
Payment core services
Key custody, on-chain reconciliation and usage entitlements
"""

from .key_vault import KeyVault
from .onchain_reconciler import OnchainReconciler, TxStatus, VerifyPaymentTxResult, TokenTransfer
from .try_once import TryOnceService, TryOnceEligibility, truncate_for_preview
from .session_pass import (
    SessionPassService,
    SessionPolicy,
    SessionPassInfo,
    SessionPassValidation,
    DEFAULT_SESSION_POLICY,
    supports_session_pass,
)
from .entitlements import EntitlementManager
from .payment_ledger import PaymentLedger, PaymentEvent, PaymentEventType
from .payment_gate import PaymentGate, ModuleOffer, GateRequest, GateOutcome, UpstreamPayment

__all__ = [
    # Key Vault
    "KeyVault",

    # Reconciler
    "OnchainReconciler",
    "TxStatus",
    "VerifyPaymentTxResult",
    "TokenTransfer",

    # Entitlements
    "TryOnceService",
    "TryOnceEligibility",
    "truncate_for_preview",
    "SessionPassService",
    "SessionPolicy",
    "SessionPassInfo",
    "SessionPassValidation",
    "DEFAULT_SESSION_POLICY",
    "supports_session_pass",
    "EntitlementManager",

    # Ledger / gate
    "PaymentLedger",
    "PaymentEvent",
    "PaymentEventType",
    "PaymentGate",
    "ModuleOffer",
    "GateRequest",
    "GateOutcome",
    "UpstreamPayment",
]
