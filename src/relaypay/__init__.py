"""
RelayPay: smart-account trading sessions and on-chain subscription payments.

An owner key is bound to a deterministic Safe account that a relay deploys
and approves for trading. Subscriptions are paid in USDC from that account
and credited exactly once per on-chain transaction.
"""

__version__ = "0.1.0"

from .address import FactoryConfig, derive_account_address
from .approvals import ApprovalChecker, ApprovalStatus, build_approval_operations
from .audit import AuditTrail, EventType
from .config import BuilderCredentials, ChainConfig
from .credentials import (
    Credential,
    CredentialIssuer,
    CredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)
from .ledger import PaymentRecord, Subscription, SubscriptionLedger
from .payment import PaymentVerifier, VerifiedPayment
from .purchase import PurchaseFlow
from .relay import RelayExecutor, TxHandle
from .rpc import RpcClient
from .session import Session, SessionManager, SessionSnapshot, SessionStep
from .signer import LocalAccountSigner, SerializedSigner, Signer
from .tiers import TIERS, Tier, get_tier

__all__ = [
    "FactoryConfig", "derive_account_address",
    "ApprovalChecker", "ApprovalStatus", "build_approval_operations",
    "AuditTrail", "EventType",
    "BuilderCredentials", "ChainConfig",
    "Credential", "CredentialIssuer", "CredentialStore", "FileCredentialStore", "MemoryCredentialStore",
    "PaymentRecord", "Subscription", "SubscriptionLedger",
    "PaymentVerifier", "VerifiedPayment", "PurchaseFlow",
    "RelayExecutor", "TxHandle", "RpcClient",
    "Session", "SessionManager", "SessionSnapshot", "SessionStep",
    "LocalAccountSigner", "SerializedSigner", "Signer",
    "TIERS", "Tier", "get_tier",
]
