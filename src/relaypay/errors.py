"""
RelayPay error types.

Every failure carries a stable ``code`` tag so callers (and UIs) can decide
between retrying, asking the user to act, or showing a final rejection.
"""

from __future__ import annotations

from typing import Optional


class RelayPayError(Exception):
    """Base error for all RelayPay operations."""

    code = "RelayPayError"
    retryable = False


class InvalidInputError(RelayPayError, ValueError):
    """Malformed address, amount or configuration. Rejected before any I/O."""

    code = "InvalidInput"


class UnknownTierError(InvalidInputError):
    """Requested subscription tier does not exist."""

    code = "UnknownTier"

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Unknown tier: {tier}")


# Transport errors
class NetworkError(RelayPayError):
    """RPC node, relay or credential API unreachable, failing or timed out."""

    code = "NetworkError"
    retryable = True
    indeterminate = False


class RpcError(NetworkError):
    """JSON-RPC node returned an error object."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.rpc_code = error.get("code")
        super().__init__(f"RPC {method} failed ({self.rpc_code}): {error.get('message', 'unknown error')}")


class RelayTimeoutError(NetworkError):
    """Stopped waiting for a relayed transaction. It may still succeed on-chain."""

    indeterminate = True

    def __init__(self, tx_id: str, timeout: float, last_state: Optional[str] = None):
        self.tx_id = tx_id
        self.timeout = timeout
        self.last_state = last_state
        super().__init__(
            f"Relay transaction {tx_id} not confirmed after {timeout:.0f}s "
            f"(last state: {last_state or 'unknown'}); outcome indeterminate"
        )


# Signing / chain errors
class SignatureRejectedError(RelayPayError):
    """The owner declined a signing prompt."""

    code = "SignatureRejected"


class OnChainRevertError(RelayPayError):
    """A submitted transaction failed on-chain."""

    code = "OnChainRevert"

    def __init__(self, tx_id: str, state: str, tx_hash: Optional[str] = None):
        self.tx_id = tx_id
        self.state = state
        self.tx_hash = tx_hash
        super().__init__(f"Relay transaction {tx_id} ended in {state}")


class CredentialDerivationError(RelayPayError):
    """Neither deriving nor creating an API credential succeeded."""

    code = "CredentialDerivationFailure"


# Payment verification errors (permanent for a given tx id)
class PaymentVerificationError(RelayPayError):
    """Base error for rejected settlement transactions."""

    code = "PaymentVerificationError"

    def __init__(self, tx_id: str, message: str):
        self.tx_id = tx_id
        super().__init__(message)


class TransactionFailedError(PaymentVerificationError):
    code = "TransactionFailed"


class NoTransferFoundError(PaymentVerificationError):
    code = "NoTransferFound"


class MalformedLogError(PaymentVerificationError):
    code = "MalformedLog"


class WrongRecipientError(PaymentVerificationError):
    code = "WrongRecipient"

    def __init__(self, tx_id: str, recipient: str, expected: str):
        self.recipient = recipient
        self.expected = expected
        super().__init__(tx_id, f"Wrong destination: {recipient} (expected {expected})")


class WrongPayerError(PaymentVerificationError):
    code = "WrongPayer"

    def __init__(self, tx_id: str, payer: str, expected: str):
        self.payer = payer
        self.expected = expected
        super().__init__(tx_id, f"Payment sent from {payer}, not from the owner's account {expected}")


class AmountMismatchError(PaymentVerificationError):
    code = "AmountMismatch"

    def __init__(self, tx_id: str, paid, expected):
        self.paid = paid
        self.expected = expected
        super().__init__(tx_id, f"Amount mismatch. Paid: {paid}, Expected: {expected}")


# Ledger errors
class ReplayedPaymentError(RelayPayError):
    """The transaction was already credited. Nothing was changed."""

    code = "ReplayedPayment"

    def __init__(self, tx_id: str):
        self.tx_id = tx_id
        super().__init__(f"Transaction already processed: {tx_id}")


class PersistenceError(RelayPayError):
    """Storage failure while crediting; needs reconciliation."""

    code = "PersistenceError"


class QuotaExceededError(RelayPayError):
    """No active subscription, or its usage quota is used up."""

    code = "QuotaExceeded"
