"""
Settlement payment verification.

Flow:
1. Fetch the receipt; it must exist and have succeeded
2. Find the settlement token's log in it
3. Decode it as Transfer(from, to, value)
4. Check the recipient (case-insensitive)
5. Check the amount within an absolute tolerance

Verification is read-only and safe to repeat or run concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .address import normalize_address, normalize_hex32, same_address
from .config import ChainConfig
from .errors import (
    AmountMismatchError,
    MalformedLogError,
    NoTransferFoundError,
    TransactionFailedError,
    WrongRecipientError,
)
from .money import from_base_units, to_decimal
from .rpc import ReceiptLog, RpcClient

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass(frozen=True)
class TransferEvent:
    sender: str
    recipient: str
    value: int


@dataclass(frozen=True)
class VerifiedPayment:
    """A settlement transfer that passed every check."""

    tx_id: str
    amount: Decimal
    recipient: str
    payer: Optional[str] = None


def decode_transfer_log(tx_id: str, log: ReceiptLog) -> TransferEvent:
    topics = [t.lower() for t in log.topics]
    if len(topics) != 3 or topics[0] != TRANSFER_TOPIC:
        raise MalformedLogError(tx_id, f"Token log in {tx_id} is not a Transfer event")
    data = log.data[2:] if log.data.lower().startswith("0x") else log.data
    try:
        sender = normalize_address("0x" + topics[1][-40:])
        recipient = normalize_address("0x" + topics[2][-40:])
        if len(data) != 64:
            raise ValueError(f"expected 32 data bytes, got {len(data) // 2}")
        value = int(data, 16)
    except ValueError as e:
        raise MalformedLogError(tx_id, f"Could not decode Transfer log in {tx_id}: {e}") from e
    return TransferEvent(sender=sender, recipient=recipient, value=value)


class PaymentVerifier:
    """Checks a settlement transaction against an expected recipient and amount."""

    def __init__(self, rpc: RpcClient, config: ChainConfig):
        self.rpc = rpc
        self.config = config

    def verify(
        self,
        tx_id: str,
        expected_amount: Decimal | float | int | str,
        expected_recipient: Optional[str] = None,
    ) -> VerifiedPayment:
        tx_id = normalize_hex32(tx_id, "tx_id")
        expected = to_decimal(expected_amount)
        expected_to = normalize_address(expected_recipient or self.config.treasury)

        receipt = self.rpc.get_transaction_receipt(tx_id)
        if receipt is None:
            raise TransactionFailedError(tx_id, f"Transaction {tx_id} not found")
        if not receipt.succeeded:
            raise TransactionFailedError(tx_id, f"Transaction {tx_id} failed on-chain")

        token_logs = [log for log in receipt.logs if _is_address(log.address, self.config.usdc)]
        if not token_logs:
            raise NoTransferFoundError(tx_id, f"No settlement token transfer found in {tx_id}")
        transfers = [entry for entry in token_logs if entry.topics and entry.topics[0].lower() == TRANSFER_TOPIC]
        log = transfers[0] if transfers else token_logs[0]
        transfer = decode_transfer_log(tx_id, log)

        if transfer.recipient != expected_to:
            logger.warning("Payment %s went to %s instead of %s", tx_id, transfer.recipient, expected_to)
            raise WrongRecipientError(tx_id, transfer.recipient, expected_to)

        paid = from_base_units(transfer.value, self.config.usdc_decimals)
        if abs(paid - expected) > self.config.amount_tolerance:
            logger.warning("Payment %s amount %s outside tolerance of %s", tx_id, paid, expected)
            raise AmountMismatchError(tx_id, paid, expected)

        logger.info("Verified payment %s: %s to %s", tx_id, paid, transfer.recipient)
        return VerifiedPayment(tx_id=tx_id, amount=paid, recipient=transfer.recipient, payer=transfer.sender)


def _is_address(candidate: str, expected: str) -> bool:
    try:
        return same_address(candidate, expected)
    except ValueError:
        return False
