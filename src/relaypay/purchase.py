"""
Subscription purchase flow.

Flow:
1. Transfer the tier price from the account to the treasury via the relay
2. Wait for the transfer to confirm
3. Skip transactions that were already credited
4. Verify the receipt against the tier price and treasury, paid from the owner's account
5. Apply the payment to the ledger
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .address import FactoryConfig, derive_account_address, normalize_address, normalize_hex32, same_address
from .audit import AuditTrail, EventType
from .config import ChainConfig
from .errors import PaymentVerificationError, ReplayedPaymentError, WrongPayerError
from .ledger import Subscription, SubscriptionLedger
from .payment import PaymentVerifier, VerifiedPayment
from .session import Session
from .tiers import Tier, get_tier

logger = logging.getLogger(__name__)


class PurchaseFlow:
    """Pays for and credits subscription tiers."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        ledger: SubscriptionLedger,
        config: ChainConfig,
        audit: Optional[AuditTrail] = None,
    ):
        self.verifier = verifier
        self.ledger = ledger
        self.config = config
        self.audit = audit

    def purchase(self, session: Session, tier: str | Tier) -> Subscription:
        tier = tier if isinstance(tier, Tier) else get_tier(tier)
        handle = session.transfer(self.config.treasury, tier.price)
        self._audit(
            EventType.PAYMENT_SUBMITTED,
            owner=session.owner,
            account=session.account_address,
            amount=tier.price,
            tier=tier.name,
            details={"relay_tx_id": handle.tx_id},
        )
        logger.info("Payment for %s submitted as %s, waiting for confirmation", tier.name, handle.tx_id)
        tx_hash = handle.wait()
        return self.credit(session.owner, tier, tx_hash)

    def credit(
        self,
        owner: str,
        tier: str | Tier,
        tx_id: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Verify ``tx_id`` as payment for ``tier`` and apply it to ``owner``."""
        owner = normalize_address(owner)
        tier = tier if isinstance(tier, Tier) else get_tier(tier)
        tx_id = normalize_hex32(tx_id, "tx_id")

        if self.ledger.has_payment(tx_id):
            self._audit(EventType.PAYMENT_REPLAYED, owner=owner, tx_id=tx_id, tier=tier.name, success=False)
            raise ReplayedPaymentError(tx_id)

        try:
            payment = self.verifier.verify(tx_id, tier.price, self.config.treasury)
            self._check_payer(owner, payment)
        except PaymentVerificationError as e:
            self._audit(
                EventType.PAYMENT_REJECTED,
                owner=owner,
                tx_id=tx_id,
                amount=tier.price,
                tier=tier.name,
                success=False,
                reason=str(e),
                details={"code": e.code},
            )
            raise
        self._audit(EventType.PAYMENT_VERIFIED, owner=owner, tx_id=tx_id, amount=payment.amount, tier=tier.name)

        try:
            subscription = self.ledger.apply(owner, tier, payment, now=now)
        except ReplayedPaymentError:
            self._audit(EventType.PAYMENT_REPLAYED, owner=owner, tx_id=tx_id, tier=tier.name, success=False)
            raise
        self._audit(
            EventType.SUBSCRIPTION_APPLIED,
            owner=owner,
            tx_id=tx_id,
            amount=payment.amount,
            tier=tier.name,
            details={"end_date": subscription.end_date.isoformat()},
        )
        return subscription

    def _check_payer(self, owner: str, payment: VerifiedPayment) -> None:
        """The transfer must come from the account derived for ``owner``."""
        if payment.payer is None:
            return
        account = derive_account_address(owner, FactoryConfig.from_chain_config(self.config))
        if not same_address(payment.payer, account):
            raise WrongPayerError(payment.tx_id, payment.payer, account)

    def record_usage(self, owner: str, now: Optional[datetime] = None) -> Subscription:
        subscription = self.ledger.record_usage(owner, now=now)
        self._audit(
            EventType.USAGE_RECORDED,
            owner=subscription.owner,
            tier=subscription.tier,
            details={"usage_count": subscription.usage_count, "quota": subscription.quota},
        )
        return subscription

    def _audit(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)
