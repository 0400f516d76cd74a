"""Tests for the subscription purchase flow."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from relaypay.address import FactoryConfig, derive_account_address
from relaypay.audit import EventType
from relaypay.errors import (
    NetworkError,
    QuotaExceededError,
    ReplayedPaymentError,
    UnknownTierError,
    WrongPayerError,
    WrongRecipientError,
)
from relaypay.ledger import SubscriptionLedger
from relaypay.payment import VerifiedPayment
from relaypay.purchase import PurchaseFlow


OWNER = "0x6d8c4e9adf5748af82dabe2c6225207770d6b4fa"
ACCOUNT = "0x" + "5a" * 20
TX = "0x" + "cd" * 32
NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class FakeVerifier:
    def __init__(self, error=None, payer=None):
        self.error = error
        self.payer = payer
        self.calls = []

    def verify(self, tx_id, expected_amount, expected_recipient=None):
        self.calls.append((tx_id, expected_amount, expected_recipient))
        if self.error is not None:
            raise self.error
        return VerifiedPayment(
            tx_id=tx_id, amount=Decimal(expected_amount), recipient=expected_recipient, payer=self.payer
        )


class TransferHandle:
    def __init__(self, tx_hash, error=None):
        self.tx_id = "relay-transfer"
        self.tx_hash = tx_hash
        self.error = error

    def wait(self, timeout=None, poll_interval=None):
        if self.error is not None:
            raise self.error
        return self.tx_hash


def fake_session(handle):
    transfers = []

    def transfer(recipient, amount):
        transfers.append((recipient, amount))
        return handle

    return SimpleNamespace(owner=OWNER, account_address=ACCOUNT, transfer=transfer, transfers=transfers)


@pytest.fixture
def ledger(tmp_path):
    return SubscriptionLedger(tmp_path / "ledger.sqlite3")


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def flow(verifier, ledger, config, audit):
    return PurchaseFlow(verifier, ledger, config, audit=audit)


def event_types(audit):
    return [event.event_type for event in audit.read_events()]


class TestCredit:
    def test_verified_payment_is_applied(self, flow, verifier, ledger, config, audit):
        subscription = flow.credit(OWNER, "basic", TX, now=NOW)

        assert subscription.tier == "basic"
        assert subscription.end_date == NOW + timedelta(days=30)
        assert verifier.calls == [(TX, Decimal("5"), config.treasury)]
        assert ledger.has_payment(TX)
        assert event_types(audit) == [EventType.PAYMENT_VERIFIED, EventType.SUBSCRIPTION_APPLIED]

    def test_tier_price_is_expected_amount(self, flow, verifier):
        flow.credit(OWNER, "whale", TX, now=NOW)
        assert verifier.calls[0][1] == Decimal("50")

    def test_rejected_payment_leaves_no_record(self, ledger, config, audit):
        error = WrongRecipientError(TX, "0x" + "99" * 20, config.treasury)
        flow = PurchaseFlow(FakeVerifier(error), ledger, config, audit=audit)

        with pytest.raises(WrongRecipientError):
            flow.credit(OWNER, "basic", TX, now=NOW)

        assert not ledger.has_payment(TX)
        assert ledger.get_subscription(OWNER) is None
        (event,) = audit.read_events(event_type=EventType.PAYMENT_REJECTED)
        assert event.details["code"] == "WrongRecipient"
        assert not event.success

    def test_verification_network_error_is_not_audited_as_rejection(self, ledger, config, audit):
        flow = PurchaseFlow(FakeVerifier(NetworkError("rpc down")), ledger, config, audit=audit)
        with pytest.raises(NetworkError):
            flow.credit(OWNER, "basic", TX, now=NOW)
        assert audit.read_events(event_type=EventType.PAYMENT_REJECTED) == []
        assert not ledger.has_payment(TX)

    def test_payment_from_owners_account_is_applied(self, ledger, config, audit):
        account = derive_account_address(OWNER, FactoryConfig.from_chain_config(config))
        flow = PurchaseFlow(FakeVerifier(payer=account.lower()), ledger, config, audit=audit)
        assert flow.credit(OWNER, "basic", TX, now=NOW).tier == "basic"

    def test_payment_from_another_account_is_rejected(self, ledger, config, audit):
        flow = PurchaseFlow(FakeVerifier(payer="0x" + "44" * 20), ledger, config, audit=audit)

        with pytest.raises(WrongPayerError) as exc:
            flow.credit(OWNER, "basic", TX, now=NOW)

        assert exc.value.expected == derive_account_address(OWNER, FactoryConfig.from_chain_config(config))
        assert not ledger.has_payment(TX)
        assert ledger.get_subscription(OWNER) is None
        (event,) = audit.read_events(event_type=EventType.PAYMENT_REJECTED)
        assert event.details["code"] == "WrongPayer"

    def test_replay_is_rejected_before_verification(self, flow, verifier, ledger, audit):
        first = flow.credit(OWNER, "basic", TX, now=NOW)
        verifier.calls.clear()

        with pytest.raises(ReplayedPaymentError):
            flow.credit(OWNER, "basic", TX.upper().replace("0X", "0x"), now=NOW + timedelta(days=1))

        assert verifier.calls == []
        assert ledger.get_subscription(OWNER) == first
        assert audit.read_events(event_type=EventType.PAYMENT_REPLAYED)

    def test_unknown_tier(self, flow, verifier):
        with pytest.raises(UnknownTierError):
            flow.credit(OWNER, "platinum", TX, now=NOW)
        assert verifier.calls == []

    def test_works_without_audit(self, verifier, ledger, config):
        flow = PurchaseFlow(verifier, ledger, config)
        assert flow.credit(OWNER, "pro", TX, now=NOW).tier == "pro"


class TestPurchase:
    def test_transfers_price_to_treasury_then_credits(self, flow, ledger, config, audit):
        session = fake_session(TransferHandle(TX))
        subscription = flow.purchase(session, "pro")

        assert session.transfers == [(config.treasury, Decimal("15"))]
        assert subscription.tier == "pro"
        assert ledger.has_payment(TX)
        assert event_types(audit)[0] == EventType.PAYMENT_SUBMITTED

    def test_unconfirmed_transfer_is_not_credited(self, flow, ledger):
        session = fake_session(TransferHandle(TX, error=NetworkError("relay down")))
        with pytest.raises(NetworkError):
            flow.purchase(session, "basic")
        assert ledger.count_payments() == 0


class TestUsage:
    def test_usage_is_recorded_and_audited(self, flow, audit):
        flow.credit(OWNER, "basic", TX, now=NOW)
        subscription = flow.record_usage(OWNER, now=NOW)
        assert subscription.usage_count == 1
        (event,) = audit.read_events(event_type=EventType.USAGE_RECORDED)
        assert event.details == {"usage_count": 1, "quota": 50}

    def test_usage_without_subscription(self, flow):
        with pytest.raises(QuotaExceededError):
            flow.record_usage(OWNER, now=NOW)
