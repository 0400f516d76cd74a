"""
Subscription ledger.

Applies verified payments to per-owner subscriptions. SQLite holds one row
per credited transaction (``tx_id`` is the primary key, which is what makes
replays impossible) and one row per owner.

The payment record insert and the subscription upsert run in a single
BEGIN IMMEDIATE transaction: either both land or neither does.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from .address import normalize_address
from .errors import PersistenceError, QuotaExceededError, ReplayedPaymentError
from .payment import VerifiedPayment
from .storage import ensure_private_dir, relaypay_home
from .tiers import Tier, get_tier

logger = logging.getLogger(__name__)

RENEWAL_PERIOD = timedelta(days=30)


@dataclass(frozen=True)
class PaymentRecord:
    tx_id: str
    owner: str
    amount: Decimal
    tier: str
    observed_at: datetime


@dataclass(frozen=True)
class Subscription:
    owner: str
    tier: str
    start_date: datetime
    end_date: datetime
    usage_count: int
    updated_at: datetime

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.end_date > _aware(now)

    @property
    def quota(self) -> int:
        return get_tier(self.tier).quota


class SubscriptionLedger:
    """
    Replay-safe crediting of subscription payments.

    Every connection uses autocommit mode with explicit BEGIN IMMEDIATE so
    concurrent writers (threads or processes) serialize on the database lock.
    """

    def __init__(self, db_path: Optional[Path] = None, renewal_period: timedelta = RENEWAL_PERIOD):
        self.db_path = Path(db_path) if db_path else relaypay_home() / "ledger.sqlite3"
        self.renewal_period = renewal_period
        ensure_private_dir(self.db_path.parent)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_records (
                    tx_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    observed_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    owner TEXT PRIMARY KEY,
                    tier TEXT NOT NULL,
                    start_date REAL NOT NULL,
                    end_date REAL NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL NOT NULL
                )
                """
            )

    def apply(
        self,
        owner: str,
        tier: str | Tier,
        payment: VerifiedPayment,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Credit ``payment`` to ``owner``: extend the period and reset usage.

        Raises ReplayedPaymentError when the transaction was already credited
        (nothing changes) and PersistenceError when storage fails (nothing
        changes either; the transaction is rolled back).
        """
        owner = normalize_address(owner)
        tier_name = tier.name if isinstance(tier, Tier) else get_tier(tier).name
        now = _aware(now)
        tx_id = payment.tx_id.lower()

        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    self._insert_payment_record(conn, tx_id, owner, payment.amount, tier_name, now)
                except sqlite3.IntegrityError:
                    conn.execute("ROLLBACK")
                    logger.warning("Rejected replay of %s for %s", tx_id, owner)
                    raise ReplayedPaymentError(tx_id) from None

                current = self._select_subscription(conn, owner)
                if current is not None and current.end_date > now:
                    end_date = current.end_date + self.renewal_period
                else:
                    end_date = now + self.renewal_period

                subscription = Subscription(
                    owner=owner,
                    tier=tier_name,
                    start_date=now,
                    end_date=end_date,
                    usage_count=0,
                    updated_at=now,
                )
                self._upsert_subscription(conn, subscription)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error("Crediting %s for %s failed: %s", tx_id, owner, e)
                raise PersistenceError(f"Could not credit {tx_id}: {e}") from e

        logger.info("Credited %s to %s: tier %s until %s", tx_id, owner, tier_name, end_date.isoformat())
        return subscription

    def record_usage(self, owner: str, now: Optional[datetime] = None) -> Subscription:
        """Count one generation against the owner's quota."""
        owner = normalize_address(owner)
        now = _aware(now)
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                current = self._select_subscription(conn, owner)
                if current is None or not current.is_active(now):
                    conn.execute("ROLLBACK")
                    raise QuotaExceededError(f"No active subscription for {owner}")
                if current.usage_count >= current.quota:
                    conn.execute("ROLLBACK")
                    raise QuotaExceededError(
                        f"Quota of {current.quota} used up for {owner} until {current.end_date.isoformat()}"
                    )
                conn.execute(
                    "UPDATE subscriptions SET usage_count = usage_count + 1, updated_at = ? WHERE owner = ?",
                    (now.timestamp(), owner),
                )
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise PersistenceError(f"Could not record usage for {owner}: {e}") from e

        return Subscription(
            owner=current.owner,
            tier=current.tier,
            start_date=current.start_date,
            end_date=current.end_date,
            usage_count=current.usage_count + 1,
            updated_at=now,
        )

    def remaining_quota(self, owner: str, now: Optional[datetime] = None) -> int:
        current = self.get_subscription(owner)
        if current is None or not current.is_active(now):
            return 0
        return max(0, current.quota - current.usage_count)

    def get_subscription(self, owner: str) -> Optional[Subscription]:
        with closing(self._connect()) as conn:
            return self._select_subscription(conn, normalize_address(owner))

    def get_payment(self, tx_id: str) -> Optional[PaymentRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM payment_records WHERE tx_id = ?", (tx_id.lower(),)).fetchone()
        if row is None:
            return None
        return PaymentRecord(
            tx_id=row["tx_id"],
            owner=row["owner"],
            amount=Decimal(row["amount"]),
            tier=row["tier"],
            observed_at=_from_ts(row["observed_at"]),
        )

    def has_payment(self, tx_id: str) -> bool:
        return self.get_payment(tx_id) is not None

    def count_payments(self, owner: Optional[str] = None) -> int:
        with closing(self._connect()) as conn:
            if owner:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM payment_records WHERE owner = ?",
                    (normalize_address(owner),),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS n FROM payment_records").fetchone()
        return int(row["n"])

    def _insert_payment_record(
        self,
        conn: sqlite3.Connection,
        tx_id: str,
        owner: str,
        amount: Decimal,
        tier: str,
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO payment_records (tx_id, owner, amount, tier, observed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (tx_id, owner, str(amount), tier, now.timestamp()),
        )

    def _upsert_subscription(self, conn: sqlite3.Connection, subscription: Subscription) -> None:
        conn.execute(
            """
            INSERT INTO subscriptions (owner, tier, start_date, end_date, usage_count, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(owner) DO UPDATE SET
                tier = excluded.tier,
                start_date = excluded.start_date,
                end_date = excluded.end_date,
                usage_count = excluded.usage_count,
                updated_at = excluded.updated_at
            """,
            (
                subscription.owner,
                subscription.tier,
                subscription.start_date.timestamp(),
                subscription.end_date.timestamp(),
                subscription.usage_count,
                subscription.updated_at.timestamp(),
            ),
        )

    def _select_subscription(self, conn: sqlite3.Connection, owner: str) -> Optional[Subscription]:
        row = conn.execute("SELECT * FROM subscriptions WHERE owner = ?", (owner,)).fetchone()
        if row is None:
            return None
        return Subscription(
            owner=row["owner"],
            tier=row["tier"],
            start_date=_from_ts(row["start_date"]),
            end_date=_from_ts(row["end_date"]),
            usage_count=row["usage_count"],
            updated_at=_from_ts(row["updated_at"]),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(now: Optional[datetime]) -> datetime:
    if now is None:
        return _utcnow()
    return now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)


def _from_ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)
