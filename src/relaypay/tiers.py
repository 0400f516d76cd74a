"""Subscription tier catalogue."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .errors import UnknownTierError


@dataclass(frozen=True)
class Tier:
    name: str
    price: Decimal
    quota: int  # generations per renewal period


TIERS: dict[str, Tier] = {
    "basic": Tier("basic", Decimal("5"), 50),
    "pro": Tier("pro", Decimal("15"), 200),
    "whale": Tier("whale", Decimal("50"), 1000),
}


def get_tier(name: str) -> Tier:
    tier = TIERS.get(str(name).strip().lower())
    if tier is None:
        raise UnknownTierError(name)
    return tier
