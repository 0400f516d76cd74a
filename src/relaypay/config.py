"""
Network, contract and policy configuration.

Defaults target Polygon mainnet with USDC.e as the settlement asset.
Every field can be overridden through ``RELAYPAY_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .address import normalize_address, normalize_hex32
from .errors import InvalidInputError


POLYGON_CHAIN_ID = 137

MAX_UINT256 = 2**256 - 1

ENV_PREFIX = "RELAYPAY_"

BUILDER_API_KEY_ENV = "POLYMARKET_BUILDER_API_KEY"
BUILDER_SECRET_ENV = "POLYMARKET_BUILDER_SECRET"
BUILDER_PASSPHRASE_ENV = "POLYMARKET_BUILDER_PASSPHRASE"

_ADDRESS_FIELDS = (
    "safe_factory",
    "multisend",
    "usdc",
    "ctf",
    "treasury",
)


@dataclass(frozen=True)
class ChainConfig:
    """All chain constants and policy knobs used by sessions and payments."""

    chain_id: int = POLYGON_CHAIN_ID
    rpc_url: str = "https://polygon-rpc.com"
    relayer_url: str = "https://relayer-v2.polymarket.com"
    clob_url: str = "https://clob.polymarket.com"

    safe_factory: str = "0xaacfeea03eb1561c4e67d661e40682bd20e3541b"
    safe_init_code_hash: str = "0x2bce2127ff07fb632d16c8347c4ebf501f4841168bed00d9e6ef715ddb6fcecf"
    multisend: str = "0xa238cbeb142c10ef7ad8442c6d1f9e89e07e7761"

    usdc: str = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
    usdc_decimals: int = 6
    ctf: str = "0x4d97dcd97ec945f40cf65f87097ace5ea0476045"
    spenders: tuple[str, ...] = (
        "0x4bfb41d5b3570defd03c39a9a4d8de6bd8b8982e",  # CTF exchange
        "0xc5d563a36ae78145c45a50134d48a1215220f80a",  # neg-risk CTF exchange
    )
    treasury: str = "0x3233f590f3cb6a70123bd02b49105be5d5c10df3"

    allowance_threshold: int = 1_000_000_000  # 1000 USDC in base units
    renewal_days: int = 30
    amount_tolerance: Decimal = Decimal("0.1")

    http_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 180.0
    poll_interval_seconds: float = 2.0

    def __post_init__(self):
        for name in _ADDRESS_FIELDS:
            object.__setattr__(self, name, normalize_address(getattr(self, name)))
        object.__setattr__(self, "spenders", tuple(normalize_address(s) for s in self.spenders))
        object.__setattr__(self, "safe_init_code_hash", normalize_hex32(self.safe_init_code_hash, "safe_init_code_hash"))
        if not self.spenders:
            raise InvalidInputError("At least one trusted spender is required")
        if self.chain_id <= 0:
            raise InvalidInputError(f"Invalid chain id: {self.chain_id}")
        if not 0 <= self.usdc_decimals <= 36:
            raise InvalidInputError(f"Invalid token decimals: {self.usdc_decimals}")
        if self.allowance_threshold <= 0:
            raise InvalidInputError("allowance_threshold must be > 0")
        if self.renewal_days <= 0:
            raise InvalidInputError("renewal_days must be > 0")
        if self.amount_tolerance < 0:
            raise InvalidInputError("amount_tolerance must be >= 0")

    @property
    def renewal_period(self) -> timedelta:
        return timedelta(days=self.renewal_days)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "ChainConfig":
        """Build config from defaults, ``RELAYPAY_*`` variables, then explicit overrides."""
        env = os.environ if environ is None else environ
        values: dict = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **changes) -> "ChainConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class BuilderCredentials:
    """Relay API key used to sign builder attribution headers."""

    key: str
    secret: str
    passphrase: str = field(repr=False, default="")

    def __repr__(self) -> str:
        return f"BuilderCredentials(key={self.key!r}, secret=***, passphrase=***)"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> Optional["BuilderCredentials"]:
        env = os.environ if environ is None else environ
        key = env.get(BUILDER_API_KEY_ENV)
        secret = env.get(BUILDER_SECRET_ENV)
        if not key or not secret:
            return None
        return cls(key=key, secret=secret, passphrase=env.get(BUILDER_PASSPHRASE_ENV, ""))


def _coerce(name: str, raw: str, default):
    try:
        if name == "spenders":
            return tuple(item.strip() for item in raw.split(",") if item.strip())
        if isinstance(default, bool):
            return raw.strip().lower() in {"1", "true", "yes"}
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, Decimal):
            return Decimal(raw)
    except (ValueError, ArithmeticError) as e:
        raise InvalidInputError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw}") from e
    return raw
