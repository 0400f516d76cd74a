"""
Deterministic smart-account address derivation.

The account address is the CREATE2 address the Safe proxy factory will deploy
to for a given owner:

    keccak256(0xff ++ factory ++ salt ++ init_code_hash)[12:]
    salt = keccak256(abi.encode(owner))

It is always recomputed from the owner and never stored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from .errors import InvalidInputError


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class FactoryConfig:
    """Proxy factory address plus the keccak of the proxy creation code."""

    factory: str
    init_code_hash: str

    @classmethod
    def from_chain_config(cls, config: Any) -> "FactoryConfig":
        return cls(factory=config.safe_factory, init_code_hash=config.safe_init_code_hash)


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidInputError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidInputError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def normalize_hex32(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a hex string")
    candidate = value.strip().lower()
    hex_part = candidate[2:] if candidate.startswith("0x") else candidate
    if len(hex_part) != 64 or any(ch not in "0123456789abcdef" for ch in hex_part):
        raise InvalidInputError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return "0x" + hex_part


def create2_address(deployer: str, salt: bytes, init_code_hash: bytes) -> str:
    """EIP-1014 address for ``deployer`` creating ``init_code_hash`` with ``salt``."""
    if len(salt) != 32 or len(init_code_hash) != 32:
        raise InvalidInputError("salt and init code hash must be 32 bytes")
    deployer_bytes = bytes.fromhex(normalize_address(deployer)[2:])
    digest = keccak(b"\xff" + deployer_bytes + salt + init_code_hash)
    return to_checksum_address(digest[12:])


def owner_salt(owner: str) -> bytes:
    return keccak(encode(["address"], [normalize_address(owner)]))


def derive_account_address(owner: str, factory_config: FactoryConfig) -> str:
    """Counterfactual Safe address for ``owner``. Pure and total over valid input."""
    init_code_hash = bytes.fromhex(normalize_hex32(factory_config.init_code_hash, "init_code_hash")[2:])
    return create2_address(factory_config.factory, owner_salt(owner), init_code_hash)


def same_address(a: str, b: str) -> bool:
    return normalize_address(a) == normalize_address(b)
