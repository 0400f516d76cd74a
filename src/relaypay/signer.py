"""
Owner signing capability.

The wallet is an injected capability rather than a framework hook: anything
with ``address``, ``chain_id()``, ``sign_typed_data()`` and ``switch_chain()``
can drive a session. Signing prompts are serialized because a wallet can only
present one request at a time.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import SignatureRejectedError

logger = logging.getLogger(__name__)


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def chain_id(self) -> int: ...

    def sign_typed_data(self, typed_data: dict[str, Any]) -> bytes: ...

    def switch_chain(self, chain_id: int) -> None: ...


class LocalAccountSigner:
    """Signer backed by an eth-account key held in this process.

    ``confirm`` is called with the primary type and message before every
    signature; returning False declines the request.
    """

    def __init__(
        self,
        account: LocalAccount,
        chain_id: int,
        confirm: Optional[Callable[[str, dict], bool]] = None,
    ):
        self._account = account
        self._chain_id = chain_id
        self._confirm = confirm

    @classmethod
    def from_private_key(cls, private_key: str, chain_id: int, **kwargs) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key), chain_id=chain_id, **kwargs)

    @property
    def address(self) -> str:
        return self._account.address

    def chain_id(self) -> int:
        return self._chain_id

    def switch_chain(self, chain_id: int) -> None:
        logger.info("Signer %s switching network %d -> %d", self.address, self._chain_id, chain_id)
        self._chain_id = chain_id

    def sign_typed_data(self, typed_data: dict[str, Any]) -> bytes:
        primary_type = str(typed_data.get("primaryType", ""))
        if self._confirm is not None and not self._confirm(primary_type, dict(typed_data.get("message", {}))):
            raise SignatureRejectedError(f"User rejected {primary_type} signature request")
        full_message = {
            **typed_data,
            "types": {**typed_data["types"], "EIP712Domain": build_domain_type(typed_data["domain"])},
        }
        signed = self._account.sign_typed_data(full_message=full_message)
        return bytes(signed.signature)

    def __repr__(self) -> str:
        return f"LocalAccountSigner(address={self.address}, chain_id={self._chain_id})"


class SerializedSigner:
    """Wraps a signer so at most one signing request is outstanding."""

    def __init__(self, inner: Signer):
        self._inner = inner
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return self._inner.address

    def chain_id(self) -> int:
        return self._inner.chain_id()

    def switch_chain(self, chain_id: int) -> None:
        with self._lock:
            self._inner.switch_chain(chain_id)

    def sign_typed_data(self, typed_data: dict[str, Any]) -> bytes:
        with self._lock:
            return self._inner.sign_typed_data(typed_data)


def build_domain_type(domain: dict) -> list[dict]:
    fields = []
    if "name" in domain:
        fields.append({"name": "name", "type": "string"})
    if "version" in domain:
        fields.append({"name": "version", "type": "string"})
    if "chainId" in domain:
        fields.append({"name": "chainId", "type": "uint256"})
    if "verifyingContract" in domain:
        fields.append({"name": "verifyingContract", "type": "address"})
    if "salt" in domain:
        fields.append({"name": "salt", "type": "bytes32"})
    return fields
