"""
API credentials bound to the owner key.

The credential API issues a key/secret/passphrase triple to whoever can sign
a ``ClobAuth`` attestation for an address. Issuance is not idempotent on the
server, so an existing credential is re-derived first and a new one is only
created when derivation fails.

Issued credentials are cached per owner until explicit logout.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
from cryptography.fernet import Fernet, InvalidToken
from eth_utils import to_checksum_address

from .address import normalize_address
from .errors import CredentialDerivationError, NetworkError
from .signer import Signer
from .storage import (
    atomic_write_bytes,
    ensure_private_dir,
    ensure_private_file,
    file_lock,
    relaypay_home,
    safe_child_path,
)

logger = logging.getLogger(__name__)

CLOB_AUTH_MESSAGE = "This message attests that I control the given wallet"

CLOB_AUTH_TYPES = {
    "ClobAuth": [
        {"name": "address", "type": "address"},
        {"name": "timestamp", "type": "string"},
        {"name": "nonce", "type": "uint256"},
        {"name": "message", "type": "string"},
    ]
}

CREDENTIAL_KEY_ENV = "RELAYPAY_CREDENTIAL_KEY"


@dataclass(frozen=True)
class Credential:
    """Opaque API key triple. Secret parts never appear in repr or logs."""

    key: str
    secret: str = field(repr=False)
    passphrase: str = field(repr=False)

    def __repr__(self) -> str:
        return f"Credential(key={self.key!r}, secret=***, passphrase=***)"

    def to_dict(self) -> dict:
        return {"key": self.key, "secret": self.secret, "passphrase": self.passphrase}

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        return cls(key=data["key"], secret=data["secret"], passphrase=data["passphrase"])


class CredentialIssuer:
    """Derive-or-create client for the credential API."""

    def __init__(
        self,
        clob_url: str,
        chain_id: int,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.chain_id = chain_id
        self._http = httpx.Client(base_url=clob_url.rstrip("/"), timeout=timeout_seconds, transport=transport)

    def obtain(self, signer: Signer) -> Credential:
        try:
            return self.derive_existing(signer)
        except (NetworkError, CredentialDerivationError) as e:
            logger.warning("Deriving credential for %s failed (%s); creating a new one", signer.address, e)
        try:
            return self.create_new(signer)
        except (NetworkError, CredentialDerivationError) as e:
            raise CredentialDerivationError(f"Could not derive or create a credential for {signer.address}: {e}") from e

    def derive_existing(self, signer: Signer) -> Credential:
        return self._issue("GET", "/auth/derive-api-key", signer)

    def create_new(self, signer: Signer) -> Credential:
        return self._issue("POST", "/auth/api-key", signer)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _issue(self, method: str, path: str, signer: Signer) -> Credential:
        headers = self.auth_headers(signer)
        try:
            response = self._http.request(method, path, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise NetworkError(f"Credential API {path} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Credential API {path} failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise NetworkError(f"Credential API {path} returned invalid JSON") from e

        if not isinstance(body, dict) or not body.get("apiKey"):
            raise CredentialDerivationError(f"Credential API {path} returned no API key")
        return Credential(key=body["apiKey"], secret=body.get("secret", ""), passphrase=body.get("passphrase", ""))

    def auth_headers(self, signer: Signer, timestamp: Optional[int] = None, nonce: int = 0) -> dict[str, str]:
        """Signed attestation headers. Nonce 0 keeps derivation deterministic."""
        address = to_checksum_address(signer.address)
        timestamp = int(time.time()) if timestamp is None else timestamp
        typed_data = {
            "domain": {"name": "ClobAuthDomain", "version": "1", "chainId": self.chain_id},
            "types": CLOB_AUTH_TYPES,
            "primaryType": "ClobAuth",
            "message": {
                "address": address,
                "timestamp": str(timestamp),
                "nonce": nonce,
                "message": CLOB_AUTH_MESSAGE,
            },
        }
        signature = signer.sign_typed_data(typed_data)
        return {
            "POLY_ADDRESS": address,
            "POLY_SIGNATURE": "0x" + signature.hex(),
            "POLY_TIMESTAMP": str(timestamp),
            "POLY_NONCE": str(nonce),
        }


class CredentialStore(Protocol):
    def get(self, owner: str) -> Optional[Credential]: ...

    def set(self, owner: str, credential: Credential) -> None: ...

    def clear(self, owner: str) -> None: ...


class MemoryCredentialStore:
    """Process-local cache. Lost on exit."""

    def __init__(self):
        self._items: dict[str, Credential] = {}
        self._lock = threading.Lock()

    def get(self, owner: str) -> Optional[Credential]:
        with self._lock:
            return self._items.get(normalize_address(owner))

    def set(self, owner: str, credential: Credential) -> None:
        with self._lock:
            self._items[normalize_address(owner)] = credential

    def clear(self, owner: str) -> None:
        with self._lock:
            self._items.pop(normalize_address(owner), None)


class FileCredentialStore:
    """One Fernet-encrypted file per owner under a private directory."""

    def __init__(self, base_dir: Optional[Path] = None, key_path: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir else relaypay_home() / "credentials"
        self.key_path = Path(key_path) if key_path else self.base_dir / "cache.key"
        ensure_private_dir(self.base_dir)
        ensure_private_dir(self.key_path.parent)
        self._lock_path = self.base_dir / ".lock"
        self._fernet = Fernet(self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(CREDENTIAL_KEY_ENV)
        if env_key:
            return env_key.encode()
        with file_lock(self._lock_path):
            if self.key_path.exists() and self.key_path.stat().st_size > 0:
                return self.key_path.read_bytes().strip()
            key = Fernet.generate_key()
            atomic_write_bytes(self.key_path, key)
            return key

    def _path(self, owner: str) -> Path:
        return safe_child_path(self.base_dir, normalize_address(owner), ".cred")

    def get(self, owner: str) -> Optional[Credential]:
        path = self._path(owner)
        with file_lock(self._lock_path):
            if not path.exists():
                return None
            try:
                data: Any = json.loads(self._fernet.decrypt(path.read_bytes()))
                return Credential.from_dict(data)
            except (InvalidToken, ValueError, KeyError, TypeError) as e:
                logger.warning("Discarding unreadable cached credential for %s: %s", owner, type(e).__name__)
                path.unlink(missing_ok=True)
                return None

    def set(self, owner: str, credential: Credential) -> None:
        path = self._path(owner)
        token = self._fernet.encrypt(json.dumps(credential.to_dict()).encode())
        with file_lock(self._lock_path):
            atomic_write_bytes(path, token)
        ensure_private_file(path)

    def clear(self, owner: str) -> None:
        path = self._path(owner)
        with file_lock(self._lock_path):
            path.unlink(missing_ok=True)
