"""
Relay execution service client.

Operations on the account are not sent by the owner key directly. The owner
signs an authorization (``CreateProxy`` for deployment, ``SafeTx`` for calls)
and the relay submits and pays for the on-chain transaction.

Flow for ``execute``:
1. Fetch the account nonce from the relay
2. Pack the operations into one call (MultiSend when more than one)
3. Have the owner sign the SafeTx
4. Submit and hand back a TxHandle that polls for a terminal state
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from eth_utils import to_checksum_address

from .address import FactoryConfig, derive_account_address, normalize_address
from .config import BuilderCredentials, ChainConfig
from .errors import InvalidInputError, NetworkError, OnChainRevertError, RelayTimeoutError
from .money import to_base_units
from .operations import SafeOperation, erc20_transfer, pack_multisend
from .signer import Signer

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

STATE_NEW = "STATE_NEW"
STATE_EXECUTED = "STATE_EXECUTED"
STATE_MINED = "STATE_MINED"
STATE_CONFIRMED = "STATE_CONFIRMED"
STATE_FAILED = "STATE_FAILED"
STATE_INVALID = "STATE_INVALID"

SUCCESS_STATES = frozenset({STATE_MINED, STATE_CONFIRMED})
FAILURE_STATES = frozenset({STATE_FAILED, STATE_INVALID})

CREATE_PROXY_DOMAIN_NAME = "Polymarket Contract Proxy Factory"

CREATE_PROXY_TYPES = {
    "CreateProxy": [
        {"name": "paymentToken", "type": "address"},
        {"name": "payment", "type": "uint256"},
        {"name": "paymentReceiver", "type": "address"},
    ]
}

SAFE_TX_TYPES = {
    "SafeTx": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "operation", "type": "uint8"},
        {"name": "safeTxGas", "type": "uint256"},
        {"name": "baseGas", "type": "uint256"},
        {"name": "gasPrice", "type": "uint256"},
        {"name": "gasToken", "type": "address"},
        {"name": "refundReceiver", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ]
}


@dataclass
class RelayTransaction:
    tx_id: str
    state: str
    tx_hash: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def failed(self) -> bool:
        return self.state in FAILURE_STATES


class TxHandle:
    """Awaitable handle for one submitted relay transaction."""

    def __init__(self, relay: "RelayExecutor", tx_id: str, tx_hash: Optional[str] = None, state: str = STATE_NEW):
        self.relay = relay
        self.tx_id = tx_id
        self.tx_hash = tx_hash
        self.state = state

    def wait(self, timeout: Optional[float] = None, poll_interval: Optional[float] = None) -> str:
        """Block until the relay reports a terminal state; return the transaction hash.

        A failed or invalid transaction raises OnChainRevertError. Running out of
        time raises RelayTimeoutError: the transaction may still land. Failed
        polls are retried until the deadline since the submission already went out.
        """
        timeout = self.relay.config.confirmation_timeout_seconds if timeout is None else timeout
        poll_interval = self.relay.config.poll_interval_seconds if poll_interval is None else poll_interval
        deadline = self.relay.clock() + timeout
        last_error: Optional[NetworkError] = None

        while True:
            try:
                tx = self.relay.get_transaction(self.tx_id)
            except NetworkError as e:
                logger.warning("Polling relay transaction %s failed: %s", self.tx_id, e)
                last_error = e
                tx = None
            if tx is not None:
                self.state = tx.state
                self.tx_hash = tx.tx_hash or self.tx_hash
                if tx.succeeded:
                    logger.info("Relay transaction %s %s: %s", self.tx_id, tx.state, self.tx_hash)
                    return self.tx_hash or self.tx_id
                if tx.failed:
                    logger.error("Relay transaction %s ended in %s", self.tx_id, tx.state)
                    raise OnChainRevertError(self.tx_id, tx.state, self.tx_hash)
            if self.relay.clock() >= deadline:
                raise RelayTimeoutError(self.tx_id, timeout, self.state) from last_error
            self.relay.sleep(poll_interval)

    def __repr__(self) -> str:
        return f"TxHandle(tx_id={self.tx_id!r}, state={self.state!r}, tx_hash={self.tx_hash!r})"


class RelayExecutor:
    """Submits account operations for one owner through the relay."""

    def __init__(
        self,
        signer: Signer,
        config: ChainConfig,
        builder: Optional[BuilderCredentials] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.signer = signer
        self.config = config
        self.builder = builder
        self.sleep = sleep
        self.clock = clock
        self._http = httpx.Client(
            base_url=config.relayer_url.rstrip("/"),
            timeout=config.http_timeout_seconds,
            transport=transport,
        )

    @property
    def owner(self) -> str:
        return normalize_address(self.signer.address)

    @property
    def account_address(self) -> str:
        return derive_account_address(self.owner, FactoryConfig.from_chain_config(self.config))

    # Reads
    def get_deployed(self, account: Optional[str] = None) -> bool:
        address = to_checksum_address(normalize_address(account or self.account_address))
        body = self._request("GET", "/deployed", params={"address": address})
        if not isinstance(body, dict):
            raise NetworkError(f"Relay returned no deployment status: {body!r}")
        return bool(body.get("deployed"))

    def get_nonce(self) -> int:
        body = self._request("GET", "/nonce", params={"address": to_checksum_address(self.owner), "type": "SAFE"})
        try:
            return int(body["nonce"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Relay returned no usable nonce: {body!r}") from e

    def get_transaction(self, tx_id: str) -> Optional[RelayTransaction]:
        body = self._request("GET", "/transaction", params={"id": tx_id})
        entries = body if isinstance(body, list) else [body]
        entries = [e for e in entries if isinstance(e, dict) and e]
        if not entries:
            return None
        entry = entries[0]
        return RelayTransaction(
            tx_id=str(entry.get("transactionID", tx_id)),
            state=str(entry.get("state", "")),
            tx_hash=entry.get("transactionHash") or None,
        )

    # Writes
    def deploy(self) -> TxHandle:
        factory = to_checksum_address(self.config.safe_factory)
        typed_data = {
            "domain": {
                "name": CREATE_PROXY_DOMAIN_NAME,
                "chainId": self.config.chain_id,
                "verifyingContract": factory,
            },
            "types": CREATE_PROXY_TYPES,
            "primaryType": "CreateProxy",
            "message": {"paymentToken": ZERO_ADDRESS, "payment": 0, "paymentReceiver": ZERO_ADDRESS},
        }
        signature = self.signer.sign_typed_data(typed_data)
        payload = {
            "from": to_checksum_address(self.owner),
            "to": factory,
            "proxyWallet": to_checksum_address(self.account_address),
            "data": "0x",
            "signature": "0x" + signature.hex(),
            "signatureParams": {"paymentToken": ZERO_ADDRESS, "payment": "0", "paymentReceiver": ZERO_ADDRESS},
            "type": "SAFE-CREATE",
        }
        logger.info("Submitting account deployment for %s", self.account_address)
        return self._submit(payload)

    def execute(self, operations: list[SafeOperation], metadata: str = "") -> TxHandle:
        """Run ``operations`` as one atomic account transaction."""
        if not operations:
            raise InvalidInputError("No operations to execute")
        op = operations[0] if len(operations) == 1 else pack_multisend(operations, self.config.multisend)
        account = to_checksum_address(self.account_address)
        nonce = self.get_nonce()
        message = {
            "to": to_checksum_address(op.to),
            "value": op.value,
            "data": "0x" + op.data.hex(),
            "operation": int(op.operation),
            "safeTxGas": 0,
            "baseGas": 0,
            "gasPrice": 0,
            "gasToken": ZERO_ADDRESS,
            "refundReceiver": ZERO_ADDRESS,
            "nonce": nonce,
        }
        typed_data = {
            "domain": {"chainId": self.config.chain_id, "verifyingContract": account},
            "types": SAFE_TX_TYPES,
            "primaryType": "SafeTx",
            "message": message,
        }
        signature = self.signer.sign_typed_data(typed_data)
        payload = {
            "from": to_checksum_address(self.owner),
            "to": message["to"],
            "proxyWallet": account,
            "data": message["data"],
            "nonce": str(nonce),
            "signature": "0x" + signature.hex(),
            "signatureParams": {
                "gasPrice": "0",
                "operation": str(message["operation"]),
                "safeTxnGas": "0",
                "baseGas": "0",
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
            },
            "type": "SAFE",
            "metadata": metadata,
        }
        logger.info("Submitting %d operation(s) for %s (nonce %d)", len(operations), account, nonce)
        return self._submit(payload)

    def transfer(self, recipient: str, amount: Decimal | int | str) -> TxHandle:
        """Send ``amount`` of the settlement token from the account to ``recipient``."""
        base_units = to_base_units(amount, self.config.usdc_decimals)
        op = erc20_transfer(self.config.usdc, recipient, base_units)
        return self.execute([op], metadata=f"transfer {amount} to {normalize_address(recipient)}")

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    # Plumbing
    def _submit(self, payload: dict) -> TxHandle:
        body = self._request("POST", "/submit", payload=payload)
        tx_id = body.get("transactionID") if isinstance(body, dict) else None
        if not tx_id:
            raise NetworkError(f"Relay accepted no transaction: {body!r}")
        return TxHandle(
            self,
            tx_id=str(tx_id),
            tx_hash=body.get("transactionHash") or None,
            state=str(body.get("state") or STATE_NEW),
        )

    def _request(self, method: str, path: str, params: Optional[dict] = None, payload: Optional[dict] = None) -> Any:
        content = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        headers = {"Content-Type": "application/json"} if payload is not None else {}
        if self.builder is not None:
            headers.update(builder_headers(self.builder, method, path, content))
        try:
            response = self._http.request(method, path, params=params, content=content or None, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Relay {method} {path} returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Relay {method} {path} failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise NetworkError(f"Relay {method} {path} returned invalid JSON") from e


def builder_signature(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """urlsafe-base64 HMAC-SHA256 of ``timestamp + method + path + body``."""
    key = base64.urlsafe_b64decode(secret)
    digest = hmac.new(key, f"{timestamp}{method}{path}{body}".encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode()


def builder_headers(
    builder: BuilderCredentials,
    method: str,
    path: str,
    body: str = "",
    timestamp: Optional[str] = None,
) -> dict[str, str]:
    timestamp = timestamp or str(int(time.time() * 1000))
    return {
        "POLY_BUILDER_API_KEY": builder.key,
        "POLY_BUILDER_PASSPHRASE": builder.passphrase,
        "POLY_BUILDER_TIMESTAMP": timestamp,
        "POLY_BUILDER_SIGNATURE": builder_signature(builder.secret, timestamp, method, path, body),
    }
