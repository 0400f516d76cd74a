"""
Minimal Ethereum JSON-RPC client over httpx.

Only the reads this package needs: chain id, ``eth_call`` and receipts.
Transport failures and RPC error objects surface as NetworkError.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .errors import NetworkError, RpcError

logger = logging.getLogger(__name__)


@dataclass
class ReceiptLog:
    address: str
    topics: list[str]
    data: str


@dataclass
class Receipt:
    transaction_hash: str
    status: int
    block_number: Optional[int]
    logs: list[ReceiptLog] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class RpcClient:
    """Read-only JSON-RPC access to one node."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self._ids = itertools.count(1)
        self._http = httpx.Client(timeout=timeout_seconds, transport=transport)

    def request(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        logger.debug("RPC %s %s", method, self.url)
        try:
            response = self._http.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"RPC {method} failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise NetworkError(f"RPC {method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise NetworkError(f"RPC {method} returned a non-object response")
        if body.get("error"):
            raise RpcError(method, body["error"])
        return body.get("result")

    def chain_id(self) -> int:
        return int(self.request("eth_chainId", []), 16)

    def call(self, to: str, data: bytes) -> bytes:
        result = self.request("eth_call", [{"to": to, "data": "0x" + data.hex()}, "latest"])
        return bytes.fromhex(_strip_0x(result or ""))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raw = self.request("eth_getTransactionReceipt", [tx_hash])
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise NetworkError(f"Malformed receipt for {tx_hash}")
        return Receipt(
            transaction_hash=str(raw.get("transactionHash", tx_hash)),
            status=_parse_quantity(raw.get("status")),
            block_number=_parse_quantity(raw.get("blockNumber")) if raw.get("blockNumber") else None,
            logs=[
                ReceiptLog(
                    address=str(entry.get("address", "")),
                    topics=[str(t) for t in entry.get("topics", [])],
                    data=str(entry.get("data", "0x")),
                )
                for entry in raw.get("logs", [])
            ],
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _parse_quantity(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value
