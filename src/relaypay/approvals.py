"""
Trading approval policy for the account.

The account must let every trusted spender move its settlement token and its
position tokens. Approvals are granted once with the maximal amount; an
allowance is treated as sufficient while it stays at or above a low-water
mark, so trades that decrement it do not trigger a re-approval every time.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from .address import normalize_address
from .config import MAX_UINT256, ChainConfig
from .errors import NetworkError
from .operations import SafeOperation, encode_call, erc1155_set_approval_for_all, erc20_approve
from .rpc import RpcClient

logger = logging.getLogger(__name__)


@dataclass
class ApprovalStatus:
    """Allowance and operator flag per trusted spender."""

    account: str
    threshold: int
    allowances: dict[str, int] = field(default_factory=dict)
    operator_flags: dict[str, bool] = field(default_factory=dict)

    @property
    def missing_allowances(self) -> list[str]:
        return [s for s, amount in self.allowances.items() if amount < self.threshold]

    @property
    def missing_operators(self) -> list[str]:
        return [s for s, approved in self.operator_flags.items() if not approved]

    @property
    def sufficient(self) -> bool:
        return not self.missing_allowances and not self.missing_operators


class ApprovalChecker:
    """Reads on-chain approvals of the account. Never writes."""

    def __init__(self, rpc: RpcClient, config: ChainConfig):
        self.rpc = rpc
        self.config = config

    def read_status(self, account: str) -> ApprovalStatus:
        account = normalize_address(account)
        spenders = list(self.config.spenders)

        # Independent reads; any failure propagates instead of reading as "not approved".
        with ThreadPoolExecutor(max_workers=len(spenders) * 2) as pool:
            allowance_futures = {s: pool.submit(self._allowance, account, s) for s in spenders}
            operator_futures = {s: pool.submit(self._is_operator, account, s) for s in spenders}
            allowances = {s: f.result() for s, f in allowance_futures.items()}
            operator_flags = {s: f.result() for s, f in operator_futures.items()}

        status = ApprovalStatus(
            account=account,
            threshold=self.config.allowance_threshold,
            allowances=allowances,
            operator_flags=operator_flags,
        )
        logger.debug(
            "Approvals for %s: missing allowances=%s missing operators=%s",
            account,
            status.missing_allowances,
            status.missing_operators,
        )
        return status

    def check_sufficient(self, account: str) -> bool:
        return self.read_status(account).sufficient

    def _allowance(self, owner: str, spender: str) -> int:
        data = encode_call("allowance(address,address)", ["address", "address"], [owner, spender])
        (value,) = self._read(self.config.usdc, data, "uint256")
        return int(value)

    def _is_operator(self, owner: str, operator: str) -> bool:
        data = encode_call("isApprovedForAll(address,address)", ["address", "address"], [owner, operator])
        (value,) = self._read(self.config.ctf, data, "bool")
        return bool(value)

    def _read(self, to: str, data: bytes, result_type: str) -> tuple:
        result = self.rpc.call(to, data)
        try:
            return decode([result_type], result)
        except DecodingError as e:
            raise NetworkError(f"Malformed eth_call result from {to}: {result.hex() or 'empty'}") from e


def build_approval_operations(config: ChainConfig) -> list[SafeOperation]:
    """Batch granting every trusted spender full token and position approval."""
    ops = [erc20_approve(config.usdc, spender, MAX_UINT256) for spender in config.spenders]
    ops.extend(erc1155_set_approval_for_all(config.ctf, spender, True) for spender in config.spenders)
    return ops
