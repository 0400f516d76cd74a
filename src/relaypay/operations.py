"""Account operations and their calldata encodings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from .address import normalize_address
from .errors import InvalidInputError


class OperationType(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


@dataclass(frozen=True)
class SafeOperation:
    """One call the account makes. Batches of these execute atomically."""

    to: str
    data: bytes
    value: int = 0
    operation: OperationType = OperationType.CALL

    def to_dict(self) -> dict:
        return {
            "to": to_checksum_address(self.to),
            "data": "0x" + self.data.hex(),
            "value": str(self.value),
            "operation": int(self.operation),
        }


def encode_call(signature: str, arg_types: list[str], args: list) -> bytes:
    return function_signature_to_4byte_selector(signature) + encode(arg_types, args)


def erc20_approve(token: str, spender: str, amount: int) -> SafeOperation:
    data = encode_call("approve(address,uint256)", ["address", "uint256"], [normalize_address(spender), amount])
    return SafeOperation(to=normalize_address(token), data=data)


def erc20_transfer(token: str, recipient: str, amount: int) -> SafeOperation:
    if amount <= 0:
        raise InvalidInputError("Transfer amount must be positive")
    data = encode_call("transfer(address,uint256)", ["address", "uint256"], [normalize_address(recipient), amount])
    return SafeOperation(to=normalize_address(token), data=data)


def erc1155_set_approval_for_all(token: str, operator: str, approved: bool = True) -> SafeOperation:
    data = encode_call("setApprovalForAll(address,bool)", ["address", "bool"], [normalize_address(operator), approved])
    return SafeOperation(to=normalize_address(token), data=data)


def pack_multisend(operations: list[SafeOperation], multisend: str) -> SafeOperation:
    """Fold several operations into one MultiSend delegate call.

    Each entry is packed as uint8 operation, address to, uint256 value,
    uint256 data length, then the data bytes.
    """
    if not operations:
        raise InvalidInputError("Cannot pack an empty operation batch")
    packed = b"".join(
        int(op.operation).to_bytes(1, "big")
        + bytes.fromhex(normalize_address(op.to)[2:])
        + int(op.value).to_bytes(32, "big")
        + len(op.data).to_bytes(32, "big")
        + op.data
        for op in operations
    )
    data = encode_call("multiSend(bytes)", ["bytes"], [packed])
    return SafeOperation(to=normalize_address(multisend), data=data, operation=OperationType.DELEGATE_CALL)
