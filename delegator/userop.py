"""ERC-4337 (EntryPoint v0.7) user operation primitives."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from eth_abi import encode
from web3 import Web3

from . import address


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


@dataclass(frozen=True)
class Call:
    """A call made by the smart account itself."""

    to: str
    data: bytes = b""
    value: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "to", address.parse(self.to))
        object.__setattr__(self, "data", bytes(self.data))


@dataclass(frozen=True)
class UserOperation:
    sender: str
    nonce: int
    call_data: bytes
    factory: str | None = None
    factory_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    # -- packed fields --------------------------------------------------------

    @property
    def init_code(self) -> bytes:
        if self.factory is None:
            return b""
        return address.to_bytes(self.factory) + self.factory_data

    @property
    def account_gas_limits(self) -> bytes:
        return ((self.verification_gas_limit << 128) | self.call_gas_limit).to_bytes(32, "big")

    @property
    def gas_fees(self) -> bytes:
        return ((self.max_priority_fee_per_gas << 128) | self.max_fee_per_gas).to_bytes(32, "big")

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """The EntryPoint's ``getUserOpHash``."""
        packed = encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                self.sender,
                self.nonce,
                Web3.keccak(self.init_code),
                Web3.keccak(self.call_data),
                self.account_gas_limits,
                self.pre_verification_gas,
                self.gas_fees,
                Web3.keccak(self.paymaster_and_data),
            ],
        )
        return bytes(
            Web3.keccak(
                encode(
                    ["bytes32", "address", "uint256"],
                    [Web3.keccak(packed), entry_point, chain_id],
                )
            )
        )

    # -- copies ---------------------------------------------------------------

    def with_gas(self, **limits: int) -> "UserOperation":
        return replace(self, **limits)

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=bytes(signature))

    # -- wire format ----------------------------------------------------------

    def to_rpc(self) -> dict[str, Any]:
        payload = {
            "sender": address.to_checksum(self.sender),
            "nonce": _to_hex_int(self.nonce),
            "callData": _hex(self.call_data),
            "callGasLimit": _to_hex_int(self.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
            "signature": _hex(self.signature),
        }
        if self.factory is not None:
            payload["factory"] = address.to_checksum(self.factory)
            payload["factoryData"] = _hex(self.factory_data)
        return payload


@dataclass(frozen=True)
class Receipt:
    """Settlement of a user operation.

    ``success`` is False when the operation was included but reverted; that
    is an on-chain outcome, not a transport error.
    """

    operation_hash: str
    transaction_hash: str
    success: bool
    actual_gas_cost: int = 0
    reason: str | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_rpc(cls, data: dict) -> "Receipt":
        tx_receipt = data.get("receipt") or {}
        gas_cost = data.get("actualGasCost") or 0
        return cls(
            operation_hash=data["userOpHash"],
            transaction_hash=tx_receipt.get("transactionHash", ""),
            success=bool(data.get("success")),
            actual_gas_cost=int(gas_cost, 16) if isinstance(gas_cost, str) else int(gas_cost),
            reason=data.get("reason") or None,
            raw=data,
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "userOperationHash": self.operation_hash,
            "transactionHash": self.transaction_hash,
            "actualGasCost": str(self.actual_gas_cost),
            "reason": self.reason,
        }
