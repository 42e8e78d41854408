"""JSON-RPC clients for the chain node and the ERC-4337 bundler.

Both sit on a :class:`Transport`: :class:`HttpTransport` wraps web3's
``AsyncHTTPProvider``; tests substitute an in-memory transport.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from eth_abi import decode, encode
from web3 import AsyncHTTPProvider
from web3.types import RPCEndpoint

from . import address
from .constants import GET_NONCE_SELECTOR
from .errors import RpcError
from .userop import UserOperation

log = logging.getLogger(__name__)


class Transport(Protocol):
    async def request(self, method: str, params: list) -> Any:
        """Send one JSON-RPC request and return its ``result``.

        Raises RpcError when the response carries an error object.
        """
        ...


class HttpTransport:
    """JSON-RPC over HTTP via web3's async provider."""

    def __init__(self, url: str, timeout: float = 30.0) -> None:
        self.url = url
        self._provider = AsyncHTTPProvider(url, request_kwargs={"timeout": timeout})

    async def request(self, method: str, params: list) -> Any:
        log.debug("rpc -> %s %s", self.url, method)
        response = await self._provider.make_request(RPCEndpoint(method), params)
        if response.get("error"):
            error = response["error"]
            if isinstance(error, dict):
                raise RpcError(method, error.get("code"), error.get("message", ""), error.get("data"))
            raise RpcError(method, None, str(error))
        return response.get("result")

    async def close(self) -> None:
        await self._provider.disconnect()


def _int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class NodeClient:
    """The subset of the node API the delegation workflow needs."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    async def block_number(self) -> int:
        """Liveness probe: current block height."""
        return _int(await self.transport.request("eth_blockNumber", []))

    async def chain_id(self) -> int:
        return _int(await self.transport.request("eth_chainId", []))

    async def get_code(self, account: str) -> bytes:
        result = await self.transport.request(
            "eth_getCode", [address.to_checksum(account), "latest"]
        )
        return bytes.fromhex((result or "0x")[2:])

    async def is_deployed(self, account: str) -> bool:
        return len(await self.get_code(account)) > 0

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self.transport.request(
            "eth_call", [{"to": address.to_checksum(to), "data": "0x" + data.hex()}, "latest"]
        )
        return bytes.fromhex((result or "0x")[2:])

    async def entry_point_nonce(self, entry_point: str, sender: str, key: int = 0) -> int:
        data = GET_NONCE_SELECTOR + encode(["address", "uint192"], [sender, key])
        (nonce,) = decode(["uint256"], await self.call(entry_point, data))
        return nonce

    async def max_priority_fee_per_gas(self) -> int:
        return _int(await self.transport.request("eth_maxPriorityFeePerGas", []))

    async def base_fee_per_gas(self) -> int:
        block = await self.transport.request("eth_getBlockByNumber", ["latest", False])
        return _int(block.get("baseFeePerGas") or 0)


class BundlerClient:
    """ERC-4337 bundler methods, bound to one EntryPoint."""

    def __init__(self, transport: Transport, entry_point: str) -> None:
        self.transport = transport
        self.entry_point = address.to_checksum(entry_point)

    async def supported_entry_points(self) -> list[str]:
        """Liveness probe: the EntryPoints this bundler serves."""
        result = await self.transport.request("eth_supportedEntryPoints", [])
        if not isinstance(result, list):
            raise RpcError(
                "eth_supportedEntryPoints", None, f"expected a list of addresses, got {result!r}"
            )
        return result

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> dict[str, int]:
        result = await self.transport.request(
            "eth_estimateUserOperationGas", [user_op.to_rpc(), self.entry_point]
        )
        return {
            "call_gas_limit": _int(result["callGasLimit"]),
            "verification_gas_limit": _int(result["verificationGasLimit"]),
            "pre_verification_gas": _int(result["preVerificationGas"]),
        }

    async def send_user_operation(self, user_op: UserOperation) -> str:
        return await self.transport.request(
            "eth_sendUserOperation", [user_op.to_rpc(), self.entry_point]
        )

    async def get_user_operation_receipt(self, operation_hash: str) -> dict | None:
        return await self.transport.request("eth_getUserOperationReceipt", [operation_hash])
