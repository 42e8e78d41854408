"""Fee policy for user operations.

Gas prices come from a pluggable :class:`FeeOracle`; a :class:`FeePolicy`
layers caller overrides on top (fixed prices, gas limits, a safety margin on
bundler estimates). No fee bumping happens here: resubmitting with higher
fees is the caller's decision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rpc import NodeClient


@dataclass(frozen=True)
class Fees:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def __post_init__(self) -> None:
        if self.max_priority_fee_per_gas > self.max_fee_per_gas:
            raise ValueError(
                f"priority fee {self.max_priority_fee_per_gas} exceeds "
                f"max fee {self.max_fee_per_gas}"
            )


class FeeOracle(ABC):
    @abstractmethod
    async def fees(self) -> Fees:
        ...


class StaticFeeOracle(FeeOracle):
    """Always quotes the same prices."""

    def __init__(self, max_fee_per_gas: int, max_priority_fee_per_gas: int) -> None:
        self._fees = Fees(max_fee_per_gas, max_priority_fee_per_gas)

    async def fees(self) -> Fees:
        return self._fees


class NodeFeeOracle(FeeOracle):
    """EIP-1559 quote from the node: ``2 * baseFee + tip``."""

    def __init__(self, node: "NodeClient", base_fee_multiplier: int = 2) -> None:
        self.node = node
        self.base_fee_multiplier = base_fee_multiplier

    async def fees(self) -> Fees:
        tip = await self.node.max_priority_fee_per_gas()
        base_fee = await self.node.base_fee_per_gas()
        return Fees(base_fee * self.base_fee_multiplier + tip, tip)


@dataclass(frozen=True)
class FeePolicy:
    """Fee and gas settings for one submission.

    Attributes
    ----------
    oracle : FeeOracle | None
        Price source; the submitter's default oracle when None.
    max_fee_per_gas, max_priority_fee_per_gas : int | None
        Fixed prices overriding the oracle.
    call_gas_limit, verification_gas_limit, pre_verification_gas : int | None
        Fixed limits overriding the bundler's estimate.
    gas_buffer_percent : int
        Margin added to estimated limits (100 = estimate as-is).
    """

    oracle: FeeOracle | None = None
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    call_gas_limit: int | None = None
    verification_gas_limit: int | None = None
    pre_verification_gas: int | None = None
    gas_buffer_percent: int = 100

    async def resolve_fees(self, default_oracle: FeeOracle | None) -> Fees:
        if self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None:
            return Fees(self.max_fee_per_gas, self.max_priority_fee_per_gas)
        oracle = self.oracle or default_oracle
        if oracle is None:
            raise ValueError("no fee oracle configured and no fixed fees given")
        quoted = await oracle.fees()
        return Fees(
            self.max_fee_per_gas if self.max_fee_per_gas is not None else quoted.max_fee_per_gas,
            (
                self.max_priority_fee_per_gas
                if self.max_priority_fee_per_gas is not None
                else quoted.max_priority_fee_per_gas
            ),
        )

    def gas_limits(self, estimate: dict[str, int]) -> dict[str, int]:
        """Apply overrides and the buffer to a bundler gas estimate."""
        limits = {}
        for name in ("call_gas_limit", "verification_gas_limit", "pre_verification_gas"):
            fixed = getattr(self, name)
            if fixed is not None:
                limits[name] = fixed
            else:
                limits[name] = estimate[name] * self.gas_buffer_percent // 100
        return limits
