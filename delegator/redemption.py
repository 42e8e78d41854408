"""Redemption calldata: delegation chains plus executions, ABI-encoded.

The redeemer's smart account exposes
``redeemDelegations(bytes[] permissionContexts, bytes32[] modes, bytes[] executionCallDatas)``:
  - one permission context per batch: the ABI-encoded ``Delegation[]`` of
    the chain, leaf first (the order the DelegationManager walks)
  - one ERC-7579 mode per batch (single or batch call)
  - one execution payload per batch, encoded according to its mode

Chains are held root-first in this package and reversed on encoding.
Everything here is pure: identical inputs always give identical bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from eth_abi import encode as abi_encode

from . import address
from .constants import (
    BATCH_DEFAULT_MODE,
    DELEGATION_ABI_TYPE,
    EXECUTION_ABI_TYPE,
    REDEEM_DELEGATIONS_SELECTOR,
    SINGLE_DEFAULT_MODE,
)
from .delegation import SignedDelegation
from .errors import ArityMismatch, IdentityMismatch

log = logging.getLogger(__name__)

DelegationChain = Sequence[SignedDelegation]


class ExecutionMode(Enum):
    SINGLE_DEFAULT = SINGLE_DEFAULT_MODE
    BATCH_DEFAULT = BATCH_DEFAULT_MODE


@dataclass(frozen=True)
class Execution:
    """One call the delegate performs on the delegator's behalf.

    Attributes
    ----------
    target : str
        Contract or account being called.
    value : int
        Native value in wei (uint256).
    call_data : bytes
        Calldata for the call; empty for a plain transfer.
    """

    target: str
    value: int = 0
    call_data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", address.parse(self.target))
        if not isinstance(self.value, int) or not 0 <= self.value < 2**256:
            raise ValueError(f"execution value out of uint256 range: {self.value!r}")
        object.__setattr__(self, "call_data", bytes(self.call_data))

    def as_abi_tuple(self) -> tuple:
        return (self.target, self.value, self.call_data)


# ---------------------------------------------------------------------------
# Execution payloads
# ---------------------------------------------------------------------------

def encode_single_execution(execution: Execution) -> bytes:
    """``abi.encodePacked(target, value, callData)``."""
    return (
        address.to_bytes(execution.target)
        + execution.value.to_bytes(32, "big")
        + execution.call_data
    )


def encode_batch_execution(executions: Sequence[Execution]) -> bytes:
    """``abi.encode(Execution[])``."""
    return abi_encode([EXECUTION_ABI_TYPE + "[]"], [[e.as_abi_tuple() for e in executions]])


def encode_execution_calldata(mode: ExecutionMode, executions: Sequence[Execution]) -> bytes:
    """Encode *executions* as the payload for *mode*.

    Raises ArityMismatch if single mode is given anything but one execution
    or batch mode is given none.
    """
    if mode is ExecutionMode.SINGLE_DEFAULT:
        if len(executions) != 1:
            raise ArityMismatch(
                f"single execution mode needs exactly 1 execution, got {len(executions)}"
            )
        return encode_single_execution(executions[0])
    if mode is ExecutionMode.BATCH_DEFAULT:
        if not executions:
            raise ArityMismatch("batch execution mode needs at least 1 execution")
        return encode_batch_execution(executions)
    raise ValueError(f"unsupported execution mode: {mode!r}")


# ---------------------------------------------------------------------------
# Permission contexts
# ---------------------------------------------------------------------------

def encode_permission_context(chain: DelegationChain) -> bytes:
    """ABI-encode a root-first chain as the leaf-first ``Delegation[]``."""
    if not chain:
        raise ArityMismatch("delegation chain is empty")
    leaf_first = [signed.as_abi_tuple() for signed in reversed(chain)]
    return abi_encode([DELEGATION_ABI_TYPE + "[]"], [leaf_first])


def encode(
    chains: Sequence[DelegationChain],
    modes: Sequence[ExecutionMode],
    execution_sets: Sequence[Sequence[Execution]],
) -> bytes:
    """Build ``redeemDelegations`` calldata, one triple per batch.

    Raises
    ------
    ArityMismatch
        If the three sequences differ in length, are empty, or a batch's
        executions do not fit its mode.
    """
    if not (len(chains) == len(modes) == len(execution_sets)):
        raise ArityMismatch(
            f"chains ({len(chains)}), modes ({len(modes)}) and execution sets "
            f"({len(execution_sets)}) must have equal length"
        )
    if not chains:
        raise ArityMismatch("nothing to redeem: no delegation chains given")

    contexts = [encode_permission_context(chain) for chain in chains]
    mode_codes = [ExecutionMode(m).value for m in modes]
    payloads = [
        encode_execution_calldata(ExecutionMode(m), list(executions))
        for m, executions in zip(modes, execution_sets)
    ]
    calldata = REDEEM_DELEGATIONS_SELECTOR + _encode_args(contexts, mode_codes, payloads)
    log.debug("encoded redemption of %d batch(es), %d bytes", len(chains), len(calldata))
    return bytes(calldata)


def _encode_args(contexts: list, modes: list, payloads: list) -> bytes:
    return abi_encode(["bytes[]", "bytes32[]", "bytes[]"], [contexts, modes, payloads])


# ---------------------------------------------------------------------------
# Preconditions checked before submission
# ---------------------------------------------------------------------------

def check_redeemer(redeemer: str, chains: Sequence[DelegationChain]) -> None:
    """Raise IdentityMismatch unless *redeemer* is every chain's terminal delegate."""
    for i, chain in enumerate(chains):
        if not chain:
            raise ArityMismatch(f"delegation chain {i} is empty")
        terminal = chain[-1].delegate
        if not address.equal(redeemer, terminal):
            raise IdentityMismatch(address.parse(redeemer), terminal, i)


def check_chain_links(chain: DelegationChain) -> None:
    """Check a root-first chain is linked: each entry's authority is its
    predecessor's hash and its delegator is the predecessor's delegate."""
    for i in range(1, len(chain)):
        parent, child = chain[i - 1], chain[i]
        if child.authority != parent.hash():
            raise ValueError(f"chain entry {i} does not reference entry {i - 1}")
        if child.delegator != parent.delegate:
            raise ValueError(
                f"chain entry {i} is issued by {child.delegator}, "
                f"but entry {i - 1} delegates to {parent.delegate}"
            )
