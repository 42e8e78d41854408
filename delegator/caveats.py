"""Caveat policies: the ordered enforcer list attached to a delegation.

A policy is an append-only sequence of ``(enforcer, terms, args)`` entries.
Order matters: the DelegationManager calls enforcers in sequence. An empty
policy is unrestricted: the delegate may do anything the delegator could.

Builders for the enforcer types a deployment names:
  - AllowedTargets -> terms are the packed 20-byte target addresses
  - ValueLte       -> terms are the uint256 native-value cap
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from eth_abi import encode

from . import address
from .constants import ALLOWED_TARGETS, VALUE_LTE
from .environment import Environment


@dataclass(frozen=True)
class Caveat:
    """A single enforcement rule within a delegation.

    Attributes
    ----------
    enforcer : str
        Canonical address of the enforcer contract.
    terms : bytes
        Enforcer parameters fixed at issuance; covered by the signature.
    args : bytes
        Extra data supplied at redemption; not signed.
    """

    enforcer: str
    terms: bytes = b""
    args: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "enforcer", address.parse(self.enforcer))
        object.__setattr__(self, "terms", bytes(self.terms))
        object.__setattr__(self, "args", bytes(self.args))

    def as_abi_tuple(self) -> tuple:
        return (self.enforcer, self.terms, self.args)


class CaveatPolicy:
    """Immutable, order-preserving sequence of caveats."""

    __slots__ = ("_caveats",)

    def __init__(self, caveats: Iterable[Caveat] = ()) -> None:
        self._caveats = tuple(caveats)
        for caveat in self._caveats:
            if not isinstance(caveat, Caveat):
                raise TypeError(f"expected Caveat, got {type(caveat).__name__}")

    @classmethod
    def empty(cls) -> "CaveatPolicy":
        """The unrestricted policy."""
        return cls()

    def append(self, enforcer: str, terms: bytes = b"", args: bytes = b"") -> "CaveatPolicy":
        """Return a new policy with one more caveat at the end."""
        return CaveatPolicy(self._caveats + (Caveat(enforcer, terms, args),))

    def with_args(self, index: int, args: bytes) -> "CaveatPolicy":
        """Return a copy with redemption-time *args* set on caveat *index*."""
        caveats = list(self._caveats)
        current = caveats[index]
        caveats[index] = Caveat(current.enforcer, current.terms, args)
        return CaveatPolicy(caveats)

    @property
    def is_unrestricted(self) -> bool:
        return not self._caveats

    def __iter__(self) -> Iterator[Caveat]:
        return iter(self._caveats)

    def __len__(self) -> int:
        return len(self._caveats)

    def __getitem__(self, index: int) -> Caveat:
        return self._caveats[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CaveatPolicy):
            return NotImplemented
        return self._caveats == other._caveats

    def __hash__(self) -> int:
        return hash(self._caveats)

    def __repr__(self) -> str:
        return f"CaveatPolicy({list(self._caveats)!r})"


# ---------------------------------------------------------------------------
# Enforcer-specific builders
# ---------------------------------------------------------------------------

def allowed_targets_terms(targets: Iterable[str]) -> bytes:
    """Pack target addresses back to back, 20 bytes each."""
    packed = b"".join(address.to_bytes(t) for t in targets)
    if not packed:
        raise ValueError("AllowedTargets needs at least one target")
    return packed


def value_lte_terms(max_value: int) -> bytes:
    if max_value < 0 or max_value >= 2**256:
        raise ValueError(f"value cap out of uint256 range: {max_value}")
    return encode(["uint256"], [max_value])


def allowed_targets(
    policy: CaveatPolicy, env: Environment, targets: Iterable[str]
) -> CaveatPolicy:
    """Restrict the delegate to calling *targets* only."""
    return policy.append(env.enforcer(ALLOWED_TARGETS), allowed_targets_terms(targets))


def value_lte(policy: CaveatPolicy, env: Environment, max_value: int) -> CaveatPolicy:
    """Cap the native value (wei) of each execution at *max_value*."""
    return policy.append(env.enforcer(VALUE_LTE), value_lte_terms(max_value))


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

def format_caveats(policy: CaveatPolicy, env: Environment | None = None) -> str:
    """Human-readable listing, naming enforcers known to *env*."""
    if policy.is_unrestricted:
        return "  (unrestricted)"
    names = {}
    if env is not None:
        names = {addr: name for name, addr in env.enforcers.items()}
    lines = []
    for i, caveat in enumerate(policy):
        label = names.get(caveat.enforcer, caveat.enforcer)
        lines.append(f"  [{i}] {label}: terms=0x{caveat.terms.hex()}")
    return "\n".join(lines)
