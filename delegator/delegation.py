"""Delegations: construction, hashing, and the persisted JSON envelope.

A Delegation ties a delegator to a delegate under a caveat policy:
  - ``authority`` is ROOT_AUTHORITY for a root delegation, or the hash of
    the parent delegation for a chained one
  - ``salt`` makes otherwise identical delegations distinct
  - once signed the record is sealed; any change invalidates the signature

Delegation files use the ERC-7715 style envelope
``{"delegations": [SignedDelegation, ...]}`` with the salt as a decimal
string, so values above 2**53 survive JSON tooling unchanged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from eth_abi import encode
from web3 import Web3

from . import address
from .caveats import Caveat, CaveatPolicy
from .constants import ROOT_AUTHORITY
from .errors import EmptySaltEntropy

log = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1

CAVEAT_TYPEHASH = Web3.keccak(text="Caveat(address enforcer,bytes terms)")
DELEGATION_TYPEHASH = Web3.keccak(
    text="Delegation(address delegate,address delegator,bytes32 authority,"
    "Caveat[] caveats,uint256 salt)Caveat(address enforcer,bytes terms)"
)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Delegation:
    """An unsigned delegation.

    Attributes
    ----------
    delegate : str
        The account allowed to act (canonical address).
    delegator : str
        The account granting authority (canonical address).
    authority : bytes
        ROOT_AUTHORITY, or the 32-byte hash of the parent delegation.
    caveats : CaveatPolicy
        Restrictions on what the delegate may execute.
    salt : int
        Per-delegation entropy (non-zero uint256).
    """

    delegate: str
    delegator: str
    authority: bytes
    caveats: CaveatPolicy
    salt: int

    @property
    def is_root(self) -> bool:
        return self.authority == ROOT_AUTHORITY

    def as_abi_tuple(self, signature: bytes = b"") -> tuple:
        return (
            self.delegate,
            self.delegator,
            self.authority,
            [c.as_abi_tuple() for c in self.caveats],
            self.salt,
            signature,
        )


@dataclass(frozen=True)
class SignedDelegation:
    """A delegation sealed with the delegator's signature."""

    delegation: Delegation
    signature: bytes

    @property
    def delegate(self) -> str:
        return self.delegation.delegate

    @property
    def delegator(self) -> str:
        return self.delegation.delegator

    @property
    def authority(self) -> bytes:
        return self.delegation.authority

    @property
    def caveats(self) -> CaveatPolicy:
        return self.delegation.caveats

    @property
    def salt(self) -> int:
        return self.delegation.salt

    def as_abi_tuple(self) -> tuple:
        return self.delegation.as_abi_tuple(self.signature)

    def hash(self) -> bytes:
        return delegation_hash(self.delegation)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _validated(
    delegate: str,
    delegator: str,
    caveats: CaveatPolicy,
    salt: int,
    authority: bytes,
) -> Delegation:
    delegate = address.parse_nonzero(delegate, "delegate")
    delegator = address.parse_nonzero(delegator, "delegator")
    if not isinstance(salt, int) or isinstance(salt, bool):
        raise EmptySaltEntropy(f"salt must be an integer, got {type(salt).__name__}")
    if salt == 0:
        raise EmptySaltEntropy("salt must be non-zero")
    if salt < 0 or salt > UINT256_MAX:
        raise EmptySaltEntropy(f"salt out of uint256 range: {salt}")
    if not isinstance(caveats, CaveatPolicy):
        caveats = CaveatPolicy(caveats)
    return Delegation(
        delegate=delegate,
        delegator=delegator,
        authority=authority,
        caveats=caveats,
        salt=salt,
    )


def build_root(
    delegate: str,
    delegator: str,
    caveats: CaveatPolicy,
    salt: int,
) -> Delegation:
    """Build a root delegation (authority = ROOT_AUTHORITY).

    Raises
    ------
    InvalidAddress
        If either party is malformed or the zero address.
    EmptySaltEntropy
        If *salt* is zero or outside the uint256 range.
    """
    delegation = _validated(delegate, delegator, caveats, salt, ROOT_AUTHORITY)
    log.debug(
        "built root delegation %s -> %s (%d caveats)",
        delegation.delegator, delegation.delegate, len(delegation.caveats),
    )
    return delegation


def build_chained(
    delegate: str,
    delegator: str,
    caveats: CaveatPolicy,
    salt: int,
    parent_hash: bytes,
) -> Delegation:
    """Build a delegation whose authority is the parent delegation's hash."""
    parent_hash = bytes(parent_hash)
    if len(parent_hash) != 32:
        raise ValueError(f"parent hash must be 32 bytes, got {len(parent_hash)}")
    if parent_hash == ROOT_AUTHORITY:
        raise ValueError("parent hash must not be the root authority")
    delegation = _validated(delegate, delegator, caveats, salt, parent_hash)
    log.debug(
        "built chained delegation %s -> %s under 0x%s",
        delegation.delegator, delegation.delegate, parent_hash.hex(),
    )
    return delegation


# ---------------------------------------------------------------------------
# Hashing (EIP-712 struct hash, as computed by the DelegationManager)
# ---------------------------------------------------------------------------

def _caveat_hash(caveat: Caveat) -> bytes:
    return Web3.keccak(
        encode(
            ["bytes32", "address", "bytes32"],
            [CAVEAT_TYPEHASH, caveat.enforcer, Web3.keccak(caveat.terms)],
        )
    )


def delegation_hash(delegation: Delegation) -> bytes:
    """Return the 32-byte struct hash used as a child's ``authority``."""
    caveats_hash = Web3.keccak(b"".join(_caveat_hash(c) for c in delegation.caveats))
    return bytes(
        Web3.keccak(
            encode(
                ["bytes32", "address", "address", "bytes32", "bytes32", "uint256"],
                [
                    DELEGATION_TYPEHASH,
                    delegation.delegate,
                    delegation.delegator,
                    delegation.authority,
                    caveats_hash,
                    delegation.salt,
                ],
            )
        )
    )


# ---------------------------------------------------------------------------
# JSON envelope
# ---------------------------------------------------------------------------

def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _unhex(value: Any, field: str) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"{field} must be a 0x-prefixed hex string")
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        raise ValueError(f"{field} is not valid hex: {value!r}") from None


def _parse_salt(value: Any) -> int:
    # Native numbers lose precision above 2**53 in most JSON stacks.
    if not isinstance(value, str):
        raise ValueError(
            f"salt must be a decimal or hex string, got {type(value).__name__}"
        )
    try:
        return int(value, 16) if value.lower().startswith("0x") else int(value, 10)
    except ValueError:
        raise ValueError(f"salt is not an integer string: {value!r}") from None


def to_dict(signed: SignedDelegation) -> dict:
    d = signed.delegation
    return {
        "delegate": d.delegate,
        "delegator": d.delegator,
        "authority": _hex(d.authority),
        "caveats": [
            {"enforcer": c.enforcer, "terms": _hex(c.terms), "args": _hex(c.args)}
            for c in d.caveats
        ],
        "salt": str(d.salt),
        "signature": _hex(signed.signature),
    }


def from_dict(data: dict) -> SignedDelegation:
    """Rebuild a SignedDelegation from its JSON form.

    Structural validation matches the builders, so a tampered file with a
    zero address or zero salt is rejected here rather than on-chain.
    """
    caveats = CaveatPolicy(
        Caveat(
            enforcer=c["enforcer"],
            terms=_unhex(c.get("terms", "0x"), "caveat terms"),
            args=_unhex(c.get("args", "0x"), "caveat args"),
        )
        for c in data.get("caveats", [])
    )
    authority = _unhex(data.get("authority", _hex(ROOT_AUTHORITY)), "authority")
    if len(authority) != 32:
        raise ValueError("authority must be 32 bytes")
    delegation = _validated(
        data["delegate"],
        data["delegator"],
        caveats,
        _parse_salt(data["salt"]),
        authority,
    )
    return SignedDelegation(delegation, _unhex(data["signature"], "signature"))


def dumps(delegations: Iterable[SignedDelegation]) -> str:
    return json.dumps({"delegations": [to_dict(s) for s in delegations]}, indent=2)


def loads(text: str) -> list[SignedDelegation]:
    envelope = json.loads(text)
    entries = envelope.get("delegations") if isinstance(envelope, dict) else None
    if not entries:
        raise ValueError("no delegations found in envelope")
    return [from_dict(entry) for entry in entries]


def dump_delegations(path: str | Path, delegations: Iterable[SignedDelegation]) -> Path:
    path = Path(path)
    path.write_text(dumps(delegations))
    log.info("delegations saved to %s", path)
    return path


def load_delegations(path: str | Path) -> list[SignedDelegation]:
    path = Path(path)
    delegations = loads(path.read_text())
    log.info("loaded %d delegation(s) from %s", len(delegations), path)
    return delegations
