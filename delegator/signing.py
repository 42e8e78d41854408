"""Delegation signing.

A delegation is signed as EIP-712 typed data in the DelegationManager's
domain, so the on-chain verifier can recompute the digest. Two signing
capabilities exist:

  - EOASigner: the delegator is a key-controlled account and signs directly
  - SmartAccountSigner: the delegator is a smart account and signs with its
    own scheme (for the hybrid implementation, its owner key)

Which one is used is a configuration decision, see :func:`signer_from_config`.
The signature is opaque bytes; only the on-chain verifier validates it.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

from eth_account import Account
from eth_account.messages import encode_typed_data

from . import address
from .account import SmartAccount
from .constants import (
    DELEGATION_MANAGER_DOMAIN_NAME,
    DELEGATION_TYPES,
    DOMAIN_VERSION,
)
from .delegation import Delegation, SignedDelegation
from .environment import Environment
from .errors import SigningUnavailable

log = logging.getLogger(__name__)

_KEY_RE = re.compile(r"0x[0-9a-fA-F]{64}")

EOA = "eoa"
SMART_ACCOUNT = "smart-account"


def normalize_private_key(key: str) -> str:
    """Strip whitespace and surrounding quotes, add ``0x``, and validate.

    Raises ValueError without echoing the key material.
    """
    formatted = key.strip()
    if len(formatted) >= 2 and formatted[0] == formatted[-1] and formatted[0] in "\"'":
        formatted = formatted[1:-1].strip()
    if not formatted.startswith("0x"):
        formatted = "0x" + formatted
    if not _KEY_RE.fullmatch(formatted):
        raise ValueError(
            f"invalid private key format: expected 64 hex digits, "
            f"got {len(formatted) - 2} characters"
        )
    return formatted


def delegation_typed_data(delegation: Delegation, environment: Environment) -> dict:
    """EIP-712 payload for *delegation* in *environment*'s manager domain."""
    return {
        "types": DELEGATION_TYPES,
        "primaryType": "Delegation",
        "domain": {
            "name": DELEGATION_MANAGER_DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": environment.chain_id,
            "verifyingContract": address.to_checksum(environment.delegation_manager),
        },
        "message": {
            "delegate": address.to_checksum(delegation.delegate),
            "delegator": address.to_checksum(delegation.delegator),
            "authority": delegation.authority,
            "caveats": [
                {"enforcer": address.to_checksum(c.enforcer), "terms": c.terms}
                for c in delegation.caveats
            ],
            "salt": delegation.salt,
        },
    }


class DelegationSigner(ABC):
    """Something that can seal a delegation on behalf of its delegator."""

    kind: str

    def __init__(self, environment: Environment) -> None:
        self.environment = environment

    @property
    @abstractmethod
    def address(self) -> str:
        """The delegator address this signer speaks for."""

    @abstractmethod
    def _sign_typed_data(self, typed_data: dict) -> bytes:
        ...

    def _check_ready(self) -> None:
        pass

    def sign(self, delegation: Delegation) -> SignedDelegation:
        """Sign *delegation* and return the sealed record.

        Raises
        ------
        SigningUnavailable
            If the capability is not ready, or *delegation* names a
            different delegator (its signature could never verify).
        """
        self._check_ready()
        if not address.equal(delegation.delegator, self.address):
            raise SigningUnavailable(
                f"{self.kind} signer for {self.address} cannot sign a delegation "
                f"issued by {delegation.delegator}"
            )
        signature = self._sign_typed_data(delegation_typed_data(delegation, self.environment))
        log.debug(
            "signed delegation %s -> %s with %s signer",
            delegation.delegator, delegation.delegate, self.kind,
        )
        return SignedDelegation(delegation=delegation, signature=signature)


class EOASigner(DelegationSigner):
    """Signs with a private key held in process."""

    kind = EOA

    def __init__(self, private_key: str | None, environment: Environment) -> None:
        super().__init__(environment)
        self._account = Account.from_key(normalize_private_key(private_key)) if private_key else None

    @property
    def address(self) -> str:
        if self._account is None:
            raise SigningUnavailable("no private key configured")
        return address.parse(self._account.address)

    def _check_ready(self) -> None:
        if self._account is None:
            raise SigningUnavailable("no private key configured")

    def _sign_typed_data(self, typed_data: dict) -> bytes:
        signable = encode_typed_data(full_message=typed_data)
        return bytes(self._account.sign_message(signable).signature)


class SmartAccountSigner(DelegationSigner):
    """Signs through a smart account's own signature scheme.

    Parameters
    ----------
    account : SmartAccount
        The delegator account.
    environment : Environment
        Must be the account's deployment.
    deployed : bool | None
        Known deployment state of the account, if any.
    require_deployed : bool
        Refuse to sign for an account not known to be deployed. Hybrid
        accounts can sign counterfactually, so this is off by default.
    """

    kind = SMART_ACCOUNT

    def __init__(
        self,
        account: SmartAccount,
        environment: Environment,
        *,
        deployed: bool | None = None,
        require_deployed: bool = False,
    ) -> None:
        super().__init__(environment)
        if not account.environment.matches(environment):
            raise SigningUnavailable(
                f"account {account.address} belongs to a different deployment"
            )
        self.account = account
        self.deployed = deployed
        self.require_deployed = require_deployed

    @property
    def address(self) -> str:
        return self.account.address

    def _check_ready(self) -> None:
        if self.account.owner is None:
            raise SigningUnavailable(f"account {self.account.address} has no owner key")
        if self.require_deployed and self.deployed is not True:
            raise SigningUnavailable(
                f"account {self.account.address} is not deployed and this signer "
                f"does not sign counterfactually"
            )

    def _sign_typed_data(self, typed_data: dict) -> bytes:
        return self.account.sign_typed_data(typed_data)


def signer_from_config(
    kind: str,
    environment: Environment,
    *,
    private_key: str | None = None,
    account: SmartAccount | None = None,
    require_deployed: bool = False,
    deployed: bool | None = None,
) -> DelegationSigner:
    """Select the signing capability named by configuration."""
    if kind == EOA:
        return EOASigner(private_key, environment)
    if kind == SMART_ACCOUNT:
        if account is None:
            raise SigningUnavailable("smart-account signing needs an account")
        return SmartAccountSigner(
            account, environment, deployed=deployed, require_deployed=require_deployed,
        )
    raise ValueError(f"unknown signer kind {kind!r} (expected {EOA!r} or {SMART_ACCOUNT!r})")
