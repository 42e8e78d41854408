"""Deployment environment: the contract addresses a delegation is bound to.

An :class:`Environment` is built once at process start, validated at
construction, and passed explicitly to every component that needs it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from . import address
from .constants import ALLOWED_TARGETS, VALUE_LTE
from .errors import ConfigurationMissing, InvalidAddress

log = logging.getLogger(__name__)

ENFORCER_NAMES = (ALLOWED_TARGETS, VALUE_LTE)

# Environment variable names, as used by the deployment scripts.
CHAIN_ID_VAR = "CHAIN_ID"
CORE_VARS = {
    "delegation_manager": "DELEGATION_MANAGER_ADDRESS",
    "entry_point": "ENTRYPOINT_ADDRESS",
    "implementation": "HYBRID_DELEGATOR_ADDRESS",
    "factory": "SIMPLE_FACTORY_ADDRESS",
}
ENFORCER_VARS = {
    ALLOWED_TARGETS: "ALLOWED_TARGETS_ENFORCER_ADDRESS",
    VALUE_LTE: "VALUE_LTE_ENFORCER_ADDRESS",
}


@dataclass(frozen=True)
class Environment:
    """Contract addresses of one delegation framework deployment.

    Attributes
    ----------
    chain_id : int
        Chain the contracts live on; part of every EIP-712 domain.
    delegation_manager : str
        DelegationManager, the verifying contract for delegation signatures.
    entry_point : str
        ERC-4337 EntryPoint the bundler submits to.
    implementation : str
        Hybrid DeleGator implementation behind every smart account proxy.
    factory : str
        Factory that deploys smart account proxies.
    enforcers : dict[str, str]
        Caveat enforcer addresses keyed by enforcer name
        (e.g. ``"AllowedTargets"``).
    """

    chain_id: int
    delegation_manager: str
    entry_point: str
    implementation: str
    factory: str
    enforcers: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        invalid = []
        if not isinstance(self.chain_id, int) or isinstance(self.chain_id, bool) or self.chain_id <= 0:
            invalid.append("chain_id")
        for name in CORE_VARS:
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, address.parse_nonzero(value, name))
            except InvalidAddress:
                invalid.append(name)
        enforcers = {}
        for name, value in dict(self.enforcers).items():
            try:
                enforcers[name] = address.parse_nonzero(value, name)
            except InvalidAddress:
                invalid.append(f"enforcers.{name}")
        if invalid:
            raise ConfigurationMissing(invalid)
        object.__setattr__(self, "enforcers", enforcers)

    # -- construction ---------------------------------------------------------

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, str],
        *,
        required_enforcers: tuple[str, ...] = ENFORCER_NAMES,
    ) -> "Environment":
        """Build an environment from deployment-script style variables.

        Every core address, the chain id, and each enforcer named in
        *required_enforcers* must be present. A zero address counts as
        absent. All problems are reported together.
        """
        missing = []
        chain_id = mapping.get(CHAIN_ID_VAR)
        if not chain_id:
            missing.append(CHAIN_ID_VAR)
        core = {}
        for attr, var in CORE_VARS.items():
            value = mapping.get(var)
            if not value or _is_zero(value):
                missing.append(var)
            core[attr] = value
        enforcers = {}
        for name, var in ENFORCER_VARS.items():
            value = mapping.get(var)
            if value and not _is_zero(value):
                enforcers[name] = value
            elif name in required_enforcers:
                missing.append(var)
        if missing:
            raise ConfigurationMissing(missing)

        try:
            parsed_chain_id = int(chain_id, 0)
        except ValueError:
            raise ConfigurationMissing([CHAIN_ID_VAR], f"not an integer: {chain_id!r}")

        try:
            env = cls(chain_id=parsed_chain_id, enforcers=enforcers, **core)
        except ConfigurationMissing as exc:
            # Report variable names rather than attribute names.
            names = [CORE_VARS.get(n, ENFORCER_VARS.get(n.split(".", 1)[-1], n)) for n in exc.names]
            raise ConfigurationMissing(names) from None
        log.debug(
            "environment loaded: chain=%d manager=%s entry_point=%s enforcers=%s",
            env.chain_id, env.delegation_manager, env.entry_point, sorted(env.enforcers),
        )
        return env

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        required_enforcers: tuple[str, ...] = ENFORCER_NAMES,
    ) -> "Environment":
        """Build an environment from process environment variables."""
        return cls.from_mapping(
            os.environ if environ is None else environ,
            required_enforcers=required_enforcers,
        )

    # -- queries --------------------------------------------------------------

    def enforcer(self, name: str) -> str:
        """Return the address of enforcer *name*.

        Raises ConfigurationMissing if this deployment has none.
        """
        try:
            return self.enforcers[name]
        except KeyError:
            raise ConfigurationMissing([ENFORCER_VARS.get(name, name)]) from None

    def matches(self, other: "Environment") -> bool:
        """True if *other* targets the same deployment (chain and manager)."""
        return (
            self.chain_id == other.chain_id
            and self.delegation_manager == other.delegation_manager
            and self.entry_point == other.entry_point
        )

    def describe(self) -> dict:
        return {
            "chainId": self.chain_id,
            "DelegationManager": self.delegation_manager,
            "EntryPoint": self.entry_point,
            "implementations": {"Hybrid": self.implementation},
            "SimpleFactory": self.factory,
            "caveatEnforcers": dict(self.enforcers),
        }


def _is_zero(value: str) -> bool:
    try:
        return address.is_zero(value)
    except InvalidAddress:
        return False
