"""Process configuration, read once at startup from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .constants import ANVIL_DEPLOYMENT
from .environment import ENFORCER_NAMES, Environment
from .errors import ConfigurationMissing

DEFAULT_RPC_URL = "http://localhost:8545"
DEFAULT_BUNDLER_URL = "http://localhost:4337"
DEFAULT_DELEGATION_FILE = "delegation.json"
DEFAULT_RESULT_FILE = "redemption-result.json"


@dataclass(frozen=True)
class Settings:
    """Everything the CLI needs besides its flags.

    Attributes
    ----------
    rpc_url : str
        Chain node JSON-RPC endpoint (``RPC_URL``).
    bundler_url : str
        Bundler JSON-RPC endpoint (``BUNDLER_URL``).
    private_key : str | None
        Owner key of the redeemer account (``PRIVATE_KEY``).
    delegator_private_key : str | None
        Delegator key (``DELEGATOR_PRIVATE_KEY``); a fresh one is generated
        when absent.
    delegation_file, result_file : Path
        Where delegations and redemption results are written.
    proxy_creation_code : bytes | None
        ERC-1967 proxy creation bytecode (``PROXY_CREATION_CODE``), used to
        derive smart accounts from an owner key.
    environment : Environment
        Validated deployment addresses.
    """

    rpc_url: str
    bundler_url: str
    private_key: str | None
    delegator_private_key: str | None
    delegation_file: Path
    result_file: Path
    environment: Environment
    proxy_creation_code: bytes | None = None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        anvil: bool = False,
        required_enforcers: tuple[str, ...] = ENFORCER_NAMES,
    ) -> "Settings":
        """Load settings; with *anvil*, local deployment defaults fill gaps.

        Raises ConfigurationMissing if the deployment is incomplete.
        """
        environ = dict(os.environ if environ is None else environ)
        if anvil:
            environ = {**ANVIL_DEPLOYMENT, **{k: v for k, v in environ.items() if v}}
        return cls(
            rpc_url=environ.get("RPC_URL") or DEFAULT_RPC_URL,
            bundler_url=environ.get("BUNDLER_URL") or DEFAULT_BUNDLER_URL,
            private_key=environ.get("PRIVATE_KEY") or None,
            delegator_private_key=environ.get("DELEGATOR_PRIVATE_KEY") or None,
            delegation_file=Path(environ.get("DELEGATION_FILE") or DEFAULT_DELEGATION_FILE),
            result_file=Path(environ.get("RESULT_FILE") or DEFAULT_RESULT_FILE),
            environment=Environment.from_mapping(environ, required_enforcers=required_enforcers),
            proxy_creation_code=load_creation_code(environ.get("PROXY_CREATION_CODE")),
        )


def load_creation_code(value: str | None) -> bytes | None:
    """Read creation bytecode from a hex string or a Foundry artifact path.

    Artifacts are the ``out/<Contract>.sol/<Contract>.json`` files ``forge
    build`` writes; the bytecode is taken from ``bytecode.object``.
    """
    if not value:
        return None
    value = value.strip()
    if not value.startswith("0x"):
        path = Path(value)
        if not path.is_file():
            raise ConfigurationMissing(["PROXY_CREATION_CODE"], f"no such artifact: {value}")
        artifact = json.loads(path.read_text())
        bytecode = artifact.get("bytecode")
        value = bytecode.get("object", "") if isinstance(bytecode, dict) else bytecode or ""
    try:
        code = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    except ValueError:
        raise ConfigurationMissing(["PROXY_CREATION_CODE"], "not valid hex bytecode") from None
    if not code:
        raise ConfigurationMissing(["PROXY_CREATION_CODE"], "bytecode is empty")
    return code
