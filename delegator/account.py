"""Hybrid smart accounts: address, deployment data, and the owner's signing scheme.

The account is counterfactual until its first user operation: the factory
deploys it with CREATE2, so its address is known before any code exists.
Signing goes through the account's owner EOA, which is what the hybrid
implementation's ``isValidSignature`` checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from eth_abi import encode
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from . import address
from .constants import (
    DEPLOY_SELECTOR,
    DOMAIN_VERSION,
    EXECUTE_SELECTOR,
    HYBRID_DELEGATOR_DOMAIN_NAME,
    HYBRID_INITIALIZE_SELECTOR,
    PACKED_USER_OPERATION_TYPES,
)
from .environment import Environment
from .errors import ConfigurationMissing, SigningUnavailable
from .redemption import Execution, ExecutionMode, encode_execution_calldata
from .salt import new_salt
from .userop import Call, UserOperation

log = logging.getLogger(__name__)


def create2_address(deployer: str, salt: bytes, init_code: bytes) -> str:
    """Address of a CREATE2 deployment."""
    digest = Web3.keccak(
        b"\xff" + address.to_bytes(deployer) + salt + Web3.keccak(init_code)
    )
    return "0x" + bytes(digest[12:]).hex()


def hybrid_initializer(
    owner: str,
    key_ids: Sequence[str] = (),
    x_values: Sequence[int] = (),
    y_values: Sequence[int] = (),
) -> bytes:
    """``initialize(owner, keyIds, xValues, yValues)`` calldata for a Hybrid DeleGator.

    With no P-256 keys the account is controlled by *owner* alone.
    """
    if not len(key_ids) == len(x_values) == len(y_values):
        raise ValueError("key ids and public key coordinates must have equal length")
    return HYBRID_INITIALIZE_SELECTOR + encode(
        ["address", "string[]", "uint256[]", "uint256[]"],
        [address.parse(owner), list(key_ids), list(x_values), list(y_values)],
    )


def proxy_creation_code(proxy_bytecode: bytes, implementation: str, initializer: bytes) -> bytes:
    """ERC-1967 proxy creation code with its ``(implementation, data)`` constructor args."""
    if not proxy_bytecode:
        raise ValueError("proxy creation bytecode is empty")
    return bytes(proxy_bytecode) + encode(
        ["address", "bytes"], [address.parse(implementation), initializer]
    )


@dataclass(frozen=True)
class SmartAccount:
    """A hybrid DeleGator smart account.

    Attributes
    ----------
    address : str
        The account's (possibly counterfactual) address.
    environment : Environment
        Deployment the account belongs to.
    owner : LocalAccount | None
        Owner key; None for a watch-only account that cannot sign.
    factory_data : bytes
        Calldata for the factory that deploys this account.
    deploy_salt : int | None
        CREATE2 salt, when the account was derived locally.
    """

    address: str
    environment: Environment
    owner: LocalAccount | None = None
    factory_data: bytes = b""
    deploy_salt: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", address.parse_nonzero(self.address, "account"))
        object.__setattr__(self, "factory_data", bytes(self.factory_data))

    @classmethod
    def counterfactual(
        cls,
        owner: LocalAccount,
        environment: Environment,
        creation_code: bytes,
        deploy_salt: int | None = None,
    ) -> "SmartAccount":
        """Derive the account the factory would deploy from *creation_code*.

        *creation_code* is the proxy creation bytecode with its constructor
        arguments (implementation and initializer) already appended.
        """
        if deploy_salt is None:
            deploy_salt = new_salt()
        salt = deploy_salt.to_bytes(32, "big")
        factory_data = DEPLOY_SELECTOR + encode(["bytes", "bytes32"], [creation_code, salt])
        account_address = create2_address(environment.factory, salt, creation_code)
        log.debug("counterfactual account %s (owner %s)", account_address, owner.address)
        return cls(
            address=account_address,
            environment=environment,
            owner=owner,
            factory_data=factory_data,
            deploy_salt=deploy_salt,
        )

    @classmethod
    def hybrid(
        cls,
        owner: LocalAccount,
        environment: Environment,
        proxy_bytecode: bytes | None,
        deploy_salt: int | None = None,
    ) -> "SmartAccount":
        """Derive the Hybrid DeleGator owned solely by *owner*.

        *proxy_bytecode* is the ERC-1967 proxy creation code the factory
        deploys in front of ``environment.implementation``.

        Raises
        ------
        ConfigurationMissing
            If no proxy bytecode is configured.
        """
        if not proxy_bytecode:
            raise ConfigurationMissing(["PROXY_CREATION_CODE"], "needed to derive a smart account")
        creation_code = proxy_creation_code(
            proxy_bytecode, environment.implementation, hybrid_initializer(owner.address)
        )
        return cls.counterfactual(owner, environment, creation_code, deploy_salt)

    # -- deployment -----------------------------------------------------------

    def deployment_call(self) -> Call:
        if not self.factory_data:
            raise ValueError(f"account {self.address} has no deployment data")
        return Call(to=self.environment.factory, data=self.factory_data)

    # -- calls ----------------------------------------------------------------

    def encode_calls(self, calls: Sequence[Call]) -> bytes:
        """Account callData for *calls*.

        A lone zero-value call to the account itself is passed through as-is;
        anything else is wrapped in ``execute(bytes32 mode, bytes executionCalldata)``.
        """
        if not calls:
            raise ValueError("no calls to encode")
        if len(calls) == 1 and calls[0].to == self.address and not calls[0].value:
            # The EntryPoint may call the account directly.
            return calls[0].data
        executions = [Execution(c.to, c.value, c.data) for c in calls]
        mode = ExecutionMode.SINGLE_DEFAULT if len(executions) == 1 else ExecutionMode.BATCH_DEFAULT
        payload = encode_execution_calldata(mode, executions)
        return EXECUTE_SELECTOR + encode(["bytes32", "bytes"], [mode.value, payload])

    # -- signing --------------------------------------------------------------

    def sign_typed_data(self, typed_data: dict) -> bytes:
        if self.owner is None:
            raise SigningUnavailable(f"account {self.address} has no owner key")
        signable = encode_typed_data(full_message=typed_data)
        return bytes(self.owner.sign_message(signable).signature)

    def user_operation_typed_data(self, user_op: UserOperation) -> dict:
        env = self.environment
        return {
            "types": PACKED_USER_OPERATION_TYPES,
            "primaryType": "PackedUserOperation",
            "domain": {
                "name": HYBRID_DELEGATOR_DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": env.chain_id,
                "verifyingContract": address.to_checksum(self.address),
            },
            "message": {
                "sender": address.to_checksum(user_op.sender),
                "nonce": user_op.nonce,
                "initCode": user_op.init_code,
                "callData": user_op.call_data,
                "accountGasLimits": user_op.account_gas_limits,
                "preVerificationGas": user_op.pre_verification_gas,
                "gasFees": user_op.gas_fees,
                "paymasterAndData": user_op.paymaster_and_data,
                "entryPoint": address.to_checksum(env.entry_point),
            },
        }

    def sign_user_operation(self, user_op: UserOperation) -> bytes:
        return self.sign_typed_data(self.user_operation_typed_data(user_op))
