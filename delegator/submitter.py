"""Submit redemptions as user operations and wait for settlement.

An operation moves through ``BUILT -> SUBMITTED -> CONFIRMED | FAILED |
TIMED_OUT``. Submission and receipt polling are the only two suspension
points. Nothing is retried here: a rejected or timed-out operation is
reported with its hash and state, and the caller decides whether to poll
again or resubmit, since a blind resend could consume the authorization
twice.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Sequence

from . import redemption
from .account import SmartAccount
from .constants import DUMMY_SIGNATURE
from .environment import Environment
from .errors import (
    ConfigurationMissing,
    RejectionReason,
    RpcError,
    SubmissionRejected,
    Timeout,
)
from .fees import FeeOracle, FeePolicy
from .redemption import DelegationChain, Execution, ExecutionMode
from .rpc import BundlerClient, NodeClient
from .userop import Call, Receipt, UserOperation

log = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 60.0

# ERC-7769 bundler error codes for operations that fail validation.
VALIDATION_ERROR_CODES = (-32500, -32501, -32502, -32503, -32504, -32505, -32507)
_AA_CODE_RE = re.compile(r"\baa\d\d\b")


class OperationState(str, Enum):
    BUILT = "built"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class OperationHandle:
    """Tracks one user operation from construction to settlement.

    Attributes
    ----------
    account : str
        Sender smart account.
    calls : tuple[Call, ...]
        Calls in execution order; the deployment call, if any, is first.
    user_operation : UserOperation
        The signed operation.
    operation_hash : str
        Locally computed hash until the relay accepts it, then the hash the
        relay returned.
    state : OperationState
    receipt : Receipt | None
        Set once the operation settles.
    """

    account: str
    calls: tuple
    user_operation: UserOperation
    operation_hash: str
    deploys_account: bool = False
    state: OperationState = OperationState.BUILT
    receipt: Receipt | None = None


@dataclass(frozen=True)
class PollingPolicy:
    """Receipt polling schedule: *interval*, growing by *backoff* up to *max_interval*."""

    interval: float = 1.0
    backoff: float = 1.5
    max_interval: float = 10.0

    def delays(self) -> Iterator[float]:
        delay = self.interval
        while True:
            yield delay
            delay = min(delay * self.backoff, self.max_interval)


def classify_rejection(error: RpcError) -> RejectionReason:
    """Map a bundler error to a rejection reason.

    Uses the JSON-RPC code and the EntryPoint ``AAxx`` revert codes carried
    in the message.
    """
    message = (error.message or "").lower()
    if "aa21" in message or "prefund" in message or "insufficient" in message:
        return RejectionReason.INSUFFICIENT_FUNDS
    if "aa25" in message or "nonce" in message:
        return RejectionReason.NONCE_CONFLICT
    if error.code == -32602 or "invalid params" in message:
        return RejectionReason.MALFORMED
    if error.code in VALIDATION_ERROR_CODES or _AA_CODE_RE.search(message):
        return RejectionReason.VALIDATION_FAILED
    return RejectionReason.UNKNOWN


class OperationSubmitter:
    """Builds, signs, and submits user operations for one deployment.

    Parameters
    ----------
    environment : Environment
        Deployment every submitted account must belong to.
    node : NodeClient
        Chain node, for deployment checks, nonces, and fee quotes.
    bundler : BundlerClient
        Relay bound to ``environment.entry_point``.
    fee_oracle : FeeOracle | None
        Default price source when a FeePolicy names none.
    """

    def __init__(
        self,
        environment: Environment,
        node: NodeClient,
        bundler: BundlerClient,
        fee_oracle: FeeOracle | None = None,
    ) -> None:
        self.environment = environment
        self.node = node
        self.bundler = bundler
        self.fee_oracle = fee_oracle

    # -- liveness -------------------------------------------------------------

    async def probe_node(self) -> int:
        block = await self.node.block_number()
        log.info("node is up at block %d", block)
        return block

    async def probe_bundler(self) -> list[str]:
        entry_points = await self.bundler.supported_entry_points()
        if not any(ep.lower() == self.environment.entry_point for ep in entry_points):
            log.warning(
                "bundler does not list entry point %s (supports %s)",
                self.environment.entry_point, entry_points,
            )
        else:
            log.info("bundler is up, entry points: %s", entry_points)
        return entry_points

    # -- building -------------------------------------------------------------

    async def prepare(
        self,
        account: SmartAccount,
        calls: Sequence[Call],
        fee_policy: FeePolicy = FeePolicy(),
    ) -> OperationHandle:
        """Build and sign a user operation without sending it."""
        if not account.environment.matches(self.environment):
            raise ConfigurationMissing(
                ["environment"], f"account {account.address} belongs to another deployment"
            )
        calls = tuple(calls)
        if not calls:
            raise ValueError("an operation needs at least one call")

        deployed = await self.node.is_deployed(account.address)
        if not deployed:
            # Redemption executes the account's own code, so it must exist first.
            calls = (account.deployment_call(),) + calls
            log.info("account %s is not deployed; prepending deployment", account.address)

        deploy_call = None if deployed else calls[0]
        executed = calls if deployed else calls[1:]

        nonce = await self.node.entry_point_nonce(self.environment.entry_point, account.address)
        fees = await fee_policy.resolve_fees(self.fee_oracle)
        draft = UserOperation(
            sender=account.address,
            nonce=nonce,
            call_data=account.encode_calls(executed),
            factory=deploy_call.to if deploy_call else None,
            factory_data=deploy_call.data if deploy_call else b"",
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            signature=DUMMY_SIGNATURE,
        )

        estimate = {}
        if None in (
            fee_policy.call_gas_limit,
            fee_policy.verification_gas_limit,
            fee_policy.pre_verification_gas,
        ):
            try:
                estimate = await self.bundler.estimate_user_operation_gas(draft)
            except RpcError as exc:
                local_hash = "0x" + draft.hash(self.environment.entry_point, self.environment.chain_id).hex()
                raise SubmissionRejected(classify_rejection(exc), exc.message, local_hash) from exc
        user_op = draft.with_gas(**fee_policy.gas_limits(estimate))
        user_op = user_op.with_signature(account.sign_user_operation(user_op))

        local_hash = "0x" + user_op.hash(self.environment.entry_point, self.environment.chain_id).hex()
        log.debug("built operation %s with %d call(s), nonce %d", local_hash, len(calls), nonce)
        return OperationHandle(
            account=account.address,
            calls=calls,
            user_operation=user_op,
            operation_hash=local_hash,
            deploys_account=not deployed,
        )

    # -- submission -----------------------------------------------------------

    async def send(self, handle: OperationHandle) -> OperationHandle:
        """Hand a BUILT operation to the relay.

        Raises
        ------
        SubmissionRejected
            If the relay refuses it; the handle stays BUILT.
        """
        if handle.state is not OperationState.BUILT:
            raise ValueError(f"operation {handle.operation_hash} is already {handle.state.value}")
        try:
            accepted = await self.bundler.send_user_operation(handle.user_operation)
        except RpcError as exc:
            reason = classify_rejection(exc)
            log.error("operation %s rejected (%s): %s", handle.operation_hash, reason.value, exc.message)
            raise SubmissionRejected(reason, exc.message, handle.operation_hash) from exc
        if accepted.lower() != handle.operation_hash:
            log.warning(
                "relay returned hash %s, expected %s", accepted, handle.operation_hash
            )
        handle.operation_hash = accepted
        handle.state = OperationState.SUBMITTED
        log.info("operation submitted: %s", accepted)
        return handle

    async def submit(
        self,
        account: SmartAccount,
        calls: Sequence[Call],
        fee_policy: FeePolicy = FeePolicy(),
    ) -> OperationHandle:
        """Build, sign, and send; returns a SUBMITTED handle."""
        handle = await self.prepare(account, calls, fee_policy)
        return await self.send(handle)

    async def await_receipt(
        self,
        handle: OperationHandle,
        timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        policy: PollingPolicy = PollingPolicy(),
    ) -> Receipt:
        """Poll the relay until *handle* settles or *timeout* seconds pass.

        A receipt with ``success=False`` is returned, not raised: the
        operation was processed but reverted. Cancelling this coroutine
        only stops local polling.

        Raises
        ------
        Timeout
            If no receipt arrived in time. The handle is left TIMED_OUT and
            may be polled again.
        """
        if handle.state is OperationState.BUILT:
            raise ValueError(f"operation {handle.operation_hash} was never submitted")
        if handle.receipt is not None:
            return handle.receipt

        async def poll() -> Receipt:
            for delay in policy.delays():
                data = await self.bundler.get_user_operation_receipt(handle.operation_hash)
                if data:
                    return Receipt.from_rpc(data)
                log.debug("no receipt yet for %s, retrying in %.2fs", handle.operation_hash, delay)
                await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        try:
            receipt = await asyncio.wait_for(poll(), timeout)
        except asyncio.TimeoutError:
            handle.state = OperationState.TIMED_OUT
            log.warning("operation %s: no receipt after %.2fs", handle.operation_hash, timeout)
            raise Timeout(handle.operation_hash, handle.state.value, timeout) from None

        handle.receipt = receipt
        handle.state = OperationState.CONFIRMED if receipt.success else OperationState.FAILED
        if receipt.success:
            log.info("operation %s confirmed in tx %s", receipt.operation_hash, receipt.transaction_hash)
        else:
            log.warning("operation %s reverted on-chain: %s", receipt.operation_hash, receipt.reason)
        return receipt

    # -- redemption -----------------------------------------------------------

    async def redeem(
        self,
        account: SmartAccount,
        chains: Sequence[DelegationChain],
        modes: Sequence[ExecutionMode],
        execution_sets: Sequence[Sequence[Execution]],
        fee_policy: FeePolicy = FeePolicy(),
    ) -> OperationHandle:
        """Redeem delegation chains from *account* and submit the operation.

        The identity check runs before any network call: *account* must be
        the terminal delegate of every chain. The redemption call targets
        the redeemer account itself, which forwards it to the
        DelegationManager.
        """
        redemption.check_redeemer(account.address, chains)
        for chain in chains:
            redemption.check_chain_links(chain)
        calldata = redemption.encode(chains, modes, execution_sets)
        return await self.submit(account, [Call(to=account.address, data=calldata)], fee_policy)
