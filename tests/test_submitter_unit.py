"""Tests for building, submitting, and settling redemptions.

The node and the bundler are scripted in-memory transports (see
conftest.py), so these run without any chain.
"""

import asyncio

import pytest
from eth_abi import decode
from eth_account import Account
from eth_account.messages import encode_typed_data

from delegator import redemption
from delegator.account import SmartAccount
from delegator.caveats import CaveatPolicy, allowed_targets, value_lte
from delegator.delegation import build_root
from delegator.environment import Environment
from delegator.errors import (
    ConfigurationMissing,
    IdentityMismatch,
    RejectionReason,
    RpcError,
    SubmissionRejected,
    Timeout,
)
from delegator.fees import FeePolicy
from delegator.redemption import Execution, ExecutionMode
from delegator.signing import EOASigner
from delegator.submitter import OperationState, PollingPolicy, classify_rejection
from delegator.userop import Call

from conftest import (
    DEPLOYMENT,
    OPERATION_HASH,
    RECIPIENT,
    TX_HASH,
    receipt_payload,
)

FAST = PollingPolicy(interval=0.001, backoff=1.0, max_interval=0.001)
VALUE = 10**15


@pytest.fixture()
def signed(env, delegator_key, delegator_address, redeemer):
    policy = value_lte(allowed_targets(CaveatPolicy.empty(), env, [RECIPIENT]), env, VALUE)
    unsigned = build_root(redeemer.address, delegator_address, policy, 0xABCD1234)
    return EOASigner(delegator_key, env).sign(unsigned)


def _redeem(submitter, redeemer, signed, **kwargs):
    return submitter.redeem(
        redeemer,
        [[signed]],
        [ExecutionMode.SINGLE_DEFAULT],
        [[Execution(RECIPIENT, VALUE)]],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_redeem_and_confirm(submitter, redeemer, signed, bundler_transport):
    async def scenario():
        handle = await _redeem(submitter, redeemer, signed)
        assert handle.state is OperationState.SUBMITTED
        assert handle.operation_hash == OPERATION_HASH
        receipt = await submitter.await_receipt(handle, timeout=5, policy=FAST)
        return handle, receipt

    handle, receipt = asyncio.run(scenario())
    assert receipt.success
    assert receipt.transaction_hash == TX_HASH
    assert handle.state is OperationState.CONFIRMED
    assert handle.receipt is receipt
    assert bundler_transport.methods() == [
        "eth_estimateUserOperationGas",
        "eth_sendUserOperation",
        "eth_getUserOperationReceipt",
        "eth_getUserOperationReceipt",
    ]


def test_call_data_is_the_redemption(submitter, redeemer, signed):
    handle = asyncio.run(_redeem(submitter, redeemer, signed))
    expected = redemption.encode(
        [[signed]], [ExecutionMode.SINGLE_DEFAULT], [[Execution(RECIPIENT, VALUE)]]
    )
    assert handle.user_operation.call_data == expected


def test_undeployed_account_is_deployed_first(env, submitter, redeemer, signed):
    handle = asyncio.run(_redeem(submitter, redeemer, signed))
    assert handle.deploys_account
    assert handle.calls[0] == redeemer.deployment_call()
    assert handle.user_operation.factory == env.factory
    assert handle.user_operation.factory_data == redeemer.factory_data


def test_deployed_account_has_no_init_code(submitter, node_transport, redeemer, signed):
    node_transport.on("eth_getCode", "0x6080604052")
    handle = asyncio.run(_redeem(submitter, redeemer, signed))
    assert not handle.deploys_account
    assert handle.user_operation.factory is None
    assert len(handle.calls) == 1


def test_operation_is_signed_by_owner(submitter, redeemer, signed):
    handle = asyncio.run(_redeem(submitter, redeemer, signed))
    op = handle.user_operation
    signable = encode_typed_data(full_message=redeemer.user_operation_typed_data(op))
    assert Account.recover_message(signable, signature=op.signature) == redeemer.owner.address


def test_nonce_and_gas(submitter, node_transport, redeemer, signed):
    node_transport.on("eth_call", "0x" + (5).to_bytes(32, "big").hex())
    handle = asyncio.run(_redeem(submitter, redeemer, signed, fee_policy=FeePolicy(gas_buffer_percent=150)))
    op = handle.user_operation
    assert op.nonce == 5
    assert op.call_gas_limit == 150_000
    assert op.max_fee_per_gas == 3 * 10**9
    assert op.max_priority_fee_per_gas == 10**9


def test_fixed_limits_skip_estimation(submitter, bundler_transport, redeemer, signed):
    policy = FeePolicy(call_gas_limit=1, verification_gas_limit=2, pre_verification_gas=3)
    handle = asyncio.run(_redeem(submitter, redeemer, signed, fee_policy=policy))
    assert "eth_estimateUserOperationGas" not in bundler_transport.methods()
    assert handle.user_operation.verification_gas_limit == 2


def test_getnonce_call_targets_entry_point(env, submitter, node_transport, redeemer, signed):
    asyncio.run(_redeem(submitter, redeemer, signed))
    ((call, _),) = [params for method, params in node_transport.calls if method == "eth_call"]
    assert call["to"].lower() == env.entry_point
    sender, key = decode(["address", "uint192"], bytes.fromhex(call["data"][10:]))
    assert sender.lower() == redeemer.address
    assert key == 0


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

def test_identity_mismatch_before_any_network_call(
    env, submitter, node_transport, bundler_transport, delegator_key, delegator_address, redeemer
):
    foreign = EOASigner(delegator_key, env).sign(
        build_root(RECIPIENT, delegator_address, CaveatPolicy.empty(), 1)
    )
    with pytest.raises(IdentityMismatch):
        asyncio.run(_redeem(submitter, redeemer, foreign))
    assert node_transport.calls == []
    assert bundler_transport.calls == []


def test_account_from_other_deployment(submitter, redeemer):
    other = Environment.from_mapping({**DEPLOYMENT, "CHAIN_ID": "1"})
    stranger = SmartAccount(address=redeemer.address, environment=other, owner=redeemer.owner)
    with pytest.raises(ConfigurationMissing):
        asyncio.run(submitter.submit(stranger, [Call(to=RECIPIENT)]))


def test_await_before_send(submitter, redeemer):
    async def scenario():
        handle = await submitter.prepare(redeemer, [Call(to=RECIPIENT)])
        assert handle.state is OperationState.BUILT
        await submitter.await_receipt(handle)

    with pytest.raises(ValueError, match="never submitted"):
        asyncio.run(scenario())


def test_cannot_send_twice(submitter, redeemer):
    async def scenario():
        handle = await submitter.submit(redeemer, [Call(to=RECIPIENT)])
        await submitter.send(handle)

    with pytest.raises(ValueError, match="already"):
        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------

def test_relay_rejection_is_classified(submitter, bundler_transport, redeemer, signed):
    bundler_transport.on(
        "eth_sendUserOperation",
        RpcError("eth_sendUserOperation", -32500, "AA21 didn't pay prefund"),
    )
    with pytest.raises(SubmissionRejected) as excinfo:
        asyncio.run(_redeem(submitter, redeemer, signed))
    assert excinfo.value.reason is RejectionReason.INSUFFICIENT_FUNDS
    assert excinfo.value.operation_hash.startswith("0x")


def test_estimation_rejection(submitter, bundler_transport, redeemer, signed):
    bundler_transport.on(
        "eth_estimateUserOperationGas",
        RpcError("eth_estimateUserOperationGas", -32602, "invalid params: callData"),
    )
    with pytest.raises(SubmissionRejected) as excinfo:
        asyncio.run(_redeem(submitter, redeemer, signed))
    assert excinfo.value.reason is RejectionReason.MALFORMED
    assert "eth_sendUserOperation" not in bundler_transport.methods()


@pytest.mark.parametrize("code, message, reason", [
    (-32500, "AA21 didn't pay prefund", RejectionReason.INSUFFICIENT_FUNDS),
    (-32000, "insufficient funds for gas", RejectionReason.INSUFFICIENT_FUNDS),
    (-32500, "AA25 invalid account nonce", RejectionReason.NONCE_CONFLICT),
    (-32602, "invalid params", RejectionReason.MALFORMED),
    (-32507, "signature check failed", RejectionReason.VALIDATION_FAILED),
    (-32000, "AA23 reverted", RejectionReason.VALIDATION_FAILED),
    (-32603, "internal error", RejectionReason.UNKNOWN),
])
def test_classify_rejection(code, message, reason):
    assert classify_rejection(RpcError("eth_sendUserOperation", code, message)) is reason


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

def test_reverted_operation_is_failed_not_raised(submitter, bundler_transport, redeemer, signed):
    bundler_transport.on("eth_getUserOperationReceipt", [receipt_payload(success=False)])

    async def scenario():
        handle = await _redeem(submitter, redeemer, signed)
        receipt = await submitter.await_receipt(handle, timeout=5, policy=FAST)
        return handle, receipt

    handle, receipt = asyncio.run(scenario())
    assert not receipt.success
    assert handle.state is OperationState.FAILED


def test_timeout_keeps_handle(submitter, bundler_transport, redeemer, signed):
    async def hang(params):
        await asyncio.sleep(3600)

    bundler_transport.on("eth_getUserOperationReceipt", hang)

    async def scenario():
        handle = await _redeem(submitter, redeemer, signed)
        with pytest.raises(Timeout):
            await submitter.await_receipt(handle, timeout=0.05, policy=FAST)
        return handle

    handle = asyncio.run(scenario())
    assert handle.state is OperationState.TIMED_OUT
    assert handle.receipt is None


def test_timeout_raises_with_hash(submitter, bundler_transport, redeemer, signed):
    bundler_transport.on("eth_getUserOperationReceipt", [None])

    async def scenario():
        handle = await _redeem(submitter, redeemer, signed)
        await submitter.await_receipt(handle, timeout=0.05, policy=FAST)

    with pytest.raises(Timeout) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.operation_hash == OPERATION_HASH
    assert excinfo.value.state == OperationState.TIMED_OUT.value


def test_timed_out_handle_can_be_polled_again(submitter, bundler_transport, redeemer, signed):
    bundler_transport.on("eth_getUserOperationReceipt", [None])

    async def scenario():
        handle = await _redeem(submitter, redeemer, signed)
        with pytest.raises(Timeout):
            await submitter.await_receipt(handle, timeout=0.02, policy=FAST)
        bundler_transport.on("eth_getUserOperationReceipt", [receipt_payload()])
        return await submitter.await_receipt(handle, timeout=5, policy=FAST), handle

    receipt, handle = asyncio.run(scenario())
    assert receipt.success
    assert handle.state is OperationState.CONFIRMED


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def test_liveness_checks(submitter, env):
    assert asyncio.run(submitter.probe_node()) == 0x2a
    entry_points = asyncio.run(submitter.probe_bundler())
    assert [ep.lower() for ep in entry_points] == [env.entry_point]


def test_polling_policy_backs_off():
    delays = PollingPolicy(interval=1.0, backoff=2.0, max_interval=5.0).delays()
    assert [next(delays) for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
