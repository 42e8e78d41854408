"""Shared pytest fixtures.

Provides a deployment environment, test keys and accounts, a scripted
JSON-RPC transport standing in for the node and the bundler, and Anvil
lifecycle management for the optional local-node tests.
"""

import asyncio
import shutil
import signal
import subprocess
import time

import pytest
from eth_account import Account
from web3 import Web3

from delegator.account import SmartAccount
from delegator.constants import ANVIL_CHAIN_ID, ANVIL_DEPLOYMENT
from delegator.environment import Environment
from delegator.errors import RpcError
from delegator.fees import StaticFeeOracle
from delegator.rpc import BundlerClient, NodeClient
from delegator.submitter import OperationSubmitter


# ---------------------------------------------------------------------------
# Deployment and accounts
# ---------------------------------------------------------------------------

ALLOWED_TARGETS_ENFORCER = "0x1111111111111111111111111111111111111111"
VALUE_LTE_ENFORCER = "0x2222222222222222222222222222222222222222"

DEPLOYMENT = {
    **ANVIL_DEPLOYMENT,
    "ALLOWED_TARGETS_ENFORCER_ADDRESS": ALLOWED_TARGETS_ENFORCER,
    "VALUE_LTE_ENFORCER_ADDRESS": VALUE_LTE_ENFORCER,
}

# Anvil development keys #1 and #2.
DELEGATOR_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
REDEEMER_OWNER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

REDEEMER_ACCOUNT = "0x00000000000000000000000000000000000a11ce"
RECIPIENT = "0x000000000000000000000000000000000000dead"

OPERATION_HASH = "0x" + "ab" * 32
TX_HASH = "0x" + "cd" * 32


@pytest.fixture()
def env():
    return Environment.from_mapping(DEPLOYMENT)


@pytest.fixture()
def delegator_key():
    return DELEGATOR_KEY


@pytest.fixture()
def delegator_address():
    return Account.from_key(DELEGATOR_KEY).address.lower()


@pytest.fixture()
def redeemer(env):
    """Counterfactual redeemer account with deployment data."""
    return SmartAccount(
        address=REDEEMER_ACCOUNT,
        environment=env,
        owner=Account.from_key(REDEEMER_OWNER_KEY),
        factory_data=bytes.fromhex("c1c3d8d8") + b"\x00" * 64,
    )


# ---------------------------------------------------------------------------
# Scripted JSON-RPC transport
# ---------------------------------------------------------------------------

class ScriptedTransport:
    """In-memory Transport answering from per-method handlers.

    A handler is a literal result, an exception to raise, a callable taking
    the params, or a list consumed one entry per call (last entry repeats).
    """

    def __init__(self, handlers=None):
        self.handlers = dict(handlers or {})
        self.calls = []
        self.closed = False

    def on(self, method, handler):
        self.handlers[method] = handler
        return self

    def methods(self):
        return [method for method, _ in self.calls]

    async def close(self):
        self.closed = True

    async def request(self, method, params):
        self.calls.append((method, params))
        if method not in self.handlers:
            raise RpcError(method, -32601, "method not found")
        handler = self.handlers[method]
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            result = handler(params)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return handler


def receipt_payload(success=True, operation_hash=OPERATION_HASH, tx_hash=TX_HASH):
    return {
        "userOpHash": operation_hash,
        "success": success,
        "actualGasCost": "0x5208",
        "reason": "" if success else "0x",
        "receipt": {"transactionHash": tx_hash, "status": "0x1" if success else "0x0"},
    }


@pytest.fixture()
def node_transport():
    return ScriptedTransport({
        "eth_blockNumber": "0x2a",
        "eth_chainId": hex(31337),
        "eth_getCode": "0x",
        "eth_call": "0x" + "00" * 32,
        "eth_maxPriorityFeePerGas": hex(10**9),
        "eth_getBlockByNumber": {"number": "0x2a", "baseFeePerGas": hex(2 * 10**9)},
    })


@pytest.fixture()
def bundler_transport(env):
    return ScriptedTransport({
        "eth_supportedEntryPoints": [[Web3.to_checksum_address(env.entry_point)]],
        "eth_estimateUserOperationGas": {
            "callGasLimit": hex(100_000),
            "verificationGasLimit": hex(300_000),
            "preVerificationGas": hex(50_000),
        },
        "eth_sendUserOperation": OPERATION_HASH,
        "eth_getUserOperationReceipt": [None, receipt_payload()],
    })


@pytest.fixture()
def submitter(env, node_transport, bundler_transport):
    return OperationSubmitter(
        env,
        NodeClient(node_transport),
        BundlerClient(bundler_transport, env.entry_point),
        fee_oracle=StaticFeeOracle(3 * 10**9, 10**9),
    )


# ---------------------------------------------------------------------------
# Local Anvil for the integration tests
# ---------------------------------------------------------------------------

def _free_port() -> int:
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _launch_node(port: int, chain_id: int = ANVIL_CHAIN_ID, timeout: float = 15.0) -> subprocess.Popen:
    """Run anvil on *port* and block until it answers with *chain_id*.

    The delegation environment is keyed by chain id, so a node that comes up
    on a different chain is treated as a failed launch.
    """
    proc = subprocess.Popen(
        ["anvil", "--port", str(port), "--chain-id", str(chain_id), "--silent"],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
    )
    w3 = Web3(Web3.HTTPProvider(f"http://127.0.0.1:{port}"))
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            raise RuntimeError(f"anvil exited early: {proc.stderr.read().decode(errors='replace')}")
        if w3.is_connected():
            if w3.eth.chain_id != chain_id:
                _shutdown_node(proc)
                raise RuntimeError(f"anvil on port {port} reports chain {w3.eth.chain_id}, wanted {chain_id}")
            return proc
        time.sleep(0.2)
    proc.kill()
    raise RuntimeError(f"anvil did not answer on port {port} within {timeout}s")


def _shutdown_node(proc: subprocess.Popen) -> None:
    proc.send_signal(signal.SIGTERM)
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()


@pytest.fixture(scope="session")
def anvil_local():
    """RPC URL of a throwaway Anvil node on the local deployment's chain."""
    if shutil.which("anvil") is None:
        pytest.skip("anvil not found on PATH: install Foundry")
    port = _free_port()
    proc = _launch_node(port)
    yield f"http://127.0.0.1:{port}"
    _shutdown_node(proc)
