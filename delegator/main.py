#!/usr/bin/env python3
"""Create and redeem delegations from the command line.

Run:
    python -m delegator.main create --delegate <REDEEMER_ACCOUNT> [--allowed-target ADDR] [--max-value WEI]
    python -m delegator.main redeem [--account <REDEEMER_ACCOUNT> | --deploy-salt N] [--to ADDR] [--value WEI]

Configuration comes from environment variables (RPC_URL, BUNDLER_URL,
PRIVATE_KEY, DELEGATOR_PRIVATE_KEY, PROXY_CREATION_CODE, and the contract
addresses); pass --anvil to fall back to the local deployment defaults.
Without an explicit account address, the Hybrid DeleGator owned by the
key is derived from PROXY_CREATION_CODE and the deploy salt.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from eth_account import Account

from . import caveats as caveat_builders
from . import delegation as delegations
from .account import SmartAccount
from .caveats import CaveatPolicy, format_caveats
from .constants import ALLOWED_TARGETS, VALUE_LTE
from .errors import DelegatorError, IdentityMismatch, SubmissionRejected, Timeout
from .fees import FeePolicy, NodeFeeOracle
from .permissions import create_permission_request, format_permission_request
from .redemption import Execution, ExecutionMode
from .rpc import BundlerClient, HttpTransport, NodeClient
from .salt import new_salt
from .settings import Settings
from .signing import EOA, SMART_ACCOUNT, normalize_private_key, signer_from_config
from .submitter import OperationSubmitter, PollingPolicy

log = logging.getLogger("delegator")


def _hex_bytes(text: str) -> bytes:
    text = text[2:] if text.startswith("0x") else text
    return bytes.fromhex(text)


def _build_submitter(settings: Settings) -> tuple[OperationSubmitter, list[HttpTransport]]:
    env = settings.environment
    node_transport = HttpTransport(settings.rpc_url)
    bundler_transport = HttpTransport(settings.bundler_url)
    node = NodeClient(node_transport)
    submitter = OperationSubmitter(
        env,
        node,
        BundlerClient(bundler_transport, env.entry_point),
        fee_oracle=NodeFeeOracle(node),
    )
    return submitter, [node_transport, bundler_transport]


async def _close(transports: list[HttpTransport]) -> None:
    for transport in transports:
        await transport.close()


def _smart_account(
    settings: Settings,
    key: str,
    account_address: str | None,
    factory_data: str | None,
    deploy_salt: int | None,
) -> SmartAccount:
    """The given account, or the Hybrid DeleGator derived from *key*."""
    owner = Account.from_key(normalize_private_key(key))
    if account_address:
        return SmartAccount(
            address=account_address,
            environment=settings.environment,
            owner=owner,
            factory_data=_hex_bytes(factory_data or ""),
        )
    return SmartAccount.hybrid(
        owner, settings.environment, settings.proxy_creation_code, deploy_salt
    )


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------

async def run_create(settings: Settings, args: argparse.Namespace) -> bool:
    env = settings.environment
    submitter, transports = _build_submitter(settings)
    try:
        print("\n[1] Checking node ...")
        block = await submitter.probe_node()
        print(f"    Node is up, block {block}")

        print("\n[2] Checking bundler ...")
        try:
            entry_points = await submitter.probe_bundler()
            print(f"    Bundler is up, entry points: {entry_points}")
        except (DelegatorError, OSError) as exc:
            # Creating a delegation does not need the bundler.
            print(f"    WARNING: bundler unreachable ({exc})")

        print("\n[3] Preparing delegator ...")
        key = settings.delegator_private_key
        if key is None:
            key = Account.create().key.hex()
            print("    No DELEGATOR_PRIVATE_KEY set; generated an ephemeral key")
        if args.signer == SMART_ACCOUNT:
            account = _smart_account(
                settings, key, args.delegator_account, args.factory_data, args.deploy_salt
            )
            if account.deploy_salt is not None:
                print(f"    Derived delegator account (deploy salt {account.deploy_salt})")
            deployed = await submitter.node.is_deployed(account.address)
            signer = signer_from_config(SMART_ACCOUNT, env, account=account, deployed=deployed)
        else:
            signer = signer_from_config(EOA, env, private_key=key)
        print(f"    Delegator: {signer.address} ({signer.kind})")

        print("\n[4] Building delegation ...")
        policy = CaveatPolicy.empty()
        if args.allowed_target:
            policy = caveat_builders.allowed_targets(policy, env, args.allowed_target)
        if args.max_value is not None:
            policy = caveat_builders.value_lte(policy, env, args.max_value)
        unsigned = delegations.build_root(
            delegate=args.delegate,
            delegator=signer.address,
            caveats=policy,
            salt=new_salt(),
        )
        print(f"    Delegate : {unsigned.delegate}")
        print(f"    Salt     : {unsigned.salt}")
        print("    Caveats  :")
        print(format_caveats(policy, env))

        signed = signer.sign(unsigned)
        out = delegations.dump_delegations(args.out or settings.delegation_file, [signed])
        print(f"\n    Delegation saved to {out}")

        request = create_permission_request(env.chain_id, signed.delegator, signed.delegate)
        print("\n--- Permission request ---")
        print(format_permission_request(request))
        return True
    finally:
        await _close(transports)


# ---------------------------------------------------------------------------
# redeem
# ---------------------------------------------------------------------------

async def run_redeem(settings: Settings, args: argparse.Namespace) -> bool:
    if not settings.private_key:
        print("PRIVATE_KEY is required to redeem", file=sys.stderr)
        return False

    print("\n[1] Loading delegation ...")
    signed = delegations.load_delegations(args.file or settings.delegation_file)[0]
    print(f"    {signed.delegator} -> {signed.delegate}")

    account = _smart_account(
        settings, settings.private_key, args.account, args.factory_data, args.deploy_salt
    )
    if account.deploy_salt is not None:
        print(f"    Derived redeemer account (deploy salt {account.deploy_salt})")
    execution = Execution(target=args.to, value=args.value, call_data=_hex_bytes(args.data))
    print(f"\n[2] Redeeming as {account.address}")
    print(f"    Execution: {execution.value} wei -> {execution.target}")

    submitter, transports = _build_submitter(settings)
    try:
        handle = await submitter.redeem(
            account,
            [[signed]],
            [ExecutionMode.SINGLE_DEFAULT],
            [[execution]],
            FeePolicy(),
        )
        print(f"\n[3] User operation hash: {handle.operation_hash}")
        print("    Waiting for receipt ...")
        receipt = await submitter.await_receipt(
            handle, timeout=args.timeout, policy=PollingPolicy(interval=args.poll_interval)
        )
    finally:
        await _close(transports)

    settings.result_file.write_text(json.dumps(receipt.to_dict(), indent=2))
    print(f"    Transaction hash: {receipt.transaction_hash}")
    print(f"    Result saved to {settings.result_file}")
    verdict = "SUCCESS" if receipt.success else "REVERTED"
    print(f"\n=== Redemption: {verdict} ===")
    return receipt.success


# ---------------------------------------------------------------------------
# entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delegation create / redeem")
    parser.add_argument("--anvil", action="store_true", help="Use local Anvil deployment defaults")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create and sign a root delegation")
    create.add_argument("--delegate", required=True, help="Redeemer smart account address")
    create.add_argument("--signer", choices=[EOA, SMART_ACCOUNT], default=EOA)
    create.add_argument("--delegator-account", help="Delegator smart account; derived from the key when omitted")
    create.add_argument("--factory-data", help="Delegator account deployment calldata (hex)")
    create.add_argument("--deploy-salt", type=int, help="Salt for a derived delegator account")
    create.add_argument("--allowed-target", action="append", help="Restrict calls to this target")
    create.add_argument("--max-value", type=int, help="Cap native value per execution (wei)")
    create.add_argument("--out", help="Delegation file to write")

    redeem = sub.add_parser("redeem", help="Redeem a saved delegation")
    redeem.add_argument("--account", help="Redeemer smart account; derived from PRIVATE_KEY when omitted")
    redeem.add_argument("--factory-data", help="Redeemer account deployment calldata (hex)")
    redeem.add_argument("--deploy-salt", type=int, help="Salt for a derived redeemer account")
    redeem.add_argument("--file", help="Delegation file to read")
    redeem.add_argument("--to", default="0x" + "00" * 20, help="Execution target")
    redeem.add_argument("--value", type=int, default=0, help="Execution value (wei)")
    redeem.add_argument("--data", default="0x", help="Execution calldata (hex)")
    redeem.add_argument("--timeout", type=float, default=60.0, help="Receipt timeout (s)")
    redeem.add_argument("--poll-interval", type=float, default=1.0, help="Initial poll interval (s)")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "create":
        required = tuple(
            name for name, wanted in (
                (ALLOWED_TARGETS, bool(args.allowed_target)),
                (VALUE_LTE, args.max_value is not None),
            ) if wanted
        )
    else:
        required = ()

    ok = False
    try:
        settings = Settings.from_env(anvil=args.anvil, required_enforcers=required)
        runner = run_create if args.command == "create" else run_redeem
        ok = asyncio.run(runner(settings, args))

    except IdentityMismatch as exc:
        print(f"\nIDENTITY MISMATCH: not submitted: {exc}", file=sys.stderr)

    except SubmissionRejected as exc:
        print(f"\nREJECTED [{exc.reason.value}] {exc.operation_hash}: {exc}", file=sys.stderr)

    except Timeout as exc:
        print(f"\nTIMEOUT: {exc}. The operation may still settle; poll again later.", file=sys.stderr)

    except DelegatorError as exc:
        print(f"\nFATAL: {exc}", file=sys.stderr)

    except Exception as exc:
        print(f"\nFATAL: {exc}", file=sys.stderr)
        log.debug("unhandled error", exc_info=True)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
