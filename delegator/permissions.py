"""ERC-7715 permission requests.

A permission request is the wallet-facing description of what a delegate
will be allowed to do. It is an off-chain document; only the delegation it
leads to is enforced on-chain.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from . import address

DEFAULT_EXPIRY_SECONDS = 30 * 24 * 60 * 60


def create_permission_request(
    chain_id: int,
    delegator: str,
    delegate: str,
    expiry: int | None = None,
) -> list[dict]:
    """Request unrestricted execution and native transfers for *delegate*.

    *expiry* is a unix timestamp; defaults to 30 days from now.
    """
    if expiry is None:
        expiry = int(time.time()) + DEFAULT_EXPIRY_SECONDS
    return [
        {
            "chainId": hex(chain_id),
            "address": address.parse(delegator),
            "expiry": expiry,
            "signer": {
                "type": "eoa",
                "data": {"address": address.parse(delegate)},
            },
            "permissions": [
                {"type": "transaction-execution", "data": {"allowance": "unlimited"}},
                {"type": "native-token-transfer", "data": {"allowance": "unlimited"}},
            ],
        }
    ]


def format_permission_request(request: list[dict]) -> str:
    blocks = []
    for entry in request:
        expiry = datetime.fromtimestamp(entry["expiry"], tz=timezone.utc).isoformat()
        kinds = ", ".join(p["type"] for p in entry["permissions"])
        blocks.append(
            f"  Chain ID      : {entry['chainId']}\n"
            f"  Delegator     : {entry.get('address', 'N/A')}\n"
            f"  Expiry        : {expiry}\n"
            f"  Signer type   : {entry['signer']['type']}\n"
            f"  Signer address: {entry['signer']['data'].get('address', 'N/A')}\n"
            f"  Permissions   : {kinds}"
        )
    return "\n\n".join(blocks)
