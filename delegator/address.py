"""Account identifier validation and normalization.

Addresses travel as ``0x``-prefixed, 40-hex-digit strings. Input is accepted
in any case and always normalized to lower case; anything else is rejected
rather than truncated or padded.
"""

from __future__ import annotations

import re

from web3 import Web3

from .errors import InvalidAddress

ZERO_ADDRESS = "0x" + "00" * 20

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def parse(text: str) -> str:
    """Validate *text* and return its canonical lower-case form.

    Raises
    ------
    InvalidAddress
        If *text* is not ``0x`` followed by exactly 40 hex digits.
    """
    if not isinstance(text, str):
        raise InvalidAddress(text, "not a string")
    if not _ADDRESS_RE.fullmatch(text):
        raise InvalidAddress(text)
    return text.lower()


def equal(a: str, b: str) -> bool:
    """Compare two addresses after canonicalization."""
    return parse(a) == parse(b)


def is_zero(address: str) -> bool:
    return parse(address) == ZERO_ADDRESS


def parse_nonzero(text: str, role: str = "address") -> str:
    """Like :func:`parse` but also rejects the zero address."""
    address = parse(text)
    if address == ZERO_ADDRESS:
        raise InvalidAddress(text, f"{role} must not be the zero address")
    return address


def to_checksum(address: str) -> str:
    """EIP-55 form, for display and typed-data payloads."""
    return Web3.to_checksum_address(parse(address))


def to_bytes(address: str) -> bytes:
    return bytes.fromhex(parse(address)[2:])
