"""Unit tests for delegation signing (EOA and smart-account capabilities)."""

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from delegator.account import SmartAccount
from delegator.caveats import CaveatPolicy, allowed_targets, value_lte
from delegator.delegation import build_root, delegation_hash
from delegator.environment import Environment
from delegator.errors import SigningUnavailable
from delegator.signing import (
    EOA,
    SMART_ACCOUNT,
    EOASigner,
    SmartAccountSigner,
    delegation_typed_data,
    normalize_private_key,
    signer_from_config,
)

from conftest import DEPLOYMENT, RECIPIENT, REDEEMER_ACCOUNT


def _delegation(env, delegator):
    policy = value_lte(allowed_targets(CaveatPolicy.empty(), env, [RECIPIENT]), env, 10**15)
    return build_root(REDEEMER_ACCOUNT, delegator, policy, 0xABCD1234)


def _recover(env, delegation, signature):
    signable = encode_typed_data(full_message=delegation_typed_data(delegation, env))
    return Account.recover_message(signable, signature=signature)


# ---------------------------------------------------------------------------
# Private key handling
# ---------------------------------------------------------------------------

def test_normalize_adds_prefix_and_strips_quotes():
    raw = "ab" * 32
    assert normalize_private_key(raw) == "0x" + raw
    assert normalize_private_key(f'  "0x{raw}"\n') == "0x" + raw


def test_normalize_rejects_without_echoing_key():
    with pytest.raises(ValueError) as excinfo:
        normalize_private_key("0xdeadbeef")
    assert "deadbeef" not in str(excinfo.value)


# ---------------------------------------------------------------------------
# EOA signer
# ---------------------------------------------------------------------------

def test_eoa_signature_recovers_delegator(env, delegator_key, delegator_address):
    signer = EOASigner(delegator_key, env)
    unsigned = _delegation(env, delegator_address)
    signed = signer.sign(unsigned)
    assert len(signed.signature) == 65
    assert _recover(env, unsigned, signed.signature).lower() == delegator_address


def test_signing_preserves_fields(env, delegator_key, delegator_address):
    unsigned = _delegation(env, delegator_address)
    signed = EOASigner(delegator_key, env).sign(unsigned)
    assert signed.delegation is unsigned
    assert signed.delegate == unsigned.delegate
    assert signed.caveats == unsigned.caveats
    assert signed.salt == unsigned.salt
    assert signed.hash() == delegation_hash(unsigned)


def test_signature_is_bound_to_chain(env, delegator_key, delegator_address):
    other = Environment.from_mapping({**DEPLOYMENT, "CHAIN_ID": "1"})
    unsigned = _delegation(env, delegator_address)
    signed = EOASigner(delegator_key, env).sign(unsigned)
    assert _recover(other, unsigned, signed.signature).lower() != delegator_address


def test_eoa_refuses_foreign_delegator(env, delegator_key):
    with pytest.raises(SigningUnavailable):
        EOASigner(delegator_key, env).sign(_delegation(env, RECIPIENT))


def test_eoa_without_key_is_unavailable(env, delegator_address):
    signer = EOASigner(None, env)
    with pytest.raises(SigningUnavailable):
        signer.sign(_delegation(env, delegator_address))


# ---------------------------------------------------------------------------
# Smart-account signer
# ---------------------------------------------------------------------------

def test_smart_account_signs_with_owner(env, redeemer):
    signer = SmartAccountSigner(redeemer, env)
    unsigned = build_root(RECIPIENT, redeemer.address, CaveatPolicy.empty(), 7)
    signed = signer.sign(unsigned)
    assert _recover(env, unsigned, signed.signature) == redeemer.owner.address


def test_smart_account_without_owner(env):
    watch_only = SmartAccount(address=REDEEMER_ACCOUNT, environment=env)
    signer = SmartAccountSigner(watch_only, env)
    with pytest.raises(SigningUnavailable):
        signer.sign(build_root(RECIPIENT, REDEEMER_ACCOUNT, CaveatPolicy.empty(), 7))


def test_smart_account_require_deployed(env, redeemer):
    signer = SmartAccountSigner(redeemer, env, deployed=False, require_deployed=True)
    with pytest.raises(SigningUnavailable, match="not deployed"):
        signer.sign(build_root(RECIPIENT, redeemer.address, CaveatPolicy.empty(), 7))


def test_smart_account_other_deployment(env, redeemer):
    other = Environment.from_mapping({**DEPLOYMENT, "CHAIN_ID": "1"})
    with pytest.raises(SigningUnavailable):
        SmartAccountSigner(redeemer, other)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_signer_from_config(env, delegator_key, redeemer):
    assert signer_from_config(EOA, env, private_key=delegator_key).kind == EOA
    assert signer_from_config(SMART_ACCOUNT, env, account=redeemer).kind == SMART_ACCOUNT
    with pytest.raises(SigningUnavailable):
        signer_from_config(SMART_ACCOUNT, env)
    with pytest.raises(ValueError):
        signer_from_config("hardware", env)
