"""
tests/test_keys_and_models.py — Key helpers and reply parsing
"""

from __future__ import annotations

import json

from eth_keys import keys
from eth_utils import keccak

from clusterharness.dispatch.keys import (generate_auth_sig, message_digest, new_wallet,
                                          pubkey_to_address, signature_matches,
                                          verify_auth_sig)
from clusterharness.transport.models import (ErrorReply, SigningReply, SigningRequest,
                                             parse_reply)


def _key():
    return keys.PrivateKey(keccak(text="keys-test"))


def test_message_digest_is_32_bytes():
    """Message digests are keccak256, always 32 bytes."""
    assert len(message_digest("test message #0")) == 32


def test_pubkey_forms_agree():
    """Prefixed, raw and compressed public keys map to the same address."""
    priv = _key()
    raw = priv.public_key.to_bytes()
    expected = priv.public_key.to_checksum_address()
    assert pubkey_to_address("0x04" + raw.hex()) == expected
    assert pubkey_to_address(raw.hex()) == expected
    assert pubkey_to_address(priv.public_key.to_compressed_bytes().hex()) == expected


def test_signature_matches_and_rejects():
    """Signatures verify with either recid form and fail on the wrong digest or address."""
    priv = _key()
    digest = message_digest("hello")
    sig = priv.sign_msg_hash(digest)
    address = priv.public_key.to_checksum_address()

    assert signature_matches(digest, hex(sig.r), hex(sig.s), sig.v, address)
    assert signature_matches(digest, hex(sig.r), hex(sig.s), sig.v + 27, address)
    assert not signature_matches(message_digest("other"), hex(sig.r), hex(sig.s), sig.v,
                                 address)
    assert not signature_matches(digest, hex(sig.r), hex(sig.s), sig.v,
                                 new_wallet().address)


def test_auth_sig_round_trip_and_tamper():
    """A fresh auth sig verifies; swapping the address breaks it."""
    wallet = new_wallet()
    auth = generate_auth_sig(wallet)
    assert verify_auth_sig(auth)

    forged = auth.model_copy(update={"address": new_wallet().address})
    assert not verify_auth_sig(forged)


def test_request_uses_camel_case_on_the_wire():
    """Requests serialise with the nodes' camelCase field names."""
    wallet = new_wallet()
    req = SigningRequest(auth_sig=generate_auth_sig(wallet), to_sign=[1, 2], pubkey="0x04",
                         epoch=3)
    wire = req.to_wire()
    assert set(wire) == {"authSig", "toSign", "pubkey", "epoch"}
    assert "signedMessage" in wire["authSig"]


def test_parse_reply_shapes():
    """Error and success bodies parse; HTML, arrays and unknown JSON give None."""
    err = parse_reply(json.dumps({"errorKind": "Validation", "details": ["bad"]}))
    assert isinstance(err, ErrorReply) and err.details == ["bad"]

    ok = parse_reply(json.dumps({
        "success": True, "signedData": "0x00",
        "signature": {"r": "0x1", "s": "0x2", "recid": 0},
        "publicKey": "0x04", "shareIndex": 1,
    }))
    assert isinstance(ok, SigningReply) and ok.share_index == 1

    assert parse_reply("<html>502 Bad Gateway</html>") is None
    assert parse_reply(json.dumps([1, 2])) is None
    assert parse_reply(json.dumps({"detail": "not found"})) is None
