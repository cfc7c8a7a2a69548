"""
dispatch/keys.py — Key, digest, and signature helpers

Purpose
-------
Small, deterministic helpers shared by the dispatcher, the scenarios, and the simulated
node:

  • `message_digest(text)`          keccak256 of the UTF-8 text (the 32-byte payload)
  • `pubkey_to_address(pubkey)`     Ethereum address of a secp256k1 public key
  • `recover_address(...)`          standard ECDSA public-key recovery → address
  • `generate_auth_sig(account)`    EIP-191 personal-sign proof of wallet control
  • `verify_auth_sig(auth_sig)`     check such a proof
  • `mint_key_with_permitted_address(chain, address)`
                                    mint a key and allow `address` to use it,
                                    then read the permission back

Notes
-----
- Recovery ids are accepted as 0/1 or as 27/28 (legacy `v`).
- Auth sigs here are a minimal personal-sign message, not a full SIWE document.
"""

from __future__ import annotations

import time

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import keccak, to_checksum_address

from ..chain.client import ChainClient, MintedKey
from ..errors import ChainError
from ..transport.models import AuthSig

AUTH_STATEMENT = "clusterharness signing request"


def message_digest(text: str) -> bytes:
    return keccak(text=text)


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def pubkey_to_address(pubkey: str) -> str:
    """
    Checksum address for an uncompressed (0x04…, 65 bytes), raw (64 bytes), or
    compressed (33 bytes) secp256k1 public key in hex.
    """
    raw = _hex_bytes(pubkey)
    if len(raw) == 65 and raw[0] == 4:
        raw = raw[1:]
    if len(raw) == 33:
        return keys.PublicKey.from_compressed_bytes(raw).to_checksum_address()
    if len(raw) != 64:
        raise ValueError(f"unexpected public key length {len(raw)}")
    return to_checksum_address(keccak(raw)[-20:])


def recover_address(digest: bytes, r: str, s: str, recid: int) -> str:
    """Recover the signer address from a signature over a 32-byte digest."""
    v = recid - 27 if recid >= 27 else recid
    sig = keys.Signature(vrs=(v, int(r, 16), int(s, 16)))
    return sig.recover_public_key_from_msg_hash(digest).to_checksum_address()


def signature_matches(digest: bytes, r: str, s: str, recid: int, address: str) -> bool:
    """True iff the signature recovers to `address`; malformed signatures are False."""
    try:
        return recover_address(digest, r, s, recid) == to_checksum_address(address)
    except (BadSignature, KeyValidationError, ValueError):
        return False


# --- Auth sigs -----------------------------------------------------------------------------------

def new_wallet() -> LocalAccount:
    return Account.create()


def generate_auth_sig(account: LocalAccount, statement: str = AUTH_STATEMENT) -> AuthSig:
    message = f"{statement}\nAddress: {account.address}\nIssued At: {int(time.time())}"
    signed = account.sign_message(encode_defunct(text=message))
    return AuthSig(sig="0x" + bytes(signed.signature).hex(),
                   signed_message=message, address=account.address)


def verify_auth_sig(auth_sig: AuthSig) -> bool:
    try:
        signer = Account.recover_message(encode_defunct(text=auth_sig.signed_message),
                                         signature=auth_sig.sig)
    except (BadSignature, KeyValidationError, ValueError):
        return False
    return signer == to_checksum_address(auth_sig.address)


# --- Key provisioning ----------------------------------------------------------------------------

async def mint_key_with_permitted_address(chain: ChainClient, address: str) -> MintedKey:
    """
    Mint the next key and permit `address` (auth-method scope 1) to sign with it.

    The permission is read back from the chain; a key whose permitted addresses do not
    include `address` raises ChainError.
    """
    minted = await chain.mint_next_key()
    await chain.add_permitted_address(minted.token_id, address, scopes=(1,))
    permitted = await chain.get_permitted_addresses(minted.token_id)
    if to_checksum_address(address) not in permitted:
        raise ChainError(f"{address} is not among the permitted addresses of token "
                         f"{minted.token_id}: {permitted}")
    return minted
