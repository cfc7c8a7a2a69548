"""
transport/models.py — Wire models for the node signing endpoint

Overview
--------
Pydantic models for the JSON bodies exchanged with a node's `/web/pkp/sign` route and
its `/web/status` route. The harness builds `SigningRequest`s and parses replies; the
simulated node (`sim/node_app.py`) uses the same models on the server side so both ends
agree on field names.

Field names on the wire are camelCase; Python attributes are snake_case. Construct with
either (populate_by_name) and dump with `by_alias=True`.

Reply shapes
------------
- success : `SigningReply`  {success, signedData, signature{r,s,recid}, publicKey, shareIndex}
- failure : `ErrorReply`    {errorKind, message, details[]}
  A wrong-length payload yields errorKind="Validation" and
  details[0] == "Message length to be signed is not 32 bytes."
"""

from __future__ import annotations

import json
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

SIGN_PATH = "/web/pkp/sign"
STATUS_PATH = "/web/status"


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class AuthSig(_Wire):
    """EIP-191 personal-sign proof that the caller controls `address`."""
    sig: str = Field(..., description="0x-prefixed 65-byte signature")
    derived_via: str = Field("web3.eth.personal.sign", alias="derivedVia")
    signed_message: str = Field(..., alias="signedMessage")
    address: str = Field(..., description="Checksum address of the signer")


class SigningRequest(_Wire):
    auth_sig: AuthSig = Field(..., alias="authSig")
    to_sign: List[int] = Field(..., alias="toSign", description="payload bytes (must be 32)")
    pubkey: str = Field(..., description="uncompressed secp256k1 public key, 0x04...")
    auth_methods: Optional[List[dict]] = Field(None, alias="authMethods")
    epoch: int = Field(..., description="epoch the caller believes is current")


class Signature(_Wire):
    r: str
    s: str
    recid: int


class SigningReply(_Wire):
    success: bool = True
    signed_data: str = Field(..., alias="signedData")
    signature: Signature
    public_key: str = Field(..., alias="publicKey")
    share_index: int = Field(..., alias="shareIndex")


class ErrorReply(_Wire):
    error_kind: str = Field("Unknown", alias="errorKind")
    message: str = ""
    details: List[str] = Field(default_factory=list)


class NodeStatus(_Wire):
    active: bool
    epoch: int
    index: int


# --- Parsing -------------------------------------------------------------------------------------

def parse_reply(body: str) -> Union[SigningReply, ErrorReply, None]:
    """
    Classify a raw reply body.

    Returns `SigningReply` or `ErrorReply` when the body matches either shape, `None` when
    the body is not JSON or matches neither (e.g. a proxy error page).
    """
    try:
        doc = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(doc, dict):
        return None
    try:
        if "details" in doc or "errorKind" in doc:
            return ErrorReply.model_validate(doc)
        return SigningReply.model_validate(doc)
    except ValidationError:
        return None
