# =============================================================================
# Agreement encryption: signature-derived keys and fixed-nonce secretbox
# =============================================================================
"""
Design goals
- No key material at rest: the encryption key is re-derived from a wallet
  signature over a message built only from public agreement fields.
- Byte-compatible with the artifacts already pinned by existing clients.
- Storage and wallet agnostic: the caller supplies a Signer (sync or async).

What you get
1) Key-derivation messages, two schemes:
   - "personal": plain string "Encrypt PDF for <identifier>" (sign_message)
   - "typed":    EIP-712 typed data binding owner address, agreement identifier
                 and document CID (sign_typed_data)

2) derive_key(signature) -> 32-byte key:
   - the first 32 bytes of the signature as the wallet returns it
   - a hex string signature ("0x...") contributes its UTF-8 text bytes,
     which is the byte conversion existing ciphertexts were produced with

3) encrypt / decrypt:
   - NaCl secretbox (XSalsa20-Poly1305), output = tag(16) || ciphertext
   - nonce is 24 zero bytes on every call and is not stored

Important note about the fixed nonce
- Two different plaintexts under one key and the zero nonce leak their XOR.
  Safety depends on every key being unique to its message: the typed scheme
  binds owner, identifier and content CID. The personal scheme only binds the
  identifier and is kept for reading older agreements.
- A signer re-derives the same key for every packet on one agreement, so the
  protocol refuses to seal a second, different PDF under it (KeyReuse).
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Literal, Mapping, Protocol, Union, runtime_checkable

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox

from zksig.errors import DecryptionFailed, InvalidInput

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

KEY_SIZE = SecretBox.KEY_SIZE      # 32
NONCE_SIZE = SecretBox.NONCE_SIZE  # 24
MAC_SIZE = SecretBox.MACBYTES      # 16

ZERO_NONCE = bytes(NONCE_SIZE)

KeyScheme = Literal["typed", "personal"]
KEY_SCHEMES = ("typed", "personal")

PERSONAL_MESSAGE_TEMPLATE = "Encrypt PDF for {identifier}"

ENCRYPTION_DOMAIN: dict[str, Any] = {
    "name": "ZKsig Digital Signatures",
    "version": "1",
}

ENCRYPTION_TYPES: dict[str, list[dict[str, str]]] = {
    "Agreement": [
        {"name": "Owner Address", "type": "address"},
        {"name": "Agreement Identifier", "type": "string"},
        {"name": "CID", "type": "string"},
    ],
}


# =============================================================================
# Interfaces (sync or async)
# =============================================================================

@runtime_checkable
class Signer(Protocol):
    # Wallet capability. Signatures are returned as the wallet produces them
    # (usually a 0x-prefixed hex string).
    def get_address(self) -> str: ...
    def sign_message(self, message: str) -> Union[str, bytes]: ...
    def sign_typed_data(
        self,
        domain: Mapping[str, Any],
        types: Mapping[str, Any],
        value: Mapping[str, Any],
    ) -> Union[str, bytes]: ...


async def maybe_await(x: Any) -> Any:
    return await x if inspect.isawaitable(x) else x


# =============================================================================
# Key-derivation messages
# =============================================================================

def personal_message(identifier: str) -> str:
    if not isinstance(identifier, str) or not identifier:
        raise InvalidInput("agreement identifier must be a non-empty string")
    return PERSONAL_MESSAGE_TEMPLATE.format(identifier=identifier)


def typed_message(*, owner: str, identifier: str, cid: str) -> dict[str, Any]:
    """
    EIP-712 payload for the typed scheme.

    Returns {"domain": ..., "types": ..., "value": ...}. The cid must already be
    in canonical (CIDv1) string form; a v0 string would yield a different key.
    """
    if not owner:
        raise InvalidInput("owner address is required")
    if not identifier:
        raise InvalidInput("agreement identifier is required")
    if not cid:
        raise InvalidInput("content identifier is required")
    return {
        "domain": dict(ENCRYPTION_DOMAIN),
        "types": {k: [dict(f) for f in v] for k, v in ENCRYPTION_TYPES.items()},
        "value": {
            "Owner Address": owner,
            "Agreement Identifier": identifier,
            "CID": cid,
        },
    }


async def request_key_signature(
    signer: Signer,
    *,
    scheme: KeyScheme,
    owner: str,
    identifier: str,
    cid: str,
) -> Union[str, bytes]:
    """Ask the wallet for the signature a key is derived from."""
    if scheme == "personal":
        return await maybe_await(signer.sign_message(personal_message(identifier)))
    if scheme == "typed":
        msg = typed_message(owner=owner, identifier=identifier, cid=cid)
        return await maybe_await(
            signer.sign_typed_data(msg["domain"], msg["types"], msg["value"])
        )
    raise InvalidInput(f"unknown key scheme {scheme!r}")


# =============================================================================
# KeyDeriver
# =============================================================================

def signature_bytes(signature: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(signature, str):
        return signature.encode("utf-8")
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    raise InvalidInput("signature must be str or bytes")


def derive_key(signature: Union[str, bytes, bytearray]) -> bytes:
    """First 32 bytes of the signature (truncation, no hashing)."""
    raw = signature_bytes(signature)
    if len(raw) < KEY_SIZE:
        raise InvalidInput(f"signature too short to derive a key ({len(raw)} < {KEY_SIZE} bytes)")
    return raw[:KEY_SIZE]


async def derive_agreement_key(
    signer: Signer,
    *,
    scheme: KeyScheme,
    owner: str,
    identifier: str,
    cid: str,
) -> bytes:
    sig = await request_key_signature(
        signer, scheme=scheme, owner=owner, identifier=identifier, cid=cid
    )
    return derive_key(sig)


# =============================================================================
# SymmetricCipher
# =============================================================================

def _check_key(key: bytes) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidInput("key must be 32 bytes")
    return bytes(key)


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Secretbox under the zero nonce. Returns tag || ciphertext (nonce omitted)."""
    if not isinstance(plaintext, (bytes, bytearray)):
        raise InvalidInput("plaintext must be bytes")
    box = SecretBox(_check_key(key))
    return box.encrypt(bytes(plaintext), ZERO_NONCE).ciphertext


def decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """
    Open a secretbox produced by encrypt().

    Raises DecryptionFailed on a wrong key, tampering or truncation. Never
    returns unauthenticated bytes.
    """
    if not isinstance(ciphertext, (bytes, bytearray)):
        raise InvalidInput("ciphertext must be bytes")
    box = SecretBox(_check_key(key))
    if len(ciphertext) < MAC_SIZE:
        raise DecryptionFailed("ciphertext shorter than the authentication tag")
    try:
        return box.decrypt(bytes(ciphertext), ZERO_NONCE)
    except CryptoError as e:
        raise DecryptionFailed("agreement decryption failed") from e
