import hashlib
import json

import pytest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)


class FakeWallet:
    """
    Deterministic stand-in for a browser wallet.

    Ed25519 signatures are deterministic, so signing the same message twice
    yields the same 0x-prefixed hex string, like an EOA signing with RFC 6979.
    sign_typed_data is async to exercise the sync-or-async collaborator path.
    """
    def __init__(self, seed: str):
        raw = hashlib.sha256(seed.encode("utf-8")).digest()
        self._priv = ed25519.Ed25519PrivateKey.from_private_bytes(raw)
        pub = self._priv.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.address = "0x" + hashlib.sha256(pub).digest()[-20:].hex()
        self.messages: list = []

    def _sign(self, data: bytes) -> str:
        # 64-byte signature + recovery byte, as wallets hand it back
        return "0x" + self._priv.sign(data).hex() + "1b"

    def get_address(self) -> str:
        return self.address

    def sign_message(self, message: str) -> str:
        self.messages.append(message)
        body = message.encode("utf-8")
        prefix = f"\x19Ethereum Signed Message:\n{len(body)}".encode("utf-8")
        return self._sign(prefix + body)

    async def sign_typed_data(self, domain, types, value) -> str:
        payload = {"domain": domain, "types": types, "value": value}
        self.messages.append(payload)
        return self._sign(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))


@pytest.fixture
def owner():
    return FakeWallet("owner")


@pytest.fixture
def employee():
    return FakeWallet("employee")


@pytest.fixture
def outsider():
    return FakeWallet("outsider")


@pytest.fixture
def pdf() -> bytes:
    return b"%PDF-1.7\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"
