from __future__ import annotations

from typing import Optional


class ZKSigError(Exception):
    """Base class for every error raised by zksig."""


class InvalidInput(ZKSigError, ValueError):
    """Malformed bytes, identifier, key or description."""


class KeyReuse(InvalidInput):
    """A second, different plaintext would be sealed under an already used key."""


class DecryptionFailed(ZKSigError):
    """Secretbox authentication failed: wrong key or tampered ciphertext."""


class NotFound(ZKSigError):
    """Nothing is stored under the requested identifier or index."""

    def __init__(self, what: str, message: Optional[str] = None):
        super().__init__(message or f"Nothing stored for {what}")
        self.what = what


class UpstreamUnavailable(ZKSigError):
    """A network collaborator (store, ledger, wallet) failed or timed out."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConstraintDenied(ZKSigError):
    """A signature packet was rejected by the slot constraints."""

    reason = "denied"

    def __init__(self, slot: str, message: Optional[str] = None):
        super().__init__(message or f"{self.reason}: {slot}")
        self.slot = slot


class NoSuchSlot(ConstraintDenied):
    reason = "no_such_slot"


class WrongSigner(ConstraintDenied):
    reason = "wrong_signer"


class ExhaustedSlot(ConstraintDenied):
    reason = "exhausted_slot"
