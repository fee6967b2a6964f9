from __future__ import annotations

import json
import re
from enum import IntEnum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from zksig.crypto_utils.secretbox import KEY_SCHEMES, KeyScheme
from zksig.errors import InvalidInput

WILDCARD_SIGNER = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Accept both the contract ABI (camelCase) names and the Python names.
_WIRE_CONFIG = {"populate_by_name": True}


def _check_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not _ADDRESS_RE.match(v):
        raise ValueError(f"not a 20-byte hex address: {v!r}")
    return v


def is_wildcard(address: Optional[str]) -> bool:
    return address is None or address.lower() == WILDCARD_SIGNER


def same_address(a: str, b: str) -> bool:
    # Checksummed and lowercase spellings name the same account.
    return a.lower() == b.lower()


class AgreementStatus(IntEnum):
    ACTIVE = 0
    COMPLETED = 1


# ----------------------------
# Slot descriptions (caller input)
# ----------------------------

class SlotDescription(BaseModel):
    """
    One named signature slot as described by the agreement author.

    signer defaults to the wildcard (anyone may sign), allowedToUse to 1.
    fields optionally lists the PDF form fields the slot covers; it is only
    published with the description.
    """
    model_config = {"extra": "forbid", "populate_by_name": True}

    identifier: str
    signer: Optional[str] = None
    allowed_to_use: int = Field(1, ge=0, alias="allowedToUse")
    fields: Optional[list[str]] = None

    @field_validator("identifier")
    @classmethod
    def _identifier_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("slot identifier must be non-empty")
        return v

    @field_validator("signer")
    @classmethod
    def _signer_is_address(cls, v: Optional[str]) -> Optional[str]:
        return _check_address(v)

    def to_wire(self) -> dict[str, Any]:
        # Only what the author wrote; defaults stay implicit in the published JSON.
        return self.model_dump(by_alias=True, exclude_unset=True)


def parse_descriptions(items: Iterable[Any]) -> list[SlotDescription]:
    """
    Validate a list of slot descriptions (models or plain dicts).

    Raises InvalidInput on a malformed entry, a duplicate identifier or an
    empty list.
    """
    out: list[SlotDescription] = []
    seen: set[str] = set()
    for i, item in enumerate(items or []):
        try:
            desc = item if isinstance(item, SlotDescription) else SlotDescription.model_validate(item)
        except ValidationError as e:
            raise InvalidInput(f"invalid slot description #{i}: {e}") from e
        if desc.identifier in seen:
            raise InvalidInput(f"duplicate slot identifier {desc.identifier!r}")
        seen.add(desc.identifier)
        out.append(desc)
    if not out:
        raise InvalidInput("an agreement needs at least one signature slot")
    return out


def description_bytes(descriptions: Iterable[SlotDescription]) -> bytes:
    # Compact JSON, field order as declared; this is what gets pinned.
    doc = [d.to_wire() for d in descriptions]
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# ----------------------------
# Ledger-side records
# ----------------------------

class SignatureConstraint(BaseModel):
    model_config = {"populate_by_name": True, "frozen": True}

    identifier: str
    signer: str = WILDCARD_SIGNER
    total_used: int = Field(0, ge=0, alias="totalUsed")
    allowed_to_use: int = Field(1, ge=0, alias="allowedToUse")  # 0 = unlimited

    @property
    def unlimited(self) -> bool:
        return self.allowed_to_use == 0

    @property
    def exhausted(self) -> bool:
        return not self.unlimited and self.total_used >= self.allowed_to_use


class Agreement(BaseModel):
    model_config = _WIRE_CONFIG

    owner: str
    index: int = 0
    identifier: str
    cid: str
    encrypted_cid: str = Field(alias="encryptedCid")
    description_cid: str = Field(alias="descriptionCid")
    signed_packets: int = Field(0, alias="signedPackets")
    total_packets: int = Field(0, alias="totalPackets")
    constraints: list[SignatureConstraint] = Field(default_factory=list)
    status: int = AgreementStatus.ACTIVE
    agreement_callback: str = Field(WILDCARD_SIGNER, alias="agreementCallback")
    signature_callback: str = Field(WILDCARD_SIGNER, alias="signatureCallback")
    extra_info: bytes = Field(b"", alias="extraInfo")

    @property
    def key_scheme(self) -> Optional[KeyScheme]:
        """Key scheme recorded at creation, None for agreements that carry none."""
        return key_scheme_from_extra_info(self.extra_info)


class SignaturePacket(BaseModel):
    model_config = _WIRE_CONFIG

    agreement_owner: str = Field(alias="agreementOwner")
    agreement_index: int = Field(alias="agreementIndex")
    index: int
    identifier: str
    encrypted_cid: str = Field(alias="encryptedCid")
    signer: str
    timestamp: int
    block_number: int = Field(alias="blockNumber")


class Profile(BaseModel):
    model_config = _WIRE_CONFIG

    total_agreements: int = Field(0, alias="totalAgreements")
    total_signatures: int = Field(0, alias="totalSignatures")


class AgreementRecord(BaseModel):
    """Payload of a create-agreement submission."""
    model_config = _WIRE_CONFIG

    identifier: str
    cid: str
    encrypted_cid: str = Field(alias="encryptedCid")
    description_cid: str = Field(alias="descriptionCid")
    constraints: list[SignatureConstraint]
    agreement_callback: str = Field(WILDCARD_SIGNER, alias="agreementCallback")
    signature_callback: str = Field(WILDCARD_SIGNER, alias="signatureCallback")
    extra_info: bytes = Field(b"", alias="extraInfo")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SignatureRecord(BaseModel):
    """Payload of a sign submission."""
    model_config = _WIRE_CONFIG

    identifier: str
    encrypted_cid: str = Field(alias="encryptedCid")
    agreement_owner: str = Field(alias="agreementOwner")
    agreement_index: int = Field(alias="agreementIndex")
    extra_info: bytes = Field(b"", alias="extraInfo")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ----------------------------
# extraInfo: key scheme marker
# ----------------------------

def extra_info_for(scheme: KeyScheme) -> bytes:
    if scheme not in KEY_SCHEMES:
        raise InvalidInput(f"unknown key scheme {scheme!r}")
    return json.dumps({"keyScheme": scheme}, separators=(",", ":")).encode("utf-8")


def key_scheme_from_extra_info(extra_info: bytes) -> Optional[KeyScheme]:
    if not extra_info:
        return None
    try:
        doc = json.loads(bytes(extra_info).decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    scheme = doc.get("keyScheme") if isinstance(doc, dict) else None
    return scheme if scheme in KEY_SCHEMES else None
