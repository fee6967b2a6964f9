# =============================================================================
# Agreement protocol: create, sign and retrieve encrypted agreements
# =============================================================================
"""
Create
  1) resolve the owner address
  2) concurrently: compute the document CID and pin the published description
  3) derive the agreement key from the owner's signature (key scheme of choice)
  4) encrypt the PDF and pin the ciphertext
  5) constraints from the slot descriptions (totalUsed = 0)
  6) submit {identifier, cid, encryptedCid, descriptionCid, constraints, ...}

Sign
  1) pre-check the slot against the known constraints (before any upload)
  2) re-derive the agreement key from the signer's own signature
  3) encrypt the supplied PDF, refuse if that key already sealed other bytes
  4) pin it and submit {identifier, encryptedCid, agreementOwner, agreementIndex}

Retrieve
  fetch ciphertext by CID, re-derive the key, decrypt.
  Agreements without a recorded key scheme try both schemes, and for signature
  PDFs finally the per-slot message older clients used.
  NotFound (store miss) and DecryptionFailed (wrong key / tampering) stay distinct.

Any failure aborts the flow before the ledger is called; nothing is rolled back
because nothing has been submitted. Pins that already happened are harmless:
they are content-addressed and a retry produces the same bytes.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from zksig.agreements.constraints import build_constraints, ensure_authorized
from zksig.agreements.ledger import Ledger, page_to_offset
from zksig.agreements.models import (
    Agreement,
    AgreementRecord,
    Profile,
    SignaturePacket,
    SignatureRecord,
    SlotDescription,
    description_bytes,
    extra_info_for,
    parse_descriptions,
    same_address,
)
from zksig.cid.addresser import ContentIdentifier, identify, normalize
from zksig.cid.car import identify_blob
from zksig.config import Settings
from zksig.crypto_utils.secretbox import (
    KEY_SCHEMES,
    KeyScheme,
    Signer,
    maybe_await,
    decrypt,
    derive_agreement_key,
    encrypt,
)
from zksig.errors import DecryptionFailed, InvalidInput, KeyReuse, NotFound
from zksig.storage.blobstore import BlobStore, HttpBlobStore

logger = logging.getLogger(__name__)


# =============================================================================
# Documents
# =============================================================================

@dataclass
class AgreementDocument:
    """
    A PDF plus the agreement identifier and its slot descriptions, before it
    has been submitted.
    """
    identifier: str
    pdf: bytes
    description: list[SlotDescription] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.identifier, str) or not self.identifier.strip():
            raise InvalidInput("agreement identifier must be a non-empty string")
        if not isinstance(self.pdf, (bytes, bytearray)):
            raise InvalidInput("agreement pdf must be bytes")
        self.pdf = bytes(self.pdf)
        self.description = parse_descriptions(self.description)

    @classmethod
    def from_file(
        cls,
        path: Union[str, os.PathLike],
        identifier: str,
        description: Iterable[Any],
    ) -> "AgreementDocument":
        with open(path, "rb") as f:
            pdf = f.read()
        return cls(identifier=identifier, pdf=pdf, description=list(description))

    def get_cid(self) -> ContentIdentifier:
        return identify(self.pdf)

    def to_bytes(self) -> bytes:
        return self.pdf

    def description_bytes(self) -> bytes:
        return description_bytes(self.description)


@dataclass(frozen=True)
class CreateResult:
    receipt: Any
    record: AgreementRecord
    key_scheme: KeyScheme


@dataclass(frozen=True)
class SignResult:
    receipt: Any
    record: SignatureRecord


# =============================================================================
# Protocol
# =============================================================================

class AgreementProtocol:
    """
    Drives the agreement flows over three collaborators:

    - signer: wallet capability (get_address, sign_message, sign_typed_data)
    - ledger: contract capability (submit/list/profile)
    - store:  blob store capability (pin/fetch)

    Each may be sync or async. The protocol holds no state between calls
    beyond these references, so one instance can serve concurrent flows.

    Example:
        async with HttpBlobStore(settings) as store:
            proto = AgreementProtocol(signer=wallet, ledger=contract, store=store)
            doc = AgreementDocument("NDA-2024", pdf, [{"identifier": "employee"}])
            result = await proto.create_agreement(doc)
    """
    def __init__(
        self,
        *,
        signer: Signer,
        ledger: Ledger,
        store: BlobStore,
        key_scheme: KeyScheme = "typed",
    ):
        if key_scheme not in KEY_SCHEMES:
            raise InvalidInput(f"unknown key scheme {key_scheme!r}")
        self.signer = signer
        self.ledger = ledger
        self.store = store
        self.key_scheme = key_scheme

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        signer: Signer,
        ledger: Ledger,
        store: Optional[BlobStore] = None,
    ) -> "AgreementProtocol":
        return cls(
            signer=signer,
            ledger=ledger,
            store=store or HttpBlobStore(settings),
            key_scheme=settings.key_scheme,
        )

    # -------------------------------------------------------------------------
    # collaborator helpers
    # -------------------------------------------------------------------------

    async def address(self) -> str:
        return await maybe_await(self.signer.get_address())

    async def _pin(self, data: bytes, name: str) -> str:
        cid = await maybe_await(self.store.pin(data, name))
        return normalize(cid)

    async def _fetch(self, cid: str) -> bytes:
        return await maybe_await(self.store.fetch(cid))

    async def agreement_key(self, agreement: Agreement, scheme: Optional[KeyScheme] = None) -> bytes:
        """Re-derive the key for an agreement with the connected signer."""
        return await derive_agreement_key(
            self.signer,
            scheme=scheme or agreement.key_scheme or self.key_scheme,
            owner=agreement.owner,
            identifier=agreement.identifier,
            cid=normalize(agreement.cid),
        )

    # -------------------------------------------------------------------------
    # create
    # -------------------------------------------------------------------------

    async def create_agreement(self, document: AgreementDocument) -> CreateResult:
        address = await self.address()
        identifier = document.identifier

        cid, description_cid = await asyncio.gather(
            asyncio.to_thread(document.get_cid),
            self._pin(
                document.description_bytes(),
                f"Description: {address} - {identifier}",
            ),
        )
        cid_str = str(cid)

        key = await derive_agreement_key(
            self.signer,
            scheme=self.key_scheme,
            owner=address,
            identifier=identifier,
            cid=cid_str,
        )
        encrypted_cid = await self._pin(
            encrypt(document.to_bytes(), key),
            f"{address} - {identifier}",
        )

        record = AgreementRecord(
            identifier=identifier,
            cid=cid_str,
            encrypted_cid=encrypted_cid,
            description_cid=description_cid,
            constraints=build_constraints(document.description),
            extra_info=extra_info_for(self.key_scheme),
        )
        receipt = await maybe_await(self.ledger.submit_agreement(record, sender=address))
        logger.info(
            "submitted agreement %r for %s (cid=%s, encrypted=%s)",
            identifier, address, cid_str, encrypted_cid,
        )
        return CreateResult(receipt=receipt, record=record, key_scheme=self.key_scheme)

    # -------------------------------------------------------------------------
    # sign
    # -------------------------------------------------------------------------

    async def sign(
        self,
        agreement: Agreement,
        identifier: str,
        pdf: bytes,
        *,
        preflight: bool = True,
    ) -> SignResult:
        """
        Sign slot `identifier` of `agreement`, attaching `pdf`.

        With preflight, a doomed signature (unknown slot, reserved slot, slot used
        up) raises the matching ConstraintDenied before anything is uploaded.
        The check runs on the caller's copy of the agreement; the ledger decides.

        Raises KeyReuse, whatever the preflight setting, when the signer's key
        has already sealed a different PDF (see _check_key_unused).
        """
        if not isinstance(pdf, (bytes, bytearray)):
            raise InvalidInput("signature pdf must be bytes")
        pdf = bytes(pdf)

        address = await self.address()
        if preflight:
            ensure_authorized(agreement.constraints, identifier, address)

        key = await self.agreement_key(agreement)
        ciphertext = encrypt(pdf, key)
        await self._check_key_unused(agreement, address, pdf, ciphertext)

        encrypted_cid = await self._pin(
            ciphertext,
            f"Signature - {address} - {identifier} on {agreement.identifier}",
        )

        record = SignatureRecord(
            identifier=identifier,
            encrypted_cid=encrypted_cid,
            agreement_owner=agreement.owner,
            agreement_index=agreement.index,
        )
        receipt = await maybe_await(self.ledger.submit_signature(record, sender=address))
        logger.info(
            "submitted signature on %s/%d slot %r by %s",
            agreement.owner, agreement.index, identifier, address,
        )
        return SignResult(receipt=receipt, record=record)

    async def _own_packets(self, agreement: Agreement, address: str) -> list[SignaturePacket]:
        profile = await maybe_await(self.ledger.get_profile(address))
        if not profile.total_signatures:
            return []
        packets = await maybe_await(
            self.ledger.list_signatures(address, 0, profile.total_signatures)
        )
        return [
            p for p in packets
            if same_address(p.agreement_owner, agreement.owner) and p.agreement_index == agreement.index
        ]

    async def _check_key_unused(
        self,
        agreement: Agreement,
        address: str,
        pdf: bytes,
        ciphertext: bytes,
    ) -> None:
        """
        A signer's key for an agreement is fixed, and so is the nonce. It may
        seal one plaintext only. It has already sealed:
          - the agreement PDF, when the signer is the agreement owner
          - the PDF of every earlier packet by this signer on this agreement
        Sealing the same bytes again yields the same ciphertext and is allowed.
        """
        if same_address(address, agreement.owner):
            cid = await asyncio.to_thread(identify, pdf)
            if str(cid) != normalize(agreement.cid):
                raise KeyReuse(
                    f"{address} already sealed agreement {agreement.identifier!r} with this key; "
                    "an owner signature must attach the agreement PDF itself"
                )

        sealed = {normalize(p.encrypted_cid) for p in await self._own_packets(agreement, address)}
        if sealed and str(identify_blob(ciphertext)) not in sealed:
            raise KeyReuse(
                f"{address} already attached a different PDF to agreement "
                f"{agreement.owner}/{agreement.index} with this key"
            )

    # -------------------------------------------------------------------------
    # retrieve
    # -------------------------------------------------------------------------

    async def _slot_key(self, agreement: Agreement, slot: str) -> bytes:
        # Older clients keyed signature PDFs on "Encrypt PDF for <slot identifier>".
        return await derive_agreement_key(
            self.signer,
            scheme="personal",
            owner=agreement.owner,
            identifier=slot,
            cid=normalize(agreement.cid),
        )

    async def _open(
        self,
        agreement: Agreement,
        encrypted_cid: str,
        key: Optional[bytes],
        *,
        slot: Optional[str] = None,
    ) -> bytes:
        ciphertext = await self._fetch(encrypted_cid)
        if key is not None:
            return decrypt(ciphertext, key)

        recorded = agreement.key_scheme
        schemes: list[KeyScheme] = [recorded] if recorded else [self.key_scheme] + [
            s for s in KEY_SCHEMES if s != self.key_scheme
        ]
        candidates: list[tuple[str, Callable[[], Awaitable[bytes]]]] = [
            (f"{s} key scheme", functools.partial(self.agreement_key, agreement, s))
            for s in schemes
        ]
        if recorded is None and slot is not None and slot != agreement.identifier:
            candidates.append((f"slot {slot!r} message", functools.partial(self._slot_key, agreement, slot)))

        for i, (label, make_key) in enumerate(candidates):
            try:
                return decrypt(ciphertext, await make_key())
            except DecryptionFailed:
                if i + 1 < len(candidates):
                    logger.warning(
                        "agreement %s/%d did not open with the %s, trying the %s",
                        agreement.owner, agreement.index, label, candidates[i + 1][0],
                    )
        raise DecryptionFailed(f"agreement {agreement.owner}/{agreement.index} decryption failed")

    async def get_agreement_pdf(self, agreement: Agreement, key: Optional[bytes] = None) -> bytes:
        """Download and decrypt the PDF encrypted by the agreement owner."""
        return await self._open(agreement, agreement.encrypted_cid, key)

    async def get_signature_pdf(
        self,
        agreement: Agreement,
        packet: SignaturePacket,
        key: Optional[bytes] = None,
    ) -> bytes:
        """Download and decrypt a PDF attached by a signer (the connected signer)."""
        return await self._open(agreement, packet.encrypted_cid, key, slot=packet.identifier)

    # -------------------------------------------------------------------------
    # read side
    # -------------------------------------------------------------------------

    async def get_profile(self, address: Optional[str] = None) -> Profile:
        address = address or await self.address()
        return await maybe_await(self.ledger.get_profile(address))

    async def get_agreements(
        self,
        *,
        address: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> list[Agreement]:
        offset, limit = page_to_offset(page, per_page)
        address = address or await self.address()
        return list(await maybe_await(self.ledger.list_agreements(address, offset, limit)))

    async def get_agreement(self, *, address: Optional[str] = None, index: int) -> Agreement:
        found = await self.get_agreements(address=address, page=index + 1, per_page=1)
        if not found:
            raise NotFound(f"agreement #{index}")
        return found[0]

    async def get_signatures(
        self,
        *,
        address: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> list[SignaturePacket]:
        offset, limit = page_to_offset(page, per_page)
        address = address or await self.address()
        return list(await maybe_await(self.ledger.list_signatures(address, offset, limit)))

    async def get_signature(self, *, address: Optional[str] = None, index: int) -> SignaturePacket:
        found = await self.get_signatures(address=address, page=index + 1, per_page=1)
        if not found:
            raise NotFound(f"signature #{index}")
        return found[0]
