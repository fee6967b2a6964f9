from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from zksig.agreements.constraints import (
    apply_authorization,
    ensure_authorized,
    is_complete,
    total_packets,
)
from zksig.agreements.models import (
    Agreement,
    AgreementRecord,
    AgreementStatus,
    Profile,
    SignaturePacket,
    SignatureRecord,
)
from zksig.errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


# =============================================================================
# Interfaces (sync or async)
# =============================================================================

@runtime_checkable
class Ledger(Protocol):
    # The contract surface. Every call is atomic on the ledger side.
    def submit_agreement(self, record: AgreementRecord, *, sender: str) -> Any: ...
    def submit_signature(self, record: SignatureRecord, *, sender: str) -> Any: ...
    def list_agreements(self, address: str, offset: int, limit: int) -> Any: ...
    def list_signatures(self, address: str, offset: int, limit: int) -> Any: ...
    def get_profile(self, address: str) -> Any: ...


def page_to_offset(page: int, per_page: int) -> tuple[int, int]:
    """1-based page number -> (offset, limit)."""
    if not isinstance(page, int) or page < 1:
        raise InvalidInput("page must be an integer >= 1")
    if not isinstance(per_page, int) or per_page < 1:
        raise InvalidInput("per_page must be an integer >= 1")
    return (page - 1) * per_page, per_page


@dataclass(frozen=True)
class Receipt:
    kind: str  # "agreement" | "signature"
    owner: str
    index: int
    block_number: int
    timestamp: int


# =============================================================================
# In-memory ledger
# =============================================================================

class InMemoryLedger:
    """
    Reference ledger kept in process memory.

    Behaves like the contract as seen from a client:
    - agreements are indexed per owner, in submission order
    - submit_signature re-runs the slot check and commits totalUsed on success
      (raising NoSuchSlot / WrongSigner / ExhaustedSlot otherwise)
    - an agreement becomes COMPLETED once every bounded slot is used up and no
      slot is unlimited
    - each accepted submission gets its own block number

    Addresses are keyed in lowercase.
    """
    def __init__(self, *, clock: Optional[Callable[[], float]] = None, start_block: int = 1):
        self._clock = clock or time.time
        self._block = int(start_block) - 1
        self._agreements: dict[str, list[Agreement]] = {}
        self._signatures: dict[str, list[SignaturePacket]] = {}
        self._signature_count = 0

    def _next_block(self) -> tuple[int, int]:
        self._block += 1
        return self._block, int(self._clock())

    def submit_agreement(self, record: AgreementRecord, *, sender: str) -> Receipt:
        owned = self._agreements.setdefault(sender.lower(), [])
        if any(a.identifier == record.identifier for a in owned):
            raise InvalidInput(f"agreement {record.identifier!r} already exists for {sender}")

        agreement = Agreement(
            owner=sender,
            index=len(owned),
            identifier=record.identifier,
            cid=record.cid,
            encrypted_cid=record.encrypted_cid,
            description_cid=record.description_cid,
            signed_packets=0,
            total_packets=total_packets(record.constraints),
            constraints=list(record.constraints),
            status=AgreementStatus.ACTIVE,
            agreement_callback=record.agreement_callback,
            signature_callback=record.signature_callback,
            extra_info=record.extra_info,
        )
        owned.append(agreement)

        block, ts = self._next_block()
        logger.info("agreement %s/%d (%s) recorded in block %d", sender, agreement.index, record.identifier, block)
        return Receipt("agreement", sender, agreement.index, block, ts)

    def get_agreement(self, owner: str, index: int) -> Agreement:
        owned = self._agreements.get(owner.lower(), [])
        if not 0 <= index < len(owned):
            raise NotFound(f"agreement {owner}/{index}")
        return owned[index]

    def submit_signature(self, record: SignatureRecord, *, sender: str) -> Receipt:
        agreement = self.get_agreement(record.agreement_owner, record.agreement_index)
        authorized = ensure_authorized(agreement.constraints, record.identifier, sender)
        constraints = apply_authorization(agreement.constraints, authorized)

        block, ts = self._next_block()
        packet = SignaturePacket(
            agreement_owner=agreement.owner,
            agreement_index=agreement.index,
            index=self._signature_count,
            identifier=record.identifier,
            encrypted_cid=record.encrypted_cid,
            signer=sender,
            timestamp=ts,
            block_number=block,
        )
        self._signature_count += 1
        self._signatures.setdefault(sender.lower(), []).append(packet)

        updated = agreement.model_copy(update={
            "constraints": constraints,
            "signed_packets": agreement.signed_packets + 1,
            "status": AgreementStatus.COMPLETED if is_complete(constraints) else AgreementStatus.ACTIVE,
        })
        self._agreements[agreement.owner.lower()][agreement.index] = updated

        logger.info(
            "signature %d on %s/%d slot %r by %s in block %d",
            packet.index, agreement.owner, agreement.index, record.identifier, sender, block,
        )
        return Receipt("signature", agreement.owner, packet.index, block, ts)

    def list_agreements(self, address: str, offset: int, limit: int) -> list[Agreement]:
        return list(self._agreements.get(address.lower(), [])[offset:offset + limit])

    def list_signatures(self, address: str, offset: int, limit: int) -> list[SignaturePacket]:
        return list(self._signatures.get(address.lower(), [])[offset:offset + limit])

    def get_profile(self, address: str) -> Profile:
        return Profile(
            total_agreements=len(self._agreements.get(address.lower(), [])),
            total_signatures=len(self._signatures.get(address.lower(), [])),
        )
