"""
Slot constraint checks.

authorize() is a pure pre-check over a snapshot of an agreement's constraints.
It never mutates its input: it returns the constraint as it would look after the
packet is accepted. The ledger repeats the check when it commits the packet, and
only the ledger's answer is authoritative.

Checks run in this order:
  1) the slot exists (exact identifier match)
  2) a non-wildcard slot signer equals the proposed signer
  3) a bounded slot (allowedToUse > 0) still has uses left
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

from zksig.agreements.models import (
    SignatureConstraint,
    SlotDescription,
    WILDCARD_SIGNER,
    is_wildcard,
    same_address,
)
from zksig.errors import ConstraintDenied, ExhaustedSlot, NoSuchSlot, WrongSigner


class DenyReason(str, Enum):
    NO_SUCH_SLOT = "no_such_slot"
    WRONG_SIGNER = "wrong_signer"
    EXHAUSTED_SLOT = "exhausted_slot"


_DENIAL_ERRORS = {
    DenyReason.NO_SUCH_SLOT: NoSuchSlot,
    DenyReason.WRONG_SIGNER: WrongSigner,
    DenyReason.EXHAUSTED_SLOT: ExhaustedSlot,
}


@dataclass(frozen=True)
class Authorized:
    constraint: SignatureConstraint  # totalUsed already incremented
    position: int

    ok = True


@dataclass(frozen=True)
class Denied:
    reason: DenyReason
    slot: str
    detail: Optional[str] = None

    ok = False

    def to_error(self) -> ConstraintDenied:
        return _DENIAL_ERRORS[self.reason](self.slot, self.detail)


Decision = Union[Authorized, Denied]


def find_slot(constraints: Sequence[SignatureConstraint], slot_identifier: str) -> Optional[int]:
    for i, c in enumerate(constraints):
        if c.identifier == slot_identifier:
            return i
    return None


def authorize(
    constraints: Sequence[SignatureConstraint],
    slot_identifier: str,
    signer: str,
) -> Decision:
    pos = find_slot(constraints, slot_identifier)
    if pos is None:
        return Denied(DenyReason.NO_SUCH_SLOT, slot_identifier, f"no slot named {slot_identifier!r}")

    c = constraints[pos]
    if not is_wildcard(c.signer) and not same_address(c.signer, signer):
        return Denied(
            DenyReason.WRONG_SIGNER,
            slot_identifier,
            f"slot {slot_identifier!r} is reserved for {c.signer}",
        )

    if c.exhausted:
        return Denied(
            DenyReason.EXHAUSTED_SLOT,
            slot_identifier,
            f"slot {slot_identifier!r} used {c.total_used}/{c.allowed_to_use}",
        )

    return Authorized(c.model_copy(update={"total_used": c.total_used + 1}), pos)


def ensure_authorized(
    constraints: Sequence[SignatureConstraint],
    slot_identifier: str,
    signer: str,
) -> Authorized:
    """authorize(), raising the matching ConstraintDenied subclass on denial."""
    decision = authorize(constraints, slot_identifier, signer)
    if isinstance(decision, Denied):
        raise decision.to_error()
    return decision


def apply_authorization(
    constraints: Sequence[SignatureConstraint],
    authorized: Authorized,
) -> list[SignatureConstraint]:
    out = list(constraints)
    out[authorized.position] = authorized.constraint
    return out


def build_constraints(descriptions: Iterable[SlotDescription]) -> list[SignatureConstraint]:
    return [
        SignatureConstraint(
            identifier=d.identifier,
            signer=d.signer or WILDCARD_SIGNER,
            total_used=0,
            allowed_to_use=d.allowed_to_use,
        )
        for d in descriptions
    ]


def total_packets(constraints: Iterable[SignatureConstraint]) -> int:
    """Packets a fully signed agreement holds; unlimited slots count as zero."""
    return sum(c.allowed_to_use for c in constraints)


def is_complete(constraints: Sequence[SignatureConstraint]) -> bool:
    if not constraints or any(c.unlimited for c in constraints):
        return False
    return all(c.exhausted for c in constraints)
