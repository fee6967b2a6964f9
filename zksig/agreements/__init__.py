from .models import (
    WILDCARD_SIGNER,
    Agreement,
    AgreementRecord,
    AgreementStatus,
    Profile,
    SignatureConstraint,
    SignaturePacket,
    SignatureRecord,
    SlotDescription,
    parse_descriptions,
    )
from .constraints import (
    Authorized,
    Denied,
    DenyReason,
    authorize,
    ensure_authorized,
    apply_authorization,
    build_constraints,
    )
from .ledger import (
    Ledger,
    InMemoryLedger,
    Receipt,
    page_to_offset,
    )
from .protocol import (
    AgreementDocument,
    AgreementProtocol,
    CreateResult,
    SignResult,
    )
