import json

import pytest

from zksig.agreements import (
    WILDCARD_SIGNER,
    AgreementDocument,
    AgreementProtocol,
    AgreementStatus,
    InMemoryLedger,
    SignatureRecord,
)
from zksig.cid import ContentIdentifier, identify
from zksig.crypto_utils import derive_key, encrypt
from zksig.errors import (
    DecryptionFailed,
    ExhaustedSlot,
    InvalidInput,
    KeyReuse,
    NoSuchSlot,
    NotFound,
    UpstreamUnavailable,
    WrongSigner,
)
from zksig.storage import InMemoryBlobStore

pytestmark = pytest.mark.asyncio


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def store():
    return InMemoryBlobStore()


def proto(wallet, ledger, store, **kw) -> AgreementProtocol:
    return AgreementProtocol(signer=wallet, ledger=ledger, store=store, **kw)


async def create(wallet, ledger, store, pdf, identifier="NDA-2024", description=None, **kw):
    p = proto(wallet, ledger, store, **kw)
    doc = AgreementDocument(identifier, pdf, description or [{"identifier": "employee"}])
    result = await p.create_agreement(doc)
    return p, result


# -----------------------------------------------------------------------------
# Create / retrieve
# -----------------------------------------------------------------------------

async def test_create_records_agreement(owner, ledger, store, pdf):
    _, result = await create(owner, ledger, store, pdf)

    agreement = ledger.get_agreement(owner.address, 0)
    assert agreement.identifier == "NDA-2024"
    assert agreement.cid == str(identify(pdf))
    assert agreement.encrypted_cid == result.record.encrypted_cid
    assert agreement.status == AgreementStatus.ACTIVE
    assert agreement.key_scheme == "typed"
    assert agreement.agreement_callback == WILDCARD_SIGNER

    [c] = agreement.constraints
    assert (c.identifier, c.signer, c.total_used, c.allowed_to_use) == ("employee", WILDCARD_SIGNER, 0, 1)

    desc = json.loads(store.fetch(agreement.description_cid))
    assert desc == [{"identifier": "employee"}]

    assert store.names[ContentIdentifier.parse(agreement.encrypted_cid)] == f"{owner.address} - NDA-2024"
    # the PDF itself is never stored in the clear
    assert store.fetch(agreement.encrypted_cid) != pdf


async def test_owner_reads_back_the_pdf(owner, ledger, store, pdf):
    p, _ = await create(owner, ledger, store, pdf)
    agreement = await p.get_agreement(index=0)
    assert await p.get_agreement_pdf(agreement) == pdf


async def test_other_wallet_cannot_open_the_agreement(owner, outsider, ledger, store, pdf):
    await create(owner, ledger, store, pdf)
    agreement = ledger.get_agreement(owner.address, 0)
    with pytest.raises(DecryptionFailed):
        await proto(outsider, ledger, store).get_agreement_pdf(agreement)


async def test_missing_blob_is_not_found_not_decryption_failure(owner, ledger, pdf):
    await create(owner, ledger, InMemoryBlobStore(), pdf)
    agreement = ledger.get_agreement(owner.address, 0)

    empty = proto(owner, ledger, InMemoryBlobStore())
    with pytest.raises(NotFound):
        await empty.get_agreement_pdf(agreement)


async def test_same_inputs_give_same_ciphertext(owner, store, pdf):
    _, a = await create(owner, InMemoryLedger(), store, pdf)
    _, b = await create(owner, InMemoryLedger(), store, pdf)
    assert a.record.encrypted_cid == b.record.encrypted_cid
    assert a.record.cid == b.record.cid


async def test_create_rejects_bad_document(pdf):
    with pytest.raises(InvalidInput):
        AgreementDocument("", pdf, [{"identifier": "employee"}])
    with pytest.raises(InvalidInput):
        AgreementDocument("NDA", "not bytes", [{"identifier": "employee"}])  # type: ignore[arg-type]
    with pytest.raises(InvalidInput):
        AgreementDocument("NDA", pdf, [])


async def test_failing_store_never_reaches_the_ledger(owner, ledger, pdf):
    class DownStore:
        async def pin(self, data, name):
            raise UpstreamUnavailable("pinning service down", status_code=503)

        async def fetch(self, cid):
            raise UpstreamUnavailable("gateway down")

    with pytest.raises(UpstreamUnavailable):
        await create(owner, ledger, DownStore(), pdf)
    assert ledger.get_profile(owner.address).total_agreements == 0


# -----------------------------------------------------------------------------
# Sign
# -----------------------------------------------------------------------------

async def test_single_use_slot_signs_once(owner, employee, ledger, store, pdf):
    await create(owner, ledger, store, pdf, description=[{"identifier": "employee", "allowedToUse": 1}])
    signer = proto(employee, ledger, store)

    agreement = ledger.get_agreement(owner.address, 0)
    result = await signer.sign(agreement, "employee", b"%PDF signed by employee")
    assert result.record.agreement_owner == owner.address
    assert result.record.agreement_index == 0

    agreement = ledger.get_agreement(owner.address, 0)
    assert agreement.constraints[0].total_used == 1
    assert agreement.signed_packets == 1
    assert agreement.status == AgreementStatus.COMPLETED

    pinned = len(store)
    with pytest.raises(ExhaustedSlot):
        await signer.sign(agreement, "employee", b"%PDF second attempt")
    # preflight stops the flow before any upload
    assert len(store) == pinned


async def test_ledger_rejects_when_preflight_is_skipped(owner, employee, ledger, store, pdf):
    await create(owner, ledger, store, pdf)
    signer = proto(employee, ledger, store)
    stale = ledger.get_agreement(owner.address, 0)

    await signer.sign(stale, "employee", b"first")
    with pytest.raises(ExhaustedSlot):
        await signer.sign(stale, "employee", b"first", preflight=False)
    assert ledger.get_agreement(owner.address, 0).signed_packets == 1


async def test_reserved_slot_and_unknown_slot(owner, employee, ledger, store, pdf):
    description = [
        {"identifier": "employer", "signer": owner.address},
        {"identifier": "employee"},
    ]
    await create(owner, ledger, store, pdf, description=description)
    agreement = ledger.get_agreement(owner.address, 0)
    signer = proto(employee, ledger, store)

    with pytest.raises(WrongSigner):
        await signer.sign(agreement, "employer", b"x")
    with pytest.raises(NoSuchSlot):
        await signer.sign(agreement, "manager", b"x")

    await proto(owner, ledger, store).sign(agreement, "employer", pdf)
    assert ledger.get_agreement(owner.address, 0).constraints[0].total_used == 1


async def test_owner_cannot_seal_a_different_pdf_under_the_agreement_key(owner, ledger, store, pdf):
    await create(owner, ledger, store, pdf, description=[{"identifier": "employer", "signer": owner.address}])
    agreement = ledger.get_agreement(owner.address, 0)
    owner_proto = proto(owner, ledger, store)
    pinned = len(store)

    with pytest.raises(KeyReuse):
        await owner_proto.sign(agreement, "employer", b"%PDF some other document")
    # refused before upload and before the ledger
    assert len(store) == pinned
    assert ledger.get_agreement(owner.address, 0).signed_packets == 0

    # attaching the agreement PDF itself reproduces the agreement ciphertext
    result = await owner_proto.sign(agreement, "employer", pdf)
    assert result.record.encrypted_cid == agreement.encrypted_cid


async def test_signer_cannot_attach_two_different_pdfs(owner, employee, ledger, store, pdf):
    await create(owner, ledger, store, pdf, description=[{"identifier": "witness", "allowedToUse": 0}])
    signer = proto(employee, ledger, store)

    await signer.sign(ledger.get_agreement(owner.address, 0), "witness", b"%PDF witness copy")
    with pytest.raises(InvalidInput):
        await signer.sign(ledger.get_agreement(owner.address, 0), "witness", b"%PDF edited copy")
    with pytest.raises(KeyReuse):
        await signer.sign(ledger.get_agreement(owner.address, 0), "witness", b"%PDF edited copy", preflight=False)

    # the same bytes again are fine, the ciphertext does not change
    again = await signer.sign(ledger.get_agreement(owner.address, 0), "witness", b"%PDF witness copy")
    [first, second] = ledger.list_signatures(employee.address, 0, 10)
    assert first.encrypted_cid == second.encrypted_cid == again.record.encrypted_cid


async def test_signer_reads_back_signature_pdf(owner, employee, outsider, ledger, store, pdf):
    await create(owner, ledger, store, pdf)
    agreement = ledger.get_agreement(owner.address, 0)
    signer = proto(employee, ledger, store)
    await signer.sign(agreement, "employee", b"%PDF employee copy")

    packet = await signer.get_signature(index=0)
    assert packet.signer == employee.address
    assert await signer.get_signature_pdf(agreement, packet) == b"%PDF employee copy"

    name = store.names[ContentIdentifier.parse(packet.encrypted_cid)]
    assert name == f"Signature - {employee.address} - employee on NDA-2024"

    with pytest.raises(DecryptionFailed):
        await proto(outsider, ledger, store).get_signature_pdf(agreement, packet)


# -----------------------------------------------------------------------------
# Key schemes
# -----------------------------------------------------------------------------

async def test_personal_scheme_round_trip(owner, ledger, store, pdf):
    p, result = await create(owner, ledger, store, pdf, key_scheme="personal")
    assert result.key_scheme == "personal"
    assert "Encrypt PDF for NDA-2024" in owner.messages

    agreement = ledger.get_agreement(owner.address, 0)
    assert agreement.key_scheme == "personal"
    # a reader defaulting to "typed" still follows the recorded scheme
    assert await proto(owner, ledger, store).get_agreement_pdf(agreement) == pdf


async def test_agreement_without_recorded_scheme_falls_back(owner, ledger, store, pdf, caplog):
    await create(owner, ledger, store, pdf, key_scheme="personal")
    legacy = ledger.get_agreement(owner.address, 0).model_copy(update={"extra_info": b""})
    assert legacy.key_scheme is None

    reader = proto(owner, ledger, store)
    assert await reader.get_agreement_pdf(legacy) == pdf
    assert any("trying the personal key scheme" in r.getMessage() for r in caplog.records)


async def test_signature_keyed_on_slot_message_opens_on_legacy_agreement(
    owner, employee, ledger, store, pdf, caplog
):
    await create(owner, ledger, store, pdf)
    legacy = ledger.get_agreement(owner.address, 0).model_copy(update={"extra_info": b""})

    # older clients keyed the attached PDF on the slot identifier
    key = derive_key(employee.sign_message("Encrypt PDF for employee"))
    encrypted_cid = store.pin(encrypt(b"%PDF employee copy", key), "employee - employee")
    ledger.submit_signature(
        SignatureRecord(
            identifier="employee",
            encrypted_cid=str(encrypted_cid),
            agreement_owner=owner.address,
            agreement_index=0,
        ),
        sender=employee.address,
    )
    [packet] = ledger.list_signatures(employee.address, 0, 1)

    reader = proto(employee, ledger, store)
    assert await reader.get_signature_pdf(legacy, packet) == b"%PDF employee copy"
    assert any("trying the slot 'employee' message" in r.getMessage() for r in caplog.records)

    # never for agreements that record their scheme
    with pytest.raises(DecryptionFailed):
        await reader.get_signature_pdf(ledger.get_agreement(owner.address, 0), packet)


async def test_explicit_key_is_used_as_is(owner, ledger, store, pdf):
    p, _ = await create(owner, ledger, store, pdf)
    agreement = ledger.get_agreement(owner.address, 0)
    key = await p.agreement_key(agreement)
    assert await p.get_agreement_pdf(agreement, key=key) == pdf
    with pytest.raises(DecryptionFailed):
        await p.get_agreement_pdf(agreement, key=bytes(32))


async def test_unknown_scheme_rejected(owner, ledger, store):
    with pytest.raises(InvalidInput):
        proto(owner, ledger, store, key_scheme="rot13")


# -----------------------------------------------------------------------------
# Read side
# -----------------------------------------------------------------------------

async def test_pagination_and_profile(owner, employee, ledger, store, pdf):
    p = proto(owner, ledger, store)
    for i in range(5):
        await p.create_agreement(AgreementDocument(f"NDA-{i}", pdf + bytes([i]), [{"identifier": "employee"}]))

    page2 = await p.get_agreements(page=2, per_page=2)
    assert [a.identifier for a in page2] == ["NDA-2", "NDA-3"]
    assert [a.index for a in page2] == [2, 3]
    assert (await p.get_agreement(index=4)).identifier == "NDA-4"
    assert await p.get_agreements(page=4, per_page=2) == []

    with pytest.raises(NotFound):
        await p.get_agreement(index=5)
    with pytest.raises(InvalidInput):
        await p.get_agreements(page=0)

    profile = await p.get_profile()
    assert (profile.total_agreements, profile.total_signatures) == (5, 0)

    # reading someone else's listing
    other = proto(employee, ledger, store)
    assert len(await other.get_agreements(address=owner.address, per_page=10)) == 5
    with pytest.raises(NotFound):
        await other.get_signature(index=0)
