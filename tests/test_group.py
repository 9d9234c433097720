"""Tests for multi-signer group documents."""

import pytest

from signtrail.errors import BadRequest, Forbidden, NotFound
from signtrail.models import (
    AuditAction,
    DocumentStatus,
    Group,
    SignatureKind,
    SignaturePlacement,
    SignatureStatus,
    SignerStatus,
    VerificationStatus,
)


def _at(page: int = 1, y: float = 600) -> SignaturePlacement:
    return SignaturePlacement(page_number=page, position_x=72, position_y=y)


@pytest.fixture
def group_doc(services, seed):
    """Factory: a group document owned by alice with alice and bob on the roster."""

    async def _make(signers=("alice", "bob")):
        await services.store.save_group(Group(id="g1", name="Board", admin_ids=["carol"]))
        document, version = await seed(owner="alice", group_id="g1", title="Minutes")
        await services.group.register_signers(document.id, list(signers))
        return document, version

    return _make


class TestRoster:
    @pytest.mark.asyncio
    async def test_register_skips_duplicates(self, services, group_doc):
        document, _ = await group_doc()
        assert await services.group.register_signers(document.id, ["bob", "carol", "carol"]) == 1
        signers = await services.group.list_signers(document.id)
        assert [s.user_id for s in signers] == ["alice", "bob", "carol"]

    @pytest.mark.asyncio
    async def test_register_unknown_document(self, services):
        with pytest.raises(NotFound):
            await services.group.register_signers("missing", ["alice"])

    @pytest.mark.asyncio
    async def test_remove_pending_signer(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.remove_signer(document.id, "bob", actor_id="alice")
        assert [s.user_id for s in await services.group.list_signers(document.id)] == ["alice"]

    @pytest.mark.asyncio
    async def test_cannot_remove_signed_signer(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "bob", _at())
        with pytest.raises(BadRequest):
            await services.group.remove_signer(document.id, "bob", actor_id="alice")

    @pytest.mark.asyncio
    async def test_remove_unknown_signer(self, services, group_doc):
        document, _ = await group_doc()
        with pytest.raises(NotFound):
            await services.group.remove_signer(document.id, "carol", actor_id="alice")

    @pytest.mark.asyncio
    async def test_only_owner_or_admin_removes(self, services, group_doc):
        document, _ = await group_doc()
        with pytest.raises(Forbidden, match="remove signers"):
            await services.group.remove_signer(document.id, "alice", actor_id="bob")
        await services.group.remove_signer(document.id, "bob", actor_id="carol")
        assert [s.user_id for s in await services.group.list_signers(document.id)] == ["alice"]


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_owner_and_admin_can_read(self, services, group_doc):
        document, _ = await group_doc()
        for actor in ("alice", "carol"):
            trail = await services.group.audit_trail(document.id, actor)
            assert [e.action for e in trail] == [AuditAction.UPLOAD_DOCUMENT]

    @pytest.mark.asyncio
    async def test_other_signer_cannot_read(self, services, group_doc):
        document, _ = await group_doc()
        with pytest.raises(Forbidden, match="audit trail"):
            await services.group.audit_trail(document.id, "bob")


class TestRecordSignature:
    @pytest.mark.asyncio
    async def test_progress_counts_down(self, services, group_doc):
        document, _ = await group_doc()

        first = await services.group.record_signature(document.id, "alice", _at())
        assert first.is_complete is False
        assert first.remaining_signers == 1
        assert first.signature.kind == SignatureKind.GROUP

        second = await services.group.record_signature(document.id, "bob", _at(y=500))
        assert second.is_complete is True
        assert second.remaining_signers == 0

    @pytest.mark.asyncio
    async def test_not_on_roster(self, services, group_doc):
        document, _ = await group_doc()
        with pytest.raises(NotFound):
            await services.group.record_signature(document.id, "carol", _at())

    @pytest.mark.asyncio
    async def test_cannot_sign_twice(self, services, group_doc, memory_store):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "alice", _at())
        with pytest.raises(Forbidden):
            await services.group.record_signature(document.id, "alice", _at())
        assert len(memory_store.signatures) == 1

    @pytest.mark.asyncio
    async def test_signer_row_links_signature(self, services, group_doc, memory_store):
        document, _ = await group_doc()
        progress = await services.group.record_signature(document.id, "alice", _at())
        signer = await memory_store.get_signer(document.id, "alice")
        assert signer.status == SignerStatus.SIGNED
        assert signer.signature_id == progress.signature.id

    @pytest.mark.asyncio
    async def test_audited(self, services, group_doc, memory_store):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "alice", _at())
        actions = [e.action for e in await memory_store.get_audit_trail(document.id)]
        assert AuditAction.SIGN_DOCUMENT_GROUP in actions


class TestDecline:
    @pytest.mark.asyncio
    async def test_decline_then_sign_is_forbidden(self, services, group_doc):
        document, _ = await group_doc()
        declined = await services.group.decline(document.id, "bob", reason="wrong amount")
        assert declined.status == SignerStatus.REJECTED
        with pytest.raises(Forbidden):
            await services.group.record_signature(document.id, "bob", _at())
        with pytest.raises(Forbidden):
            await services.group.decline(document.id, "bob")

    @pytest.mark.asyncio
    async def test_decline_not_on_roster(self, services, group_doc):
        document, _ = await group_doc()
        with pytest.raises(NotFound):
            await services.group.decline(document.id, "carol")

    @pytest.mark.asyncio
    async def test_declined_signer_counts_as_done(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.decline(document.id, "bob")
        progress = await services.group.record_signature(document.id, "alice", _at())
        assert progress.is_complete is True


class TestDrafts:
    @pytest.mark.asyncio
    async def test_save_draft_twice_moves_it(self, services, group_doc):
        document, _ = await group_doc()
        first = await services.group.save_draft("bob", document.id, _at(y=100))
        second = await services.group.save_draft("bob", document.id, _at(y=200))
        assert first.id == second.id
        assert second.status == SignatureStatus.DRAFT
        assert second.position_y == 200

    @pytest.mark.asyncio
    async def test_update_and_delete_draft(self, services, group_doc, memory_store):
        document, _ = await group_doc()
        draft = await services.group.save_draft("bob", document.id, _at())
        moved = await services.group.update_draft_position(draft.id, _at(page=2, y=10))
        assert (moved.page_number, moved.position_y) == (2, 10)
        assert await services.group.delete_draft(draft.id) is True
        assert await memory_store.get_signature(draft.id) is None

    @pytest.mark.asyncio
    async def test_commit_reuses_draft(self, services, group_doc, memory_store):
        document, _ = await group_doc()
        draft = await services.group.save_draft("bob", document.id, _at())
        progress = await services.group.record_signature(document.id, "bob", _at(y=300))
        assert progress.signature.id == draft.id
        assert progress.signature.status == SignatureStatus.FINALIZED
        assert len(memory_store.signatures) == 1

    @pytest.mark.asyncio
    async def test_final_mark_cannot_be_redrafted(self, services, group_doc):
        document, _ = await group_doc()
        progress = await services.group.record_signature(document.id, "bob", _at())
        with pytest.raises(BadRequest):
            await services.group.save_draft("bob", document.id, _at())
        with pytest.raises(BadRequest):
            await services.group.update_draft_position(progress.signature.id, _at())


class TestFinalize:
    @pytest.mark.asyncio
    async def test_two_signers_to_completed(
        self, services, group_doc, memory_store, read_url
    ):
        document, base = await group_doc()
        a = await services.group.record_signature(document.id, "alice", _at())
        b = await services.group.record_signature(document.id, "bob", _at(y=500))

        result = await services.group.finalize(document.id, "alice")

        assert result.document.status == DocumentStatus.COMPLETED
        assert result.document.current_version_id != base.id
        assert result.document.signed_file_url == result.url
        assert len(result.access_code) == 6 and result.access_code.isdigit()

        final = await memory_store.get_version(result.document.current_version_id)
        assert final.is_sealed
        assert final.content_hash == final.signed_content_hash

        for sig_id in (a.signature.id, b.signature.id):
            record = await memory_store.get_signature(sig_id)
            assert record.access_code == result.access_code

        check = await services.verification.verify_uploaded_file(
            a.signature.id, read_url(result.url), access_code=result.access_code
        )
        assert check.is_hash_match is True
        assert check.verification_status == VerificationStatus.VALID
        assert [s.name for s in check.group_signers] == ["Alice Example", "Bob Example"]

    @pytest.mark.asyncio
    async def test_pending_signers_block(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "alice", _at())
        with pytest.raises(BadRequest, match="1 signer"):
            await services.group.finalize(document.id, "alice")

    @pytest.mark.asyncio
    async def test_only_owner_or_admin(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "alice", _at())
        await services.group.record_signature(document.id, "bob", _at())
        with pytest.raises(Forbidden):
            await services.group.finalize(document.id, "bob")
        # carol is an admin of the owning group
        result = await services.group.finalize(document.id, "carol")
        assert result.document.status == DocumentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_finalize_twice(self, services, group_doc):
        document, _ = await group_doc(signers=("alice",))
        await services.group.record_signature(document.id, "alice", _at())
        await services.group.finalize(document.id, "alice")
        with pytest.raises(BadRequest):
            await services.group.finalize(document.id, "alice")

    @pytest.mark.asyncio
    async def test_all_declined_has_nothing_to_finalize(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.decline(document.id, "alice")
        await services.group.decline(document.id, "bob")
        with pytest.raises(BadRequest, match="No signatures"):
            await services.group.finalize(document.id, "alice")

    @pytest.mark.asyncio
    async def test_unknown_document(self, services):
        with pytest.raises(NotFound):
            await services.group.finalize("missing", "alice")

    @pytest.mark.asyncio
    async def test_audited(self, services, group_doc, memory_store):
        document, _ = await group_doc(signers=("alice",))
        await services.group.record_signature(document.id, "alice", _at())
        await services.group.finalize(document.id, "alice")
        actions = [e.action for e in await memory_store.get_audit_trail(document.id)]
        assert actions[-1] == AuditAction.FINALIZE_DOCUMENT_GROUP


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_then_sign_again_keeps_one_mark(
        self, services, group_doc, memory_store
    ):
        document, _ = await group_doc()
        first = await services.group.record_signature(document.id, "alice", _at())
        await services.group.decline(document.id, "bob")

        assert await services.group.reset_signers(document.id, actor_id="alice") == 2
        assert await services.group.count_pending_signers(document.id) == 2

        again = await services.group.record_signature(document.id, "alice", _at(y=100))
        assert again.signature.id == first.signature.id
        assert again.signature.position_y == 100
        assert len(memory_store.signatures) == 1

    @pytest.mark.asyncio
    async def test_stale_marks_excluded_from_finalize(self, services, group_doc):
        document, _ = await group_doc()
        await services.group.record_signature(document.id, "alice", _at())
        await services.group.record_signature(document.id, "bob", _at())
        await services.group.reset_signers(document.id)
        await services.group.record_signature(document.id, "alice", _at())
        await services.group.decline(document.id, "bob")

        result = await services.group.finalize(document.id, "alice")
        assert "1 mark" in (
            await services.store.get_audit_trail(document.id)
        )[-1].description
        assert result.document.status == DocumentStatus.COMPLETED
