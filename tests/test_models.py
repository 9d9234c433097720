"""Tests for SignTrail data models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from signtrail.models import (
    DEFAULTS,
    AuditAction,
    AuditEntry,
    Document,
    DocumentStatus,
    DocumentVersion,
    SignatureKind,
    SignatureMethod,
    SignaturePlacement,
    SignatureRecord,
    SignatureStatus,
    UnlockedView,
    utcnow,
)


class TestDocument:
    def test_defaults(self):
        doc = Document(title="NDA", owner_id="alice")
        assert doc.status == DocumentStatus.DRAFT
        assert doc.current_version_id is None
        assert len(doc.id) == 36

    def test_json_round_trip(self):
        doc = Document(title="NDA", owner_id="alice", group_id="g1")
        loaded = Document.model_validate_json(doc.model_dump_json())
        assert loaded == doc


class TestDocumentVersion:
    def test_unsealed_until_signed_hash(self):
        version = DocumentVersion(document_id="d1", owner_id="alice")
        assert version.url == ""
        assert not version.is_sealed

    def test_sealed(self):
        version = DocumentVersion(
            document_id="d1", owner_id="alice", signed_content_hash="ab" * 32
        )
        assert version.is_sealed


class TestSignaturePlacement:
    def test_page_must_be_positive(self):
        with pytest.raises(ValidationError):
            SignaturePlacement(page_number=0)


class TestSignatureRecord:
    def test_from_placement_defaults_method(self):
        record = SignatureRecord.from_placement(
            SignaturePlacement(page_number=2, position_x=10, position_y=20),
            kind=SignatureKind.GROUP,
            document_version_id="v1",
            signer_id="bob",
        )
        assert record.method == DEFAULTS.method == SignatureMethod.CANVAS
        assert record.status == SignatureStatus.FINALIZED
        assert record.page_number == 2
        assert record.ip_address is None

    def test_placement_round_trip(self):
        placement = SignaturePlacement(
            page_number=3, position_x=1.5, position_y=2.5, width=100, height=40,
            method=SignatureMethod.UPLOAD,
        )
        record = SignatureRecord.from_placement(
            placement,
            kind=SignatureKind.PERSONAL,
            document_version_id="v1",
            signer_id="alice",
        )
        assert record.placement() == placement

    def test_is_locked(self):
        now = utcnow()
        record = SignatureRecord(document_version_id="v1", signer_id="alice")
        assert not record.is_locked(now)
        record.locked_until = now + timedelta(minutes=1)
        assert record.is_locked(now)
        assert not record.is_locked(now + timedelta(minutes=2))


class TestViews:
    def test_unlocked_view_hides_identity(self):
        view = UnlockedView(
            signature_id="s1", type=SignatureKind.PERSONAL, document_title="NDA"
        )
        assert view.require_upload is True
        assert view.signer_name is None
        assert view.signer_email is None


class TestAuditEntry:
    def test_action_values(self):
        entry = AuditEntry(action=AuditAction.SIGN_DOCUMENT_PERSONAL, target_id="d1")
        data = entry.model_dump(mode="json")
        assert data["action"] == "SIGN_DOCUMENT_PERSONAL"
        assert data["target_id"] == "d1"
