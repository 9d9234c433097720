"""In-process store. Used by tests and by embedders that bring their own
persistence and only need the signing logic."""

from typing import Any, Optional

from .errors import DatabaseError, NotFound
from .models import (
    AuditEntry,
    Document,
    DocumentStatus,
    DocumentVersion,
    Group,
    GroupSigner,
    SignatureKind,
    SignatureRecord,
    SignerStatus,
    UserProfile,
)


class MemoryStore:
    """Dict-backed implementation of every repository protocol."""

    def __init__(self, public_base_url: str = "memory://signtrail") -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.documents: dict[str, Document] = {}
        self.versions: dict[str, DocumentVersion] = {}
        self.files: dict[str, bytes] = {}
        self.signatures: dict[str, SignatureRecord] = {}
        self.rosters: dict[str, list[GroupSigner]] = {}
        self.users: dict[str, UserProfile] = {}
        self.groups: dict[str, Group] = {}
        self.audit: list[AuditEntry] = []

    @staticmethod
    def _apply(model, changes: dict[str, Any]):
        return type(model).model_validate({**model.model_dump(), **changes})

    # Documents

    async def create_document(self, document: Document) -> Document:
        self.documents[document.id] = document
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        return self.documents.get(document_id)

    async def update_document(self, document_id: str, **changes: Any) -> Document:
        if document_id not in self.documents:
            raise NotFound(f"Document not found: {document_id}")
        self.documents[document_id] = self._apply(self.documents[document_id], changes)
        return self.documents[document_id]

    async def list_documents(
        self, status: Optional[DocumentStatus] = None
    ) -> list[Document]:
        docs = [d for d in self.documents.values() if status is None or d.status == status]
        return sorted(docs, key=lambda d: d.created_at, reverse=True)

    # Versions

    async def create_version(self, version: DocumentVersion) -> DocumentVersion:
        self.versions[version.id] = version
        return version

    async def get_version(self, version_id: str) -> Optional[DocumentVersion]:
        return self.versions.get(version_id)

    async def update_version(self, version_id: str, **changes: Any) -> DocumentVersion:
        current = self.versions.get(version_id)
        if current is None:
            raise NotFound(f"Version not found: {version_id}")
        if current.is_sealed:
            raise DatabaseError(f"Version {version_id} is sealed and cannot change")
        self.versions[version_id] = self._apply(current, changes)
        return self.versions[version_id]

    async def delete_version(self, version_id: str) -> bool:
        self.files.pop(version_id, None)
        return self.versions.pop(version_id, None) is not None

    async def list_versions(self, document_id: str) -> list[DocumentVersion]:
        return sorted(
            (v for v in self.versions.values() if v.document_id == document_id),
            key=lambda v: v.created_at,
        )

    async def write_file(self, version_id: str, data: bytes) -> str:
        self.files[version_id] = data
        return f"{self.public_base_url}/files/{version_id}.pdf"

    async def read_file(self, version_id: str) -> Optional[bytes]:
        return self.files.get(version_id)

    # Signatures

    async def create_signature(self, record: SignatureRecord) -> SignatureRecord:
        self.signatures[record.id] = record
        return record

    async def get_signature(self, signature_id: str) -> Optional[SignatureRecord]:
        return self.signatures.get(signature_id)

    async def update_signature(self, signature_id: str, **changes: Any) -> SignatureRecord:
        if signature_id not in self.signatures:
            raise NotFound(f"Signature not found: {signature_id}")
        self.signatures[signature_id] = self._apply(self.signatures[signature_id], changes)
        return self.signatures[signature_id]

    async def delete_signature(self, signature_id: str) -> bool:
        return self.signatures.pop(signature_id, None) is not None

    async def list_signatures(self, version_id: str) -> list[SignatureRecord]:
        return [s for s in self.signatures.values() if s.document_version_id == version_id]

    async def find_signature(
        self, signer_id: str, version_id: str, kind: SignatureKind
    ) -> Optional[SignatureRecord]:
        for record in self.signatures.values():
            if (
                record.signer_id == signer_id
                and record.document_version_id == version_id
                and record.kind == kind
            ):
                return record
        return None

    # Group roster

    async def create_signers(self, document_id: str, user_ids: list[str]) -> int:
        roster = self.rosters.setdefault(document_id, [])
        known = {s.user_id for s in roster}
        added = 0
        for user_id in user_ids:
            if user_id in known:
                continue
            roster.append(
                GroupSigner(document_id=document_id, user_id=user_id, order=len(roster))
            )
            known.add(user_id)
            added += 1
        return added

    async def get_signer(self, document_id: str, user_id: str) -> Optional[GroupSigner]:
        for signer in self.rosters.get(document_id, []):
            if signer.user_id == user_id:
                return signer
        return None

    async def list_signers(self, document_id: str) -> list[GroupSigner]:
        return sorted(self.rosters.get(document_id, []), key=lambda s: s.order)

    def _transition(self, document_id: str, user_id: str, **changes: Any) -> int:
        roster = self.rosters.get(document_id, [])
        for i, signer in enumerate(roster):
            if signer.user_id == user_id and signer.status == SignerStatus.PENDING:
                roster[i] = signer.model_copy(update=changes)
                return 1
        return 0

    async def mark_signed(self, document_id: str, user_id: str, signature_id: str) -> int:
        return self._transition(
            document_id, user_id, status=SignerStatus.SIGNED, signature_id=signature_id
        )

    async def mark_rejected(self, document_id: str, user_id: str) -> int:
        return self._transition(document_id, user_id, status=SignerStatus.REJECTED)

    async def count_pending_signers(self, document_id: str) -> int:
        return sum(
            1 for s in self.rosters.get(document_id, []) if s.status == SignerStatus.PENDING
        )

    async def delete_pending_signer(self, document_id: str, user_id: str) -> int:
        roster = self.rosters.get(document_id, [])
        kept = [
            s for s in roster
            if not (s.user_id == user_id and s.status == SignerStatus.PENDING)
        ]
        self.rosters[document_id] = kept
        return len(roster) - len(kept)

    async def reset_signers(self, document_id: str) -> int:
        roster = [
            s.model_copy(update={"status": SignerStatus.PENDING, "signature_id": None})
            for s in self.rosters.get(document_id, [])
        ]
        self.rosters[document_id] = roster
        return len(roster)

    # Directory

    async def save_user(self, user: UserProfile) -> UserProfile:
        self.users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.users.get(user_id)

    async def save_group(self, group: Group) -> Group:
        self.groups[group.id] = group
        return group

    async def get_group(self, group_id: str) -> Optional[Group]:
        return self.groups.get(group_id)

    # Audit

    async def append_audit(self, entry: AuditEntry) -> None:
        self.audit.append(entry)

    async def get_audit_trail(self, target_id: str) -> list[AuditEntry]:
        return sorted(
            (e for e in self.audit if e.target_id == target_id),
            key=lambda e: e.timestamp,
        )
