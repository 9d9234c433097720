"""Storage contracts consumed by the signing and verification services.

Each protocol covers one concern. Concrete stores (``DocumentStore`` on
the filesystem, ``MemoryStore`` in-process) implement all of them, so a
service can be handed either one.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .models import (
    AuditEntry,
    Document,
    DocumentStatus,
    DocumentVersion,
    Group,
    GroupSigner,
    SignatureKind,
    SignatureRecord,
    UserProfile,
)


@runtime_checkable
class VersionStore(Protocol):
    """Append-only document versions plus their file bytes."""

    async def create_version(self, version: DocumentVersion) -> DocumentVersion: ...

    async def get_version(self, version_id: str) -> Optional[DocumentVersion]: ...

    async def update_version(self, version_id: str, **changes: Any) -> DocumentVersion: ...

    async def delete_version(self, version_id: str) -> bool: ...

    async def list_versions(self, document_id: str) -> list[DocumentVersion]: ...

    async def write_file(self, version_id: str, data: bytes) -> str: ...

    async def read_file(self, version_id: str) -> Optional[bytes]: ...


@runtime_checkable
class DocumentRepository(Protocol):
    async def create_document(self, document: Document) -> Document: ...

    async def get_document(self, document_id: str) -> Optional[Document]: ...

    async def update_document(self, document_id: str, **changes: Any) -> Document: ...

    async def list_documents(
        self, status: Optional[DocumentStatus] = None
    ) -> list[Document]: ...


@runtime_checkable
class SignatureRepository(Protocol):
    async def create_signature(self, record: SignatureRecord) -> SignatureRecord: ...

    async def get_signature(self, signature_id: str) -> Optional[SignatureRecord]: ...

    async def update_signature(
        self, signature_id: str, **changes: Any
    ) -> SignatureRecord: ...

    async def delete_signature(self, signature_id: str) -> bool: ...

    async def list_signatures(self, version_id: str) -> list[SignatureRecord]: ...

    async def find_signature(
        self, signer_id: str, version_id: str, kind: SignatureKind
    ) -> Optional[SignatureRecord]: ...


@runtime_checkable
class GroupSignerRepository(Protocol):
    async def create_signers(self, document_id: str, user_ids: list[str]) -> int: ...

    async def get_signer(self, document_id: str, user_id: str) -> Optional[GroupSigner]: ...

    async def list_signers(self, document_id: str) -> list[GroupSigner]: ...

    async def mark_signed(
        self, document_id: str, user_id: str, signature_id: str
    ) -> int: ...

    async def mark_rejected(self, document_id: str, user_id: str) -> int: ...

    async def count_pending_signers(self, document_id: str) -> int: ...

    async def delete_pending_signer(self, document_id: str, user_id: str) -> int: ...

    async def reset_signers(self, document_id: str) -> int: ...


@runtime_checkable
class Directory(Protocol):
    """Users and groups, read-mostly."""

    async def save_user(self, user: UserProfile) -> UserProfile: ...

    async def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    async def save_group(self, group: Group) -> Group: ...

    async def get_group(self, group_id: str) -> Optional[Group]: ...


@runtime_checkable
class AuditLog(Protocol):
    async def append_audit(self, entry: AuditEntry) -> None: ...

    async def get_audit_trail(self, target_id: str) -> list[AuditEntry]: ...


@runtime_checkable
class Store(
    VersionStore,
    DocumentRepository,
    SignatureRepository,
    GroupSignerRepository,
    Directory,
    AuditLog,
    Protocol,
):
    """Everything a full SignTrail deployment persists."""
