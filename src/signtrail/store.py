"""Filesystem-backed store for SignTrail.

Everything lives on disk as JSON under ``~/.signtrail/``. Good enough
for a single-process deployment and for local use from the CLI; a
relational backend only has to satisfy the protocols in
``signtrail.repository``.

Directory layout::

    ~/.signtrail/
    ├── documents/          # <doc-id>.json
    ├── versions/           # <version-id>.json
    ├── files/              # <version-id>.pdf (base and signed files)
    ├── signatures/         # <signature-id>.json
    ├── signers/            # <doc-id>.json (group roster, JSON array)
    ├── users/              # <user-id>.json
    ├── groups/             # <group-id>.json
    └── audit/              # <target-id>.jsonl (append-only)
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

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

logger = logging.getLogger("signtrail.store")

ModelT = TypeVar("ModelT", bound=BaseModel)

_ROSTER = TypeAdapter(list[GroupSigner])

# Ids become file names; anything that could leave the directory is refused.
_SAFE_KEY = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]{0,127}$")


class DocumentStore:
    """Filesystem-backed implementation of every repository protocol.

    Args:
        base_dir: Root directory for all signtrail data.
        public_base_url: Prefix for file URLs. Empty means ``file://`` URIs.
    """

    def __init__(self, base_dir: Path, public_base_url: str = "") -> None:
        self.base = Path(base_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self._documents_dir = self.base / "documents"
        self._versions_dir = self.base / "versions"
        self._files_dir = self.base / "files"
        self._signatures_dir = self.base / "signatures"
        self._signers_dir = self.base / "signers"
        self._users_dir = self.base / "users"
        self._groups_dir = self.base / "groups"
        self._audit_dir = self.base / "audit"

        for d in (
            self._documents_dir,
            self._versions_dir,
            self._files_dir,
            self._signatures_dir,
            self._signers_dir,
            self._users_dir,
            self._groups_dir,
            self._audit_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _path(directory: Path, key: Optional[str], suffix: str = ".json") -> Optional[Path]:
        """File for ``key`` inside ``directory``, or None for an unusable key."""
        if not key or not _SAFE_KEY.match(key):
            return None
        return directory / f"{key}{suffix}"

    @staticmethod
    def _write(path: Optional[Path], model: BaseModel) -> None:
        if path is None:
            raise DatabaseError("Refusing to store a record under an invalid id")
        try:
            path.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            raise DatabaseError(f"Failed to write {path.name}: {exc}") from exc

    @staticmethod
    def _read(path: Optional[Path], model_cls: type[ModelT]) -> Optional[ModelT]:
        if path is None or not path.exists():
            return None
        try:
            return model_cls.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise DatabaseError(f"Failed to read {path.name}: {exc}") from exc

    def _update(
        self,
        path: Optional[Path],
        model_cls: type[ModelT],
        label: str,
        changes: dict[str, Any],
    ) -> ModelT:
        current = self._read(path, model_cls)
        if current is None:
            raise NotFound(f"{label} not found")
        updated = model_cls.model_validate({**current.model_dump(), **changes})
        self._write(path, updated)
        return updated

    def _scan(self, directory: Path, model_cls: type[ModelT]) -> list[ModelT]:
        items = []
        for f in sorted(directory.glob("*.json")):
            try:
                items.append(model_cls.model_validate_json(f.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping invalid record %s: %s", f.name, exc)
        return items

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        self._write(self._path(self._documents_dir, document.id), document)
        logger.info("Saved document %s (%s)", document.title, document.id[:8])
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        return self._read(self._path(self._documents_dir, document_id), Document)

    async def update_document(self, document_id: str, **changes: Any) -> Document:
        return self._update(
            self._path(self._documents_dir, document_id), Document, "Document", changes
        )

    async def list_documents(
        self, status: Optional[DocumentStatus] = None
    ) -> list[Document]:
        """List documents, newest first, optionally filtered by status."""
        documents = [
            d
            for d in self._scan(self._documents_dir, Document)
            if status is None or d.status == status
        ]
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def create_version(self, version: DocumentVersion) -> DocumentVersion:
        self._write(self._path(self._versions_dir, version.id), version)
        return version

    async def get_version(self, version_id: str) -> Optional[DocumentVersion]:
        return self._read(self._path(self._versions_dir, version_id), DocumentVersion)

    async def update_version(self, version_id: str, **changes: Any) -> DocumentVersion:
        """Update a version that has not been sealed yet.

        Raises:
            NotFound: If the version doesn't exist.
            DatabaseError: If the version already carries a signed hash.
        """
        path = self._path(self._versions_dir, version_id)
        current = self._read(path, DocumentVersion)
        if current is not None and current.is_sealed:
            raise DatabaseError(f"Version {version_id} is sealed and cannot change")
        return self._update(path, DocumentVersion, "Version", changes)

    async def delete_version(self, version_id: str) -> bool:
        path = self._path(self._versions_dir, version_id)
        if path is None or not path.exists():
            return False
        try:
            path.unlink()
            blob = self._path(self._files_dir, version_id, ".pdf")
            if blob.exists():
                blob.unlink()
        except OSError as exc:
            raise DatabaseError(f"Failed to delete version {version_id}: {exc}") from exc
        logger.info("Deleted version %s", version_id[:8])
        return True

    async def list_versions(self, document_id: str) -> list[DocumentVersion]:
        versions = [
            v
            for v in self._scan(self._versions_dir, DocumentVersion)
            if v.document_id == document_id
        ]
        return sorted(versions, key=lambda v: v.created_at)

    async def write_file(self, version_id: str, data: bytes) -> str:
        """Store file bytes for a version and return its public URL."""
        path = self._path(self._files_dir, version_id, ".pdf")
        if path is None:
            raise DatabaseError(f"Invalid file key: {version_id!r}")
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise DatabaseError(f"Failed to store file for {version_id}: {exc}") from exc
        if self.public_base_url:
            return f"{self.public_base_url}/files/{path.name}"
        return path.resolve().as_uri()

    async def read_file(self, version_id: str) -> Optional[bytes]:
        path = self._path(self._files_dir, version_id, ".pdf")
        if path is not None and path.exists():
            return path.read_bytes()
        return None

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    async def create_signature(self, record: SignatureRecord) -> SignatureRecord:
        self._write(self._path(self._signatures_dir, record.id), record)
        return record

    async def get_signature(self, signature_id: str) -> Optional[SignatureRecord]:
        return self._read(self._path(self._signatures_dir, signature_id), SignatureRecord)

    async def update_signature(self, signature_id: str, **changes: Any) -> SignatureRecord:
        return self._update(
            self._path(self._signatures_dir, signature_id),
            SignatureRecord,
            "Signature",
            changes,
        )

    async def delete_signature(self, signature_id: str) -> bool:
        path = self._path(self._signatures_dir, signature_id)
        if path is not None and path.exists():
            path.unlink()
            return True
        return False

    async def list_signatures(self, version_id: str) -> list[SignatureRecord]:
        return [
            s
            for s in self._scan(self._signatures_dir, SignatureRecord)
            if s.document_version_id == version_id
        ]

    async def find_signature(
        self, signer_id: str, version_id: str, kind: SignatureKind
    ) -> Optional[SignatureRecord]:
        for record in await self.list_signatures(version_id):
            if record.signer_id == signer_id and record.kind == kind:
                return record
        return None

    # ------------------------------------------------------------------
    # Group roster
    # ------------------------------------------------------------------

    def _load_roster(self, document_id: str) -> list[GroupSigner]:
        path = self._path(self._signers_dir, document_id)
        if path is None or not path.exists():
            return []
        try:
            return _ROSTER.validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            raise DatabaseError(f"Failed to read signer roster: {exc}") from exc

    def _save_roster(self, document_id: str, roster: list[GroupSigner]) -> None:
        path = self._path(self._signers_dir, document_id)
        if path is None:
            raise DatabaseError(f"Invalid document id: {document_id!r}")
        try:
            path.write_bytes(_ROSTER.dump_json(roster, indent=2))
        except OSError as exc:
            raise DatabaseError(f"Failed to write signer roster: {exc}") from exc

    async def create_signers(self, document_id: str, user_ids: list[str]) -> int:
        """Bulk-insert PENDING rows, skipping (document, user) pairs that exist."""
        roster = self._load_roster(document_id)
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
        if added:
            self._save_roster(document_id, roster)
        return added

    async def get_signer(self, document_id: str, user_id: str) -> Optional[GroupSigner]:
        for signer in self._load_roster(document_id):
            if signer.user_id == user_id:
                return signer
        return None

    async def list_signers(self, document_id: str) -> list[GroupSigner]:
        return sorted(self._load_roster(document_id), key=lambda s: s.order)

    def _transition(
        self, document_id: str, user_id: Optional[str], **changes: Any
    ) -> int:
        """Apply ``changes`` to PENDING rows (one user, or all when None)."""
        roster = self._load_roster(document_id)
        count = 0
        for i, signer in enumerate(roster):
            if user_id is not None and signer.user_id != user_id:
                continue
            if signer.status != SignerStatus.PENDING:
                continue
            roster[i] = signer.model_copy(update=changes)
            count += 1
        if count:
            self._save_roster(document_id, roster)
        return count

    async def mark_signed(self, document_id: str, user_id: str, signature_id: str) -> int:
        count = self._transition(
            document_id, user_id, status=SignerStatus.SIGNED, signature_id=signature_id
        )
        if count == 0:
            logger.warning(
                "No PENDING row to mark SIGNED for user %s on %s", user_id, document_id[:8]
            )
        return count

    async def mark_rejected(self, document_id: str, user_id: str) -> int:
        return self._transition(document_id, user_id, status=SignerStatus.REJECTED)

    async def count_pending_signers(self, document_id: str) -> int:
        return sum(
            1 for s in self._load_roster(document_id) if s.status == SignerStatus.PENDING
        )

    async def delete_pending_signer(self, document_id: str, user_id: str) -> int:
        roster = self._load_roster(document_id)
        kept = [
            s
            for s in roster
            if not (s.user_id == user_id and s.status == SignerStatus.PENDING)
        ]
        removed = len(roster) - len(kept)
        if removed:
            self._save_roster(document_id, kept)
        return removed

    async def reset_signers(self, document_id: str) -> int:
        roster = [
            s.model_copy(update={"status": SignerStatus.PENDING, "signature_id": None})
            for s in self._load_roster(document_id)
        ]
        self._save_roster(document_id, roster)
        return len(roster)

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    async def save_user(self, user: UserProfile) -> UserProfile:
        self._write(self._path(self._users_dir, user.id), user)
        return user

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._read(self._path(self._users_dir, user_id), UserProfile)

    async def save_group(self, group: Group) -> Group:
        self._write(self._path(self._groups_dir, group.id), group)
        return group

    async def get_group(self, group_id: str) -> Optional[Group]:
        return self._read(self._path(self._groups_dir, group_id), Group)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the log (JSONL format)."""
        log_path = self._path(self._audit_dir, entry.target_id or "_global", ".jsonl")
        if log_path is None:
            raise DatabaseError(f"Invalid audit target: {entry.target_id!r}")
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    async def get_audit_trail(self, target_id: str) -> list[AuditEntry]:
        """Chronological audit entries for one target."""
        log_path = self._path(self._audit_dir, target_id, ".jsonl")
        if log_path is None or not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate(json.loads(line)))
            except (ValueError, ValidationError):
                logger.warning("Skipping corrupt audit line for %s", target_id[:8])
        return sorted(entries, key=lambda e: e.timestamp)
