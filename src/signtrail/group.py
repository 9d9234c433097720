"""Multi-signer completion for group documents.

Each (document, user) pair on the roster moves ``PENDING -> SIGNED`` or
``PENDING -> REJECTED`` and stays there until ``reset_signers`` puts the
whole roster back to PENDING (used when the document is edited after
some marks were collected). A document is complete exactly when no row
is PENDING; ``finalize`` then burns every finalized mark into one file.

Signing order is recorded on the roster but not enforced: signers may
sign in parallel, and ``finalize`` lays marks out by ``signed_at``.
"""

import logging
from typing import Optional

from .audit import AuditSink, record_safely
from .config import Settings, get_settings
from .engine import IntegrityEngine
from .errors import BadRequest, Forbidden, InternalServerError, NotFound
from .locks import KeyedMutex
from .models import (
    AuditAction,
    AuditEntry,
    AuditMeta,
    Document,
    DocumentStatus,
    DocumentVersion,
    FinalizeResult,
    GroupSigner,
    RenderOptions,
    SignatureKind,
    SignaturePlacement,
    SignatureRecord,
    SignatureStatus,
    SignerStatus,
    SigningProgress,
)
from .personal import fetch
from .render import Renderer
from .repository import Store

logger = logging.getLogger("signtrail.group")


class GroupSigningCoordinator:
    """Tracks a roster of signers per document and finalizes it.

    Args:
        store: Documents, versions, signatures, roster and directory.
        renderer: Produces the composite signed file.
        audit: Receives signing, decline and finalize events.
        engine: Hashing and access-code helpers.
        settings: Runtime settings (access-code length).
        document_locks: Serializes finalization on the same document.
    """

    def __init__(
        self,
        store: Store,
        renderer: Renderer,
        audit: Optional[AuditSink] = None,
        engine: Optional[IntegrityEngine] = None,
        settings: Optional[Settings] = None,
        document_locks: Optional[KeyedMutex] = None,
    ) -> None:
        self._store = store
        self._renderer = renderer
        self._audit = audit
        self._engine = engine or IntegrityEngine()
        self._settings = settings or get_settings()
        self._locks = document_locks or KeyedMutex()

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def register_signers(self, document_id: str, user_ids: list[str]) -> int:
        """Add PENDING rows; pairs already on the roster are ignored.

        Returns:
            Number of rows actually inserted.
        """
        await self._require_document(document_id)
        added = await self._store.create_signers(document_id, list(dict.fromkeys(user_ids)))
        logger.info("Registered %d new signer(s) on %s", added, document_id[:8])
        return added

    async def list_signers(self, document_id: str) -> list[GroupSigner]:
        return await self._store.list_signers(document_id)

    async def count_pending_signers(self, document_id: str) -> int:
        return await self._store.count_pending_signers(document_id)

    async def remove_signer(self, document_id: str, user_id: str, actor_id: str) -> None:
        """Drop a signer from the roster while they are still PENDING.

        Raises:
            NotFound: Unknown document, or the user isn't on the roster.
            Forbidden: Caller is neither owner nor group admin.
            BadRequest: The user already signed or declined.
        """
        document = await self._require_document(document_id)
        await self._require_admin(document, actor_id, "remove signers")
        signer = await self._store.get_signer(document_id, user_id)
        if signer is None:
            raise NotFound(f"User {user_id} is not a signer of this document.")
        if signer.status != SignerStatus.PENDING:
            raise BadRequest(f"Signer already {signer.status.value.lower()}; cannot remove.")
        await self._store.delete_pending_signer(document_id, user_id)
        await record_safely(
            self._audit,
            AuditAction.REMOVE_SIGNER,
            actor_id,
            document_id,
            f"Removed signer {user_id} from the roster.",
        )

    async def reset_signers(self, document_id: str, actor_id: Optional[str] = None) -> int:
        """Put every row back to PENDING and unlink prior signatures."""
        count = await self._store.reset_signers(document_id)
        logger.info("Reset %d signer(s) on %s", count, document_id[:8])
        await record_safely(
            self._audit,
            AuditAction.RESET_SIGNERS,
            actor_id,
            document_id,
            "Signer roster reset; previous marks invalidated.",
        )
        return count

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def save_draft(
        self, user_id: str, document_id: str, placement: SignaturePlacement
    ) -> SignatureRecord:
        """Create or update the caller's draft mark on the current version.

        A user has at most one draft per version; saving again moves it.
        """
        document = await self._require_document(document_id)
        version_id = self._current_version_id(document)

        existing = await self._store.find_signature(user_id, version_id, SignatureKind.GROUP)
        if existing is not None and existing.status == SignatureStatus.FINALIZED:
            signer = await self._store.get_signer(document_id, user_id)
            if signer is None or signer.status != SignerStatus.PENDING:
                raise BadRequest("Your signature on this version is already final.")

        draft = SignatureRecord.from_placement(
            placement,
            kind=SignatureKind.GROUP,
            document_version_id=version_id,
            signer_id=user_id,
            status=SignatureStatus.DRAFT,
        )
        if existing is not None:
            changes = draft.model_dump(exclude={"id", "signed_at"})
            return await self._store.update_signature(existing.id, **changes)
        return await self._store.create_signature(draft)

    async def update_draft_position(
        self, signature_id: str, placement: SignaturePlacement
    ) -> SignatureRecord:
        draft = await self._require_draft(signature_id)
        return await self._store.update_signature(
            draft.id,
            page_number=placement.page_number,
            position_x=placement.position_x,
            position_y=placement.position_y,
            width=placement.width,
            height=placement.height,
        )

    async def delete_draft(self, signature_id: str) -> bool:
        draft = await self._require_draft(signature_id)
        return await self._store.delete_signature(draft.id)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def record_signature(
        self,
        document_id: str,
        user_id: str,
        placement: SignaturePlacement,
        audit_meta: Optional[AuditMeta] = None,
    ) -> SigningProgress:
        """Commit a signer's mark and report how many are still missing.

        Raises:
            NotFound: The user isn't on the roster.
            Forbidden: The user already signed or declined.
        """
        audit_meta = audit_meta or AuditMeta()
        signer = await fetch(self._store.get_signer(document_id, user_id), "signer")
        if signer is None:
            raise NotFound("You are not a signer of this document.")
        if signer.status != SignerStatus.PENDING:
            raise Forbidden("You have already signed or declined this document.")

        document = await self._require_document(document_id)
        version_id = self._current_version_id(document)

        final = SignatureRecord.from_placement(
            placement,
            kind=SignatureKind.GROUP,
            document_version_id=version_id,
            signer_id=user_id,
            audit=audit_meta,
        )
        # Reuse a draft, or a mark invalidated by reset_signers, so one
        # signer never has two records on the same version.
        draft = await self._store.find_signature(user_id, version_id, SignatureKind.GROUP)
        if draft is not None:
            record = await self._store.update_signature(
                draft.id, **final.model_dump(exclude={"id"})
            )
        else:
            record = await self._store.create_signature(final)

        if await self._store.mark_signed(document_id, user_id, record.id) == 0:
            # Another request committed for this user in between.
            if draft is None:
                await self._store.delete_signature(record.id)
            raise Forbidden("You have already signed or declined this document.")

        await record_safely(
            self._audit,
            AuditAction.SIGN_DOCUMENT_GROUP,
            user_id,
            document_id,
            f"Signed group document '{document.title}'.",
            audit_meta,
        )

        remaining = await self._store.count_pending_signers(document_id)
        logger.info(
            "User %s signed group document %s (%d remaining)",
            user_id[:8],
            document_id[:8],
            remaining,
        )
        return SigningProgress(
            signature=record, is_complete=remaining == 0, remaining_signers=remaining
        )

    async def decline(
        self,
        document_id: str,
        user_id: str,
        reason: Optional[str] = None,
        audit_meta: Optional[AuditMeta] = None,
    ) -> GroupSigner:
        signer = await self._store.get_signer(document_id, user_id)
        if signer is None:
            raise NotFound("You are not a signer of this document.")
        if await self._store.mark_rejected(document_id, user_id) == 0:
            raise Forbidden("You have already signed or declined this document.")
        await record_safely(
            self._audit,
            AuditAction.DECLINE_DOCUMENT_GROUP,
            user_id,
            document_id,
            f"Declined to sign{': ' + reason if reason else ''}.",
            audit_meta,
        )
        return signer.model_copy(update={"status": SignerStatus.REJECTED})

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(self, document_id: str, actor_id: str) -> FinalizeResult:
        """Render every finalized mark into one file and complete the document.

        The document only flips to completed after the new version carries
        its signed hash. If rendering or any write fails the document stays
        as it was; a version row written before the failure is left for the
        caller to inspect.

        Raises:
            NotFound: Unknown document.
            Forbidden: Caller is neither owner nor group admin.
            BadRequest: Signers still pending, already finalized, or no marks.
        """
        async with self._locks.hold(document_id):
            document = await self._require_document(document_id)
            await self._require_admin(document, actor_id, "finalize")

            pending = await self._store.count_pending_signers(document_id)
            if pending > 0:
                raise BadRequest(
                    f"Cannot finalize yet: {pending} signer(s) have not signed."
                )
            if document.status == DocumentStatus.COMPLETED:
                raise BadRequest("Document has already been finalized.")

            base_version_id = self._current_version_id(document)
            linked = {
                s.signature_id
                for s in await self._store.list_signers(document_id)
                if s.status == SignerStatus.SIGNED and s.signature_id
            }
            marks = [
                s
                for s in await self._store.list_signatures(base_version_id)
                if s.id in linked and s.status == SignatureStatus.FINALIZED
            ]
            if not marks:
                raise BadRequest("No signatures to finalize.")
            marks.sort(key=lambda s: s.signed_at)

            rendered = await self._renderer.render_signed(
                base_version_id,
                [s.placement() for s in marks],
                RenderOptions(display_mark=False),
            )
            signed_hash = self._engine.hash_bytes(rendered.signed_bytes)
            final_version = await self._store.create_version(
                DocumentVersion(
                    document_id=document_id,
                    owner_id=actor_id,
                    url=rendered.public_url,
                    content_hash=signed_hash,
                    signed_content_hash=signed_hash,
                )
            )

            access_code = self._engine.generate_access_code(
                self._settings.access_code_length
            )
            for mark in marks:
                await self._store.update_signature(mark.id, access_code=access_code)

            document = await self._store.update_document(
                document_id,
                status=DocumentStatus.COMPLETED,
                current_version_id=final_version.id,
                signed_file_url=rendered.public_url,
            )

        await record_safely(
            self._audit,
            AuditAction.FINALIZE_DOCUMENT_GROUP,
            actor_id,
            document_id,
            f"Finalized group document '{document.title}' with {len(marks)} mark(s).",
        )
        logger.info(
            "Finalized group document %s (version %s, %d mark(s))",
            document_id[:8],
            final_version.id[:8],
            len(marks),
        )
        return FinalizeResult(document=document, url=rendered.public_url, access_code=access_code)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def audit_trail(self, document_id: str, actor_id: str) -> list[AuditEntry]:
        """Audit history of a document, for its owner or a group admin.

        Entries carry signers' IP addresses and user agents.
        """
        document = await self._require_document(document_id)
        await self._require_admin(document, actor_id, "read the audit trail")
        return await self._store.get_audit_trail(document_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _require_document(self, document_id: str) -> Document:
        document = await fetch(self._store.get_document(document_id), "document")
        if document is None:
            raise NotFound(f"Document not found: {document_id}")
        return document

    @staticmethod
    def _current_version_id(document: Document) -> str:
        if not document.current_version_id:
            raise InternalServerError(
                f"Data inconsistency: document {document.id} has no current version."
            )
        return document.current_version_id

    async def _require_draft(self, signature_id: str) -> SignatureRecord:
        record = await self._store.get_signature(signature_id)
        if record is None:
            raise NotFound(f"Signature not found: {signature_id}")
        if record.status != SignatureStatus.DRAFT:
            raise BadRequest("Only draft signatures can be changed.")
        return record

    async def _require_admin(self, document: Document, actor_id: str, action: str) -> None:
        if document.owner_id == actor_id:
            return
        if document.group_id:
            group = await self._store.get_group(document.group_id)
            if group is not None and actor_id in group.admin_ids:
                return
        raise Forbidden(f"Only the document owner or a group admin can {action}.")

