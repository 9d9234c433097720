"""Single-signer completion.

``PersonalSigningCoordinator.sign`` turns a base version plus one or more
placements into a new, sealed version and a completed document. The new
version row is created first as a placeholder; if anything after that
fails, the rows this call wrote are deleted again before a single
``InternalServerError`` is raised to the caller.
"""

import logging
from collections.abc import Awaitable
from typing import Optional, TypeVar

from .audit import AuditSink, record_safely
from .config import Settings, get_settings
from .engine import IntegrityEngine
from .errors import (
    BadRequest,
    DatabaseError,
    InternalServerError,
    NotFound,
    SignTrailError,
    Unauthorized,
)
from .locks import KeyedMutex
from .models import (
    AuditAction,
    AuditMeta,
    Document,
    DocumentStatus,
    DocumentVersion,
    RenderOptions,
    SignatureKind,
    SignaturePlacement,
    SignatureRecord,
    SignOptions,
)
from .render import Renderer
from .repository import DocumentRepository, SignatureRepository, VersionStore

logger = logging.getLogger("signtrail.personal")

T = TypeVar("T")


async def fetch(awaitable: Awaitable[T], what: str) -> T:
    """Await a store read, translating raw data-layer failures."""
    try:
        return await awaitable
    except SignTrailError:
        raise
    except Exception as exc:
        raise DatabaseError(f"Failed to load {what}: {exc}") from exc


class PersonalSigningCoordinator:
    """Drives one signer from a base version to a completed document.

    Args:
        versions: Version store (placeholder create, seal, compensating delete).
        documents: Document repository.
        signatures: Signature repository.
        renderer: Produces the signed file.
        audit: Receives one entry per successful call.
        engine: Hashing helpers.
        settings: Runtime settings (verification URL).
        document_locks: Serializes signing on the same document.
    """

    def __init__(
        self,
        versions: VersionStore,
        documents: DocumentRepository,
        signatures: SignatureRepository,
        renderer: Renderer,
        audit: Optional[AuditSink] = None,
        engine: Optional[IntegrityEngine] = None,
        settings: Optional[Settings] = None,
        document_locks: Optional[KeyedMutex] = None,
    ) -> None:
        self._versions = versions
        self._documents = documents
        self._signatures = signatures
        self._renderer = renderer
        self._audit = audit
        self._engine = engine or IntegrityEngine()
        self._settings = settings or get_settings()
        self._locks = document_locks or KeyedMutex()

    def verification_url(self, signature_id: str) -> str:
        base = self._settings.verification_base_url.rstrip("/")
        return f"{base}/verify/{signature_id}"

    async def sign(
        self,
        user_id: str,
        base_version_id: str,
        placements: list[SignaturePlacement],
        audit_meta: Optional[AuditMeta] = None,
        options: Optional[SignOptions] = None,
    ) -> Document:
        """Sign a version on behalf of its owner and complete the document.

        Args:
            user_id: The signer; must own the base version.
            base_version_id: Version the marks are placed on.
            placements: One or more marks. All are committed or none.
            audit_meta: Client IP / user agent for the records and audit.
            options: Rendering options; ``display_mark`` defaults to True.

        Returns:
            The completed Document.

        Raises:
            BadRequest: No placements, or the document is already completed.
            NotFound: The base version doesn't exist.
            Unauthorized: The base version belongs to someone else.
            InternalServerError: The owning document is missing, or any
                step after the placeholder version was created failed.
        """
        if not placements:
            raise BadRequest("At least one signature placement is required.")
        options = options or SignOptions()
        audit_meta = audit_meta or AuditMeta()

        base = await fetch(self._versions.get_version(base_version_id), "version")
        if base is None:
            raise NotFound(f"Version not found: {base_version_id}")
        if base.owner_id != user_id:
            raise Unauthorized("You are not allowed to sign this document.")

        async with self._locks.hold(base.document_id):
            document = await fetch(self._documents.get_document(base.document_id), "document")
            if document is None:
                raise InternalServerError(
                    f"Data inconsistency: document {base.document_id} not found."
                )
            if document.status == DocumentStatus.COMPLETED:
                raise BadRequest("Document has already been signed.")

            document = await self._sign_locked(
                user_id, base, document, placements, audit_meta, options
            )

        await record_safely(
            self._audit,
            AuditAction.SIGN_DOCUMENT_PERSONAL,
            user_id,
            document.id,
            f"Signed document '{document.title}' with {len(placements)} mark(s).",
            audit_meta,
        )
        return document

    async def _sign_locked(
        self,
        user_id: str,
        base: DocumentVersion,
        document: Document,
        placements: list[SignaturePlacement],
        audit_meta: AuditMeta,
        options: SignOptions,
    ) -> Document:
        new_version = await self._versions.create_version(
            DocumentVersion(document_id=document.id, owner_id=user_id, url="")
        )
        created: list[SignatureRecord] = []
        try:
            for placement in placements:
                record = SignatureRecord.from_placement(
                    placement,
                    kind=SignatureKind.PERSONAL,
                    document_version_id=new_version.id,
                    signer_id=user_id,
                    audit=audit_meta,
                    display_mark=options.display_mark,
                )
                created.append(await self._signatures.create_signature(record))

            render_options = RenderOptions(
                display_mark=options.display_mark,
                verification_url=self.verification_url(created[0].id),
            )
            rendered = await self._renderer.render_signed(base.id, placements, render_options)
            signed_hash = self._engine.hash_bytes(rendered.signed_bytes)

            await self._versions.update_version(
                new_version.id,
                url=rendered.public_url,
                signed_content_hash=signed_hash,
            )
            document = await self._documents.update_document(
                document.id,
                status=DocumentStatus.COMPLETED,
                current_version_id=new_version.id,
                signed_file_url=rendered.public_url,
            )
        except Exception as exc:
            await self._rollback(new_version.id, created)
            raise InternalServerError(f"Signing failed: {exc}") from exc

        logger.info(
            "User %s signed document %s (version %s, %d mark(s))",
            user_id[:8],
            document.id[:8],
            new_version.id[:8],
            len(created),
        )
        return document

    async def _rollback(self, version_id: str, created: list[SignatureRecord]) -> None:
        """Undo this call's writes. Failures are logged, never raised.

        Each delete is attempted on its own; the placeholder version is
        always removed even if a signature delete fails.
        """
        for record in created:
            try:
                await self._signatures.delete_signature(record.id)
            except Exception as exc:
                logger.error(
                    "Rollback of signature %s failed: %s", record.id[:8], exc
                )
        try:
            await self._versions.delete_version(version_id)
        except Exception as exc:
            logger.error("Rollback of version %s failed: %s", version_id[:8], exc)
        else:
            logger.info("Rolled back placeholder version %s", version_id[:8])
