"""Public, unauthenticated verification of signature records.

Three reads, one gateway for every signature kind:

* ``get_details``: metadata behind a QR code. PIN-protected records
  only reveal the document title.
* ``unlock``: PIN check with bounded retries. Three wrong codes in a
  row lock the record for 30 minutes. A correct code still withholds
  the signer's identity and asks for the file.
* ``verify_uploaded_file``: recompute the SHA-256 of a file and compare
  it with the registered hash; only then is the signer disclosed.

Messages stay coarse on purpose so callers cannot tell more than
"not found", "locked" and "wrong PIN" apart.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from .config import Settings, get_settings
from .engine import IntegrityEngine
from .errors import BadRequest, Forbidden, InternalServerError, NotFound
from .models import (
    DEFAULTS,
    CoSignerView,
    DetailsView,
    Document,
    DocumentStatus,
    DocumentVersion,
    FileVerification,
    LockedView,
    SignatureKind,
    SignatureRecord,
    SignatureStatus,
    UnlockedView,
    UserProfile,
    VerificationStatus,
    utcnow,
)
from .personal import fetch
from .repository import Store

logger = logging.getLogger("signtrail.verification")


class _Context:
    """A signature record with the relations every view needs."""

    def __init__(
        self,
        record: SignatureRecord,
        version: DocumentVersion,
        document: Document,
        signer: UserProfile,
    ) -> None:
        self.record = record
        self.version = version
        self.document = document
        self.signer = signer


class VerificationGateway:
    """Read path for public verification.

    Args:
        store: Signature, version, document and user lookups.
        engine: Hashing and PIN comparison.
        settings: Lockout threshold and window.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        engine: Optional[IntegrityEngine] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._engine = engine or IntegrityEngine()
        self._settings = settings or get_settings()
        self._clock = clock

    async def resolve_kind(self, signature_id: str) -> Optional[SignatureKind]:
        """Which kind of record an id points at, or None if unknown."""
        record = await fetch(self._store.get_signature(signature_id), "signature")
        return record.kind if record is not None else None

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------

    async def get_details(self, signature_id: str) -> Union[LockedView, DetailsView]:
        """Public metadata for a signature.

        Raises:
            NotFound: Unknown signature.
            InternalServerError: Required relations are missing.
        """
        record = await self._require_record(signature_id)
        if record.access_code:
            return await self._locked_view(record)

        ctx = await self._load_context(record)
        stored_hash = await self._stored_hash(ctx, strict=False)
        status = VerificationStatus.REGISTERED
        if stored_hash is None and ctx.document.status != DocumentStatus.COMPLETED:
            status = VerificationStatus.PENDING_FINALIZATION

        return DetailsView(
            signature_id=record.id,
            type=record.kind,
            signer_name=ctx.signer.name or DEFAULTS.signer_name,
            signer_email=ctx.signer.email or DEFAULTS.signer_email,
            signer_ip_address=record.ip_address or DEFAULTS.ip_address,
            document_title=ctx.document.title,
            signed_at=record.signed_at,
            stored_file_hash=stored_hash,
            original_document_url=ctx.version.url or None,
            verification_status=status,
            group_signers=await self._co_signers(ctx),
        )

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    async def unlock(self, signature_id: str, input_code: str) -> Optional[UnlockedView]:
        """Check a PIN against a signature record.

        Returns:
            None if the signature doesn't exist, otherwise the unlocked view.

        Raises:
            Forbidden: The record is locked, or this attempt locked it.
            BadRequest: Wrong PIN with attempts remaining.
        """
        record = await fetch(self._store.get_signature(signature_id), "signature")
        if record is None:
            return None

        await self._check_code(record, input_code)

        ctx = await self._load_context(record)
        return UnlockedView(
            signature_id=record.id,
            type=record.kind,
            document_title=ctx.document.title,
            stored_file_hash=await self._stored_hash(ctx, strict=False),
        )

    async def _check_code(self, record: SignatureRecord, input_code: Optional[str]) -> None:
        """Count one PIN attempt against ``record``.

        A locked record refuses every attempt without a write. A correct
        code clears the retry state; a wrong one is counted and raises.
        """
        now = self._clock()
        if record.is_locked(now):
            minutes = max(1, math.ceil((record.locked_until - now).total_seconds() / 60))
            raise Forbidden(
                f"Signature is temporarily locked. Try again in {minutes} minute(s)."
            )

        if not self._engine.codes_match(record.access_code, input_code):
            await self._register_failure(record, now)

        if record.retry_count != 0 or record.locked_until is not None:
            await self._store.update_signature(record.id, retry_count=0, locked_until=None)

    async def _register_failure(self, record: SignatureRecord, now: datetime) -> None:
        attempts = record.retry_count + 1
        limit = self._settings.max_pin_attempts
        if attempts >= limit:
            locked_until = now + timedelta(minutes=self._settings.lockout_minutes)
            await self._store.update_signature(
                record.id, retry_count=attempts, locked_until=locked_until
            )
            logger.warning(
                "Signature %s locked until %s after %d wrong PIN(s)",
                record.id[:8],
                locked_until.isoformat(),
                attempts,
            )
            raise Forbidden(
                f"Too many wrong attempts. Locked for {self._settings.lockout_minutes} minutes."
            )
        await self._store.update_signature(record.id, retry_count=attempts)
        raise BadRequest(f"Wrong PIN. {limit - attempts} attempt(s) left.")

    # ------------------------------------------------------------------
    # File integrity
    # ------------------------------------------------------------------

    async def verify_uploaded_file(
        self,
        signature_id: str,
        file_bytes: bytes,
        access_code: Optional[str] = None,
    ) -> Union[LockedView, FileVerification]:
        """Compare an uploaded file with the hash registered for a signature.

        A PIN-protected record answers with the locked view until a code
        is supplied. Supplied codes go through the same retry and lockout
        accounting as ``unlock``.

        Raises:
            NotFound: Unknown signature.
            Forbidden: The record is locked, or this attempt locked it.
            BadRequest: Wrong PIN, or the group document has not been
                finalized yet.
            InternalServerError: The registered hash is missing.
        """
        record = await self._require_record(signature_id)
        if record.access_code:
            if not access_code:
                return await self._locked_view(record)
            await self._check_code(record, access_code)

        ctx = await self._load_context(record)
        stored_hash = await self._stored_hash(ctx, strict=True)
        recalculated = self._engine.hash_bytes(file_bytes)
        is_match = self._engine.hashes_match(stored_hash, recalculated)

        logger.info(
            "File check for signature %s: %s", record.id[:8], "match" if is_match else "mismatch"
        )
        return FileVerification(
            signature_id=record.id,
            type=record.kind,
            is_hash_match=is_match,
            verification_status=(
                VerificationStatus.VALID if is_match else VerificationStatus.INVALID
            ),
            signer_name=ctx.signer.name or DEFAULTS.signer_name,
            signer_email=ctx.signer.email or DEFAULTS.signer_email,
            document_title=ctx.document.title,
            ip_address=record.ip_address or DEFAULTS.ip_address,
            signed_at=record.signed_at,
            stored_file_hash=stored_hash,
            recalculated_file_hash=recalculated,
            group_signers=await self._co_signers(ctx),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _require_record(self, signature_id: str) -> SignatureRecord:
        record = await fetch(self._store.get_signature(signature_id), "signature")
        if record is None:
            raise NotFound(f"Signature not found: {signature_id}")
        return record

    async def _locked_view(self, record: SignatureRecord) -> LockedView:
        title = DEFAULTS.locked_document_title
        version = await self._store.get_version(record.document_version_id)
        if version is not None:
            document = await self._store.get_document(version.document_id)
            if document is not None:
                title = document.title
        return LockedView(
            signature_id=record.id,
            document_title=title,
            type=record.kind,
            locked_until=record.locked_until if record.is_locked(self._clock()) else None,
        )

    async def _load_context(self, record: SignatureRecord) -> _Context:
        version = await fetch(self._store.get_version(record.document_version_id), "version")
        document = None
        if version is not None:
            document = await fetch(self._store.get_document(version.document_id), "document")
        signer = await fetch(self._store.get_user(record.signer_id), "signer")
        if version is None or document is None or signer is None:
            raise InternalServerError("Integrity data incomplete: missing relations.")
        return _Context(record, version, document, signer)

    async def _stored_hash(self, ctx: _Context, strict: bool) -> Optional[str]:
        """The hash a file for this record must match.

        Personal and package marks live on the sealed version itself. Group
        marks sit on the base version; the hash is on the document's final
        version, which exists only after finalization.
        """
        if ctx.record.kind == SignatureKind.GROUP:
            if ctx.document.status != DocumentStatus.COMPLETED:
                if strict:
                    raise BadRequest("This group document has not been finalized yet.")
                return None
            final = await self._store.get_version(ctx.document.current_version_id or "")
            stored = final.signed_content_hash if final is not None else None
        else:
            stored = ctx.version.signed_content_hash

        if stored is None and strict:
            raise InternalServerError("Registered hash missing for this document.")
        return stored

    async def _co_signers(self, ctx: _Context) -> list[CoSignerView]:
        if ctx.record.kind != SignatureKind.GROUP:
            return []
        linked = {
            s.signature_id
            for s in await self._store.list_signers(ctx.document.id)
            if s.signature_id
        }
        marks = [
            s
            for s in await self._store.list_signatures(ctx.version.id)
            if s.id in linked and s.status == SignatureStatus.FINALIZED
        ]
        views = []
        for mark in sorted(marks, key=lambda s: s.signed_at):
            user = await self._store.get_user(mark.signer_id)
            views.append(
                CoSignerView(
                    name=user.name if user else DEFAULTS.signer_name,
                    email=user.email if user else DEFAULTS.signer_email,
                    signed_at=mark.signed_at,
                    ip_address=mark.ip_address or DEFAULTS.ip_address,
                )
            )
        return views
