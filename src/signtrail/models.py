"""Core data models for SignTrail document signing.

A signature here is a recorded mark (image or drawn stroke) placed on a
specific document version, plus an audit trail and the SHA-256 hash of
the rendered file. Anyone holding the signed file can later prove it is
the one that was registered, without needing an account.

Versions are append-only: every signing operation produces a new
``DocumentVersion`` and the ``Document`` points at the current one.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time, used for every timestamp we store."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """Lifecycle states for a document."""

    DRAFT = "draft"
    PENDING = "pending"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class SignatureKind(str, Enum):
    """Ownership scope of a signature record.

    All three variants share one shape and are verified by the same
    gateway; they differ only in who created them.
    """

    PERSONAL = "personal"
    GROUP = "group"
    PACKAGE = "package"


class SignatureStatus(str, Enum):
    """A group signer may park a draft before committing it."""

    DRAFT = "draft"
    FINALIZED = "finalized"


class SignerStatus(str, Enum):
    """Per-user signing obligation on a group document."""

    PENDING = "PENDING"
    SIGNED = "SIGNED"
    REJECTED = "REJECTED"


class SignatureMethod(str, Enum):
    """How the mark was produced."""

    CANVAS = "canvas"
    UPLOAD = "upload"
    TYPED = "typed"
    QRCODE = "qrcode"


class VerificationStatus(str, Enum):
    """Outcome labels shown on the public verification page."""

    REGISTERED = "REGISTERED"
    PENDING_FINALIZATION = "PENDING_FINALIZATION"
    VALID = "VALID"
    INVALID = "INVALID"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    UPLOAD_DOCUMENT = "UPLOAD_DOCUMENT"
    SIGN_DOCUMENT_PERSONAL = "SIGN_DOCUMENT_PERSONAL"
    SIGN_DOCUMENT_GROUP = "SIGN_DOCUMENT_GROUP"
    DECLINE_DOCUMENT_GROUP = "DECLINE_DOCUMENT_GROUP"
    FINALIZE_DOCUMENT_GROUP = "FINALIZE_DOCUMENT_GROUP"
    REMOVE_SIGNER = "REMOVE_SIGNER"
    RESET_SIGNERS = "RESET_SIGNERS"


# ---------------------------------------------------------------------------
# Presentation defaults
# ---------------------------------------------------------------------------

class PresentationDefaults(BaseModel):
    """Fallback values used whenever a record is normalized for display."""

    signer_name: str = "Unknown signer"
    signer_email: str = "-"
    method: SignatureMethod = SignatureMethod.CANVAS
    ip_address: str = "-"
    locked_document_title: str = "Protected document"


DEFAULTS = PresentationDefaults()


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
    """A known account. Only what verification needs to display."""

    id: str
    name: str
    email: str


class Group(BaseModel):
    """A signing group. Membership management lives elsewhere; we only
    need to know who may finalize."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    admin_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Documents and versions
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """A logical document and a pointer to its current version.

    Attributes:
        id: Unique identifier.
        title: Human-readable title.
        status: Lifecycle status. Only moves forward.
        owner_id: Creator, or None when the document belongs to a group.
        group_id: Owning group, if any.
        current_version_id: The version readers should see.
        signed_file_url: Public location of the latest signed file.
        created_at: Creation timestamp.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    status: DocumentStatus = DocumentStatus.DRAFT
    owner_id: str
    group_id: Optional[str] = None
    current_version_id: Optional[str] = None
    signed_file_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DocumentVersion(BaseModel):
    """One immutable revision of a document.

    ``url`` is empty while a signing call is still rendering. Once
    ``signed_content_hash`` is written the version is frozen.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    url: str = ""
    content_hash: Optional[str] = None
    signed_content_hash: Optional[str] = None
    owner_id: str
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_sealed(self) -> bool:
        return self.signed_content_hash is not None


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

class SignaturePlacement(BaseModel):
    """Where (and with what) a mark is drawn on a page.

    Attributes:
        page_number: 1-indexed page.
        position_x: Left edge in page units.
        position_y: Top edge in page units.
        width: Mark width; 0 lets the renderer pick.
        height: Mark height; 0 lets the renderer pick.
        method: How the mark was produced. Defaults to a canvas drawing.
        signature_image_url: Image of the mark, if uploaded separately.
    """

    page_number: int = Field(1, ge=1)
    position_x: float = 0.0
    position_y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    method: Optional[SignatureMethod] = None
    signature_image_url: Optional[str] = None


class AuditMeta(BaseModel):
    """Request context captured at signing time."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SignatureRecord(BaseModel):
    """One mark by one signer on one document version.

    Attributes:
        id: Unique identifier (appears in the verification QR link).
        kind: personal, group or package scope.
        document_version_id: Version the mark was placed on.
        signer_id: User who signed.
        status: draft or finalized.
        access_code: PIN gating public disclosure, if any.
        retry_count: Consecutive wrong PIN attempts since the last unlock.
        locked_until: Unlock attempts are refused until this instant.
        signed_at: When the mark was committed.
        display_mark: Whether the renderer draws the verification mark.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: SignatureKind = SignatureKind.PERSONAL
    document_version_id: str
    signer_id: str
    position_x: float = 0.0
    position_y: float = 0.0
    page_number: int = 1
    width: float = 0.0
    height: float = 0.0
    method: SignatureMethod = DEFAULTS.method
    signature_image_url: Optional[str] = None
    status: SignatureStatus = SignatureStatus.FINALIZED
    access_code: Optional[str] = None
    retry_count: int = 0
    locked_until: Optional[datetime] = None
    signed_at: datetime = Field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    display_mark: bool = True

    @classmethod
    def from_placement(
        cls,
        placement: SignaturePlacement,
        *,
        kind: SignatureKind,
        document_version_id: str,
        signer_id: str,
        audit: Optional[AuditMeta] = None,
        status: SignatureStatus = SignatureStatus.FINALIZED,
        display_mark: bool = True,
    ) -> "SignatureRecord":
        audit = audit or AuditMeta()
        return cls(
            kind=kind,
            document_version_id=document_version_id,
            signer_id=signer_id,
            position_x=placement.position_x,
            position_y=placement.position_y,
            page_number=placement.page_number,
            width=placement.width,
            height=placement.height,
            method=placement.method or DEFAULTS.method,
            signature_image_url=placement.signature_image_url,
            status=status,
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
            display_mark=display_mark,
        )

    def placement(self) -> SignaturePlacement:
        """The geometry of this record, as handed to a renderer."""
        return SignaturePlacement(
            page_number=self.page_number,
            position_x=self.position_x,
            position_y=self.position_y,
            width=self.width,
            height=self.height,
            method=self.method,
            signature_image_url=self.signature_image_url,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


class GroupSigner(BaseModel):
    """Per-user obligation to sign a group document."""

    document_id: str
    user_id: str
    status: SignerStatus = SignerStatus.PENDING
    order: int = 0
    signature_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Immutable audit log entry.

    Attributes:
        entry_id: Unique identifier.
        action: What happened.
        actor_id: Who did it.
        target_id: Document (or other entity) affected.
        description: Free-form details.
        ip_address: Client IP at the time of the action.
        user_agent: Client software at the time of the action.
        timestamp: When it happened.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    description: str = ""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

class SignOptions(BaseModel):
    """Caller-facing options for a personal signature."""

    display_mark: bool = True


class RenderOptions(BaseModel):
    """Options forwarded to the renderer."""

    display_mark: bool = True
    verification_url: Optional[str] = None


class RenderResult(BaseModel):
    """A freshly rendered signed file and where it can be fetched."""

    signed_bytes: bytes
    public_url: str


# ---------------------------------------------------------------------------
# Coordinator results
# ---------------------------------------------------------------------------

class SigningProgress(BaseModel):
    """Outcome of one group signer committing their mark."""

    signature: SignatureRecord
    is_complete: bool
    remaining_signers: int


class FinalizeResult(BaseModel):
    """Outcome of burning every group mark into one file."""

    document: Document
    url: str
    access_code: str


# ---------------------------------------------------------------------------
# Verification views
# ---------------------------------------------------------------------------

class LockedView(BaseModel):
    """What an anonymous visitor sees for a PIN-protected signature."""

    is_locked: bool = True
    signature_id: str
    document_title: str
    type: SignatureKind
    locked_until: Optional[datetime] = None


class CoSignerView(BaseModel):
    """One finalized mark on a group document."""

    name: str
    email: str
    signed_at: datetime
    ip_address: str


class DetailsView(BaseModel):
    """Full public metadata of an unprotected signature."""

    is_locked: bool = False
    signature_id: str
    type: SignatureKind
    signer_name: str
    signer_email: str
    signer_ip_address: str
    document_title: str
    signed_at: datetime
    stored_file_hash: Optional[str] = None
    original_document_url: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.REGISTERED
    group_signers: list[CoSignerView] = Field(default_factory=list)


class UnlockedView(BaseModel):
    """Returned after a correct PIN. Identity stays hidden until the
    caller proves possession of the file."""

    is_locked: bool = False
    require_upload: bool = True
    signature_id: str
    type: SignatureKind
    document_title: str
    stored_file_hash: Optional[str] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.REGISTERED


class FileVerification(BaseModel):
    """Result of comparing an uploaded file with the registered hash."""

    is_locked: bool = False
    signature_id: str
    type: SignatureKind
    is_hash_match: bool
    verification_status: VerificationStatus
    signer_name: str
    signer_email: str
    document_title: str
    ip_address: str
    signed_at: datetime
    stored_file_hash: str
    recalculated_file_hash: str
    group_signers: list[CoSignerView] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionUser(BaseModel):
    """The authenticated principal as reported by the identity provider."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class SessionTokens(BaseModel):
    """A fresh access/refresh pair."""

    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None


class RefreshResult(BaseModel):
    """What every caller racing on one refresh token receives."""

    user: SessionUser
    new_access_token: str
    new_refresh_token: str
    expires_in: Optional[int] = None
