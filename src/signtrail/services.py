"""Wiring shared by the API, the CLI and the MCP server."""

from dataclasses import dataclass
from typing import Optional

from .audit import StoreAuditSink, record_safely
from .config import Settings, get_settings
from .engine import IntegrityEngine
from .group import GroupSigningCoordinator
from .locks import KeyedMutex
from .models import AuditAction, AuditMeta, Document, DocumentStatus, DocumentVersion
from .personal import PersonalSigningCoordinator
from .render import ManifestRenderer, Renderer
from .repository import Store
from .store import DocumentStore
from .verification import VerificationGateway


@dataclass
class Services:
    settings: Settings
    store: Store
    personal: PersonalSigningCoordinator
    group: GroupSigningCoordinator
    verification: VerificationGateway
    audit: StoreAuditSink


def build_services(
    store: Optional[Store] = None,
    renderer: Optional[Renderer] = None,
    settings: Optional[Settings] = None,
) -> Services:
    """Assemble the coordinators over one store.

    Personal and group signing share one ``KeyedMutex`` so a document is
    never signed and finalized at the same time.
    """
    settings = settings or get_settings()
    store = store or DocumentStore(settings.data_dir, settings.public_base_url)
    renderer = renderer or ManifestRenderer(store)
    engine = IntegrityEngine()
    audit = StoreAuditSink(store)
    document_locks = KeyedMutex()

    return Services(
        settings=settings,
        store=store,
        personal=PersonalSigningCoordinator(
            store,
            store,
            store,
            renderer,
            audit=audit,
            engine=engine,
            settings=settings,
            document_locks=document_locks,
        ),
        group=GroupSigningCoordinator(
            store,
            renderer,
            audit=audit,
            engine=engine,
            settings=settings,
            document_locks=document_locks,
        ),
        verification=VerificationGateway(store, engine=engine, settings=settings),
        audit=audit,
    )


async def upload_document(
    services: Services,
    data: bytes,
    title: str,
    owner_id: str,
    group_id: Optional[str] = None,
    audit_meta: Optional[AuditMeta] = None,
) -> tuple[Document, DocumentVersion]:
    """Register a new document with ``data`` as its base version.

    Group documents start out PENDING (collecting signatures); personal
    ones start as DRAFT.
    """
    store = services.store
    document = Document(
        title=title,
        owner_id=owner_id,
        group_id=group_id,
        status=DocumentStatus.PENDING if group_id else DocumentStatus.DRAFT,
    )
    version = DocumentVersion(
        document_id=document.id,
        owner_id=owner_id,
        content_hash=IntegrityEngine.hash_bytes(data),
    )
    version.url = await store.write_file(version.id, data)
    await store.create_version(version)
    document.current_version_id = version.id
    await store.create_document(document)

    await record_safely(
        services.audit,
        AuditAction.UPLOAD_DOCUMENT,
        owner_id,
        document.id,
        f"Uploaded '{title}' ({len(data)} bytes).",
        audit_meta,
    )
    return document, version
