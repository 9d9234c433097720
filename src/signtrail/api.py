"""SignTrail REST API.

Public endpoints let anyone holding a verification link (or a signed
file) check it without an account. Signing endpoints authenticate via
the session cookies and transparently refresh an expired access token.

Run with::

    uvicorn signtrail.api:create_app --factory
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Settings, get_settings
from .errors import BadRequest, NotFound, SessionExpired, SignTrailError, Unauthorized
from .locks import describe
from .models import (
    AuditEntry,
    AuditMeta,
    Document,
    FinalizeResult,
    GroupSigner,
    SessionUser,
    SignaturePlacement,
    SigningProgress,
    SignOptions,
)
from .render import Renderer
from .repository import Store
from .services import Services, build_services, upload_document
from .session import HttpIdentityProvider, IdentityProvider, SessionRefreshGuard

logger = logging.getLogger("signtrail.api")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class PersonalSignRequest(BaseModel):
    """Request body for signing one's own document."""

    document_version_id: str
    placements: list[SignaturePlacement] = Field(default_factory=list)
    display_mark: bool = True


class UnlockRequest(BaseModel):
    access_code: str = ""


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_user(request: Request, response: Response) -> SessionUser:
    """Resolve the caller from the session cookies.

    A refreshed token pair is written onto ``response`` and reaches the
    client with whatever the endpoint returns.
    """
    settings: Settings = request.app.state.services.settings
    guard: SessionRefreshGuard = request.app.state.sessions
    return await guard.authenticate(
        request.cookies.get(settings.access_cookie_name),
        request.cookies.get(settings.refresh_cookie_name),
        response,
    )


def audit_meta(request: Request) -> AuditMeta:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return AuditMeta(ip_address=ip, user_agent=request.headers.get("user-agent"))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    store: Optional[Store] = None,
    renderer: Optional[Renderer] = None,
    identity: Optional[IdentityProvider] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API around the given collaborators (defaults from settings)."""
    settings = settings or get_settings()
    services = build_services(store=store, renderer=renderer, settings=settings)
    sessions = SessionRefreshGuard(
        identity or HttpIdentityProvider(settings), settings=settings
    )

    app = FastAPI(
        title="SignTrail",
        description="Document signing with a verifiable, hash-anchored audit trail.",
        version=__version__,
    )
    app.state.services = services
    app.state.sessions = sessions

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SignTrailError)
    async def handle_signtrail_error(request: Request, exc: SignTrailError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        if isinstance(exc, SessionExpired):
            sessions.clear_cookies(response)
        return response

    # -----------------------------------------------------------------------
    # Public verification
    # -----------------------------------------------------------------------

    @app.get("/api/verify/{signature_id}")
    async def get_signature_details(
        signature_id: str, svc: Services = Depends(get_services)
    ) -> dict:
        """Metadata behind a verification link; PIN-protected records stay locked."""
        view = await svc.verification.get_details(signature_id)
        return view.model_dump(mode="json")

    @app.post("/api/verify/{signature_id}/unlock")
    async def unlock_signature(
        signature_id: str, req: UnlockRequest, svc: Services = Depends(get_services)
    ) -> dict:
        if not req.access_code.strip():
            raise BadRequest("Access code is required.")
        view = await svc.verification.unlock(signature_id, req.access_code.strip())
        if view is None:
            raise Unauthorized("Wrong code or unknown document.")
        return view.model_dump(mode="json")

    @app.post("/api/verify-file")
    async def verify_file(
        file: UploadFile = File(...),
        signature_id: str = Form(...),
        access_code: Optional[str] = Form(None),
        svc: Services = Depends(get_services),
    ) -> dict:
        """Hash an uploaded file and compare it with the registered hash."""
        if await svc.verification.resolve_kind(signature_id) is None:
            raise NotFound("Signature not found.")
        data = await file.read()
        result = await svc.verification.verify_uploaded_file(
            signature_id, data, access_code=access_code or None
        )
        return result.model_dump(mode="json")

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    @app.post("/api/documents", response_model=Document, status_code=201)
    async def create_document(
        request: Request,
        file: UploadFile = File(...),
        title: Optional[str] = Form(None),
        group_id: Optional[str] = Form(None),
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Document:
        """Upload a file as the base version of a new document."""
        data = await file.read()
        if not data:
            raise BadRequest("Uploaded file is empty.")
        document, _ = await upload_document(
            svc,
            data,
            title or file.filename or "Untitled",
            user.id,
            group_id=group_id,
            audit_meta=audit_meta(request),
        )
        return document

    @app.get("/api/documents/{document_id}/audit", response_model=list[AuditEntry])
    async def get_audit_trail(
        document_id: str,
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> list[AuditEntry]:
        return await svc.group.audit_trail(document_id, user.id)

    # -----------------------------------------------------------------------
    # Signing
    # -----------------------------------------------------------------------

    @app.post("/api/signatures/personal", response_model=Document)
    async def sign_personal(
        req: PersonalSignRequest,
        request: Request,
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> Document:
        return await svc.personal.sign(
            user.id,
            req.document_version_id,
            req.placements,
            audit_meta=audit_meta(request),
            options=SignOptions(display_mark=req.display_mark),
        )

    @app.post("/api/groups/documents/{document_id}/sign", response_model=SigningProgress)
    async def sign_group(
        document_id: str,
        placement: SignaturePlacement,
        request: Request,
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> SigningProgress:
        return await svc.group.record_signature(
            document_id, user.id, placement, audit_meta=audit_meta(request)
        )

    @app.post("/api/groups/documents/{document_id}/finalize", response_model=FinalizeResult)
    async def finalize_group(
        document_id: str,
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> FinalizeResult:
        return await svc.group.finalize(document_id, user.id)

    @app.post("/api/groups/documents/{document_id}/decline", response_model=GroupSigner)
    async def decline_group(
        document_id: str,
        request: Request,
        req: Optional[DeclineRequest] = None,
        user: SessionUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> GroupSigner:
        return await svc.group.decline(
            document_id,
            user.id,
            reason=req.reason if req else None,
            audit_meta=audit_meta(request),
        )

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "service": "signtrail",
            "version": __version__,
            "refresh_locks": describe(sessions.lock_table),
        }

    return app
