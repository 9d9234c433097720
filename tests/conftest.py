"""Shared fixtures for SignTrail tests."""

import asyncio

import pytest

from signtrail.config import Settings
from signtrail.errors import TokenExpired, TokenInvalid
from signtrail.memory import MemoryStore
from signtrail.models import SessionTokens, SessionUser, UserProfile
from signtrail.services import build_services, upload_document

USERS = {
    "alice": UserProfile(id="alice", name="Alice Example", email="alice@example.org"),
    "bob": UserProfile(id="bob", name="Bob Example", email="bob@example.org"),
    "carol": UserProfile(id="carol", name="Carol Example", email="carol@example.org"),
}


class FailingRenderer:
    """Renderer that always blows up after being called."""

    def __init__(self) -> None:
        self.calls = 0

    async def render_signed(self, base_version_id, placements, options):
        self.calls += 1
        raise RuntimeError("renderer exploded")


class FakeIdentityProvider:
    """In-memory identity provider with a slow refresh endpoint."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.access_tokens: dict[str, SessionUser] = {}
        self.expired_tokens: set[str] = set()
        self.refresh_tokens: dict[str, SessionUser] = {}
        self.refresh_calls = 0

    async def validate_access_token(self, token: str) -> SessionUser:
        if token in self.expired_tokens:
            raise TokenExpired()
        user = self.access_tokens.get(token)
        if user is None:
            raise TokenInvalid()
        return user

    async def refresh(self, refresh_token: str) -> tuple[SessionUser, SessionTokens]:
        self.refresh_calls += 1
        await asyncio.sleep(self.delay)
        user = self.refresh_tokens.pop(refresh_token, None)
        if user is None:
            raise TokenInvalid("refresh token already used")
        n = self.refresh_calls
        tokens = SessionTokens(
            access_token=f"access-{user.id}-{n}",
            refresh_token=f"refresh-{user.id}-{n}-rotated-token",
            expires_in=3600,
        )
        self.access_tokens[tokens.access_token] = user
        self.refresh_tokens[tokens.refresh_token] = user
        return user, tokens


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        verification_base_url="https://verify.example.org",
        identity_url="http://identity.test",
    )


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary DocumentStore."""
    from signtrail.store import DocumentStore

    return DocumentStore(base_dir=tmp_path / "store")


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def services(memory_store, settings):
    """Coordinators wired over the memory store."""
    return build_services(store=memory_store, settings=settings)


@pytest.fixture
def failing_renderer() -> FailingRenderer:
    return FailingRenderer()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def sample_pdf() -> bytes:
    """Minimal valid PDF bytes for testing."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
        b"2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj\n"
        b"3 0 obj<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R>>endobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer<</Size 4/Root 1 0 R>>\n"
        b"startxref\n190\n%%EOF"
    )


@pytest.fixture
def seed(services, sample_pdf):
    """Factory: register the test users and upload one document.

    Usage: ``document, version = await seed(owner="alice", group_id=None)``.
    """

    async def _seed(owner: str = "alice", group_id=None, title: str = "Contract"):
        for user in USERS.values():
            await services.store.save_user(user)
        return await upload_document(
            services, sample_pdf, title, owner, group_id=group_id
        )

    return _seed


def stored_file(store: MemoryStore, url: str) -> bytes:
    """Bytes behind a memory-store file URL."""
    key = url.rsplit("/", 1)[-1].removesuffix(".pdf")
    return store.files[key]


@pytest.fixture
def read_url(memory_store):
    return lambda url: stored_file(memory_store, url)
