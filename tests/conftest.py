"""
Test configuration and fixtures.

Provides:
- In-memory Mongo database (mongomock-motor), fresh per test
- In-memory object storage and a recording mailer on app.state
- JWT token minting for authenticated tests
- HTTPX AsyncClient per user
"""
import base64
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Dict, List, Optional, Set

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from mongomock_motor import AsyncMongoMockClient
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from signpearl.config import Settings
from signpearl.errors import UpstreamFailure
from signpearl.main import create_app
from signpearl.storage import ObjectNotFoundError

USER_A = "user-a"
USER_B = "user-b"

TEST_SETTINGS = Settings(
    database_name="signpearl_test",
    jwt_secret="test-secret",
    jwt_audience="authenticated",
    app_base_url="http://app.test",
    public_api_url="http://api.test",
    sendgrid_api_key="SG.test",
    log_level="WARNING",
)


# =============================================================================
# Fakes
# =============================================================================

class MemoryStorage:
    """Keeps every uploaded object in a dict keyed by object key."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.types: Dict[str, Optional[str]] = {}

    async def upload(self, key: str, data: bytes, content_type: Optional[str]) -> None:
        self.objects[key] = data
        self.types[key] = content_type

    async def download(self, key: str) -> bytes:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.objects[key]

    async def content_type(self, key: str) -> Optional[str]:
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.types.get(key)

    async def delete(self, key: str) -> None:
        if self.objects.pop(key, None) is None:
            raise ObjectNotFoundError(key)
        self.types.pop(key, None)


class RecordingMailer:
    """Records messages instead of sending them; addresses in ``fail_for`` bounce."""

    def __init__(self) -> None:
        self.messages: List[dict] = []
        self.fail_for: Set[str] = set()

    async def send(self, to: str, subject: str, text: str, html: str) -> None:
        if to in self.fail_for:
            raise UpstreamFailure("Failed to send email", context=f"bounce for {to}")
        self.messages.append({"to": to, "subject": subject, "text": text, "html": html})


# =============================================================================
# Builders
# =============================================================================

def mint_token(user_id: str, email: Optional[str] = None, audience: str = "authenticated", secret: Optional[str] = None) -> str:
    claims = {
        "sub": user_id,
        "email": email or f"{user_id}@example.com",
        "aud": audience,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(claims, secret or TEST_SETTINGS.jwt_secret, algorithm="HS256")


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(user_id)}"}


def make_pdf(pages: int = 1) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for n in range(pages):
        c.drawString(72, 720, f"Mutual non-disclosure agreement, page {n + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def png_data_url(size=(40, 12)) -> str:
    img = Image.new("RGBA", size, (10, 20, 120, 255))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def token_from(recipient: dict) -> str:
    return recipient["signing_url"].rsplit("/", 1)[-1]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[TEST_SETTINGS.database_name]


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def app(db, storage, mailer):
    application = create_app(TEST_SETTINGS)
    # ASGITransport does not run lifespan; wire state directly
    application.state.db = db
    application.state.storage = storage
    application.state.mailer = mailer
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", headers=auth_headers(USER_A)
    ) as c:
        yield c


@pytest.fixture
async def other_client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test", headers=auth_headers(USER_B)
    ) as c:
        yield c


@pytest.fixture
async def anon_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def make_document(client):
    """Create a document owned by USER_A, optionally with a PDF and recipients."""

    async def _make(title: str = "NDA", pages: int = 1, recipients: Optional[List[dict]] = None, upload: bool = True):
        res = await client.post("/documents", json={"title": title})
        assert res.status_code == 201, res.text
        doc = res.json()
        if upload:
            res = await client.post(
                f"/documents/{doc['id']}/file",
                files={"file": ("nda.pdf", make_pdf(pages), "application/pdf")},
            )
            assert res.status_code == 200, res.text
            doc = res.json()
        added = []
        if recipients:
            res = await client.post(f"/documents/{doc['id']}/recipients", json=recipients)
            assert res.status_code == 201, res.text
            added = res.json()
        return doc, added

    return _make


@pytest.fixture
def place_fields(client):
    async def _place(document_id: str, fields: List[dict]) -> List[dict]:
        res = await client.post(f"/documents/{document_id}/fields", json=fields)
        assert res.status_code == 201, res.text
        return res.json()

    return _place
