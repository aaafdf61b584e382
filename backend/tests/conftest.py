"""
Shared test fixtures for the Traza backend test suite.

Each test gets a fresh SQLite database file, so the in-process delivery queue
can write from its own connections while the test reads through another.
FastAPI's ``get_db`` is pointed at that database, outbound email is captured
by a fake sender, and webhook endpoints are simulated with
``httpx.MockTransport``.
"""

import os
import uuid
from datetime import UTC, datetime, timedelta
from typing import Optional

import factory
import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# ---- Environment overrides MUST come before any app imports ----
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests"
os.environ["SIGNING_TOKEN_SECRET"] = "test-signing-secret-for-unit-tests"
os.environ["FIELD_ENCRYPTION_KEY"] = "test-encryption-key-for-unit-tests"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["ENVIRONMENT"] = "test"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"

from app.auth.models import User  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.esign.models import (  # noqa: E402
    Document,
    DocumentField,
    DocumentStatus,
    FieldType,
    Signature,
    SignatureStatus,
)
from app.esign.tokens import issue_signing_token  # noqa: E402
from app.main import app  # noqa: E402
from app.common.encryption import seal_secret  # noqa: E402
from app.webhooks.models import Webhook  # noqa: E402
from app.webhooks.queue import delivery_queue  # noqa: E402

WEBHOOK_SECRET = "a" * 64
WEBHOOK_URL = "https://hooks.example.com/traza"


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'traza-test.db'}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """Provide a DB session for direct service-layer tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def override_get_db(session_factory):
    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    yield
    app.dependency_overrides.pop(get_db, None)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
class FakeEmailSender:
    """Records every email instead of queueing it. Set ``fail`` to simulate outages."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.fail = False

    async def _record(self, kind: str, kwargs: dict) -> None:
        if self.fail:
            raise ConnectionError("mail broker unavailable")
        self.sent.append((kind, kwargs))

    async def send_signature_request_email(self, **kwargs) -> None:
        await self._record("signature_request", kwargs)

    async def send_reminder_email(self, **kwargs) -> None:
        await self._record("reminder", kwargs)

    async def send_expiration_notice_email(self, **kwargs) -> None:
        await self._record("expiration_notice", kwargs)

    async def send_document_completed_email(self, **kwargs) -> None:
        await self._record("document_completed", kwargs)

    async def send_signature_declined_email(self, **kwargs) -> None:
        await self._record("signature_declined", kwargs)

    def to(self, kind: str) -> list[str]:
        return [kw["to"] for k, kw in self.sent if k == kind]


@pytest.fixture(autouse=True)
def email_sender(monkeypatch) -> FakeEmailSender:
    sender = FakeEmailSender()
    monkeypatch.setattr("app.notifications.service._email_sender", sender)
    return sender


class WebhookReceiver:
    """In-memory webhook endpoint behind ``httpx.MockTransport``."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.raise_error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        code = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(code, text="ok" if code < 300 else "endpoint error")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def events(self) -> list[str]:
        return [r.headers["X-Traza-Event"] for r in self.requests]


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


class Clock:
    """Settable clock for the workers. ``step`` advances it on every read."""

    def __init__(self, now: datetime, step: timedelta = timedelta(0)):
        self.now = now
        self.step = step
        self.reads: list[datetime] = []

    def __call__(self) -> datetime:
        current = self.now
        self.reads.append(current)
        self.now = current + self.step
        return current


@pytest_asyncio.fixture
async def running_queue(session_factory, receiver):
    """Start the shared delivery queue against the test database and receiver."""
    delivery_queue.session_factory = session_factory
    delivery_queue.transport = receiver.transport
    delivery_queue.start()
    yield delivery_queue
    await delivery_queue.stop()
    delivery_queue.session_factory = None
    delivery_queue.transport = None


# ---------------------------------------------------------------------------
# HTTP client fixtures
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def client() -> AsyncClient:
    """Unauthenticated httpx async client wired to the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _auth_header(user: User) -> dict[str, str]:
    now = datetime.now(UTC)
    token = jwt.encode(
        {"sub": str(user.id), "type": "access", "iat": now, "exp": now + timedelta(minutes=30)},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


async def _create_test_user(session_factory, email: str, name: str = "Test Owner") -> User:
    user = User(id=uuid.uuid4(), email=email, name=name, is_active=True)
    async with session_factory() as session:
        session.add(user)
        await session.commit()
        await session.refresh(user)
    return user


@pytest_asyncio.fixture
async def owner(session_factory) -> User:
    return await _create_test_user(session_factory, "owner@traza-test.com", "Olivia Owner")


@pytest_asyncio.fixture
async def other_owner(session_factory) -> User:
    return await _create_test_user(session_factory, "other@traza-test.com", "Oscar Other")


@pytest_asyncio.fixture
async def owner_client(owner: User) -> AsyncClient:
    """AsyncClient pre-authenticated as the document owner."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers.update(_auth_header(owner))
        yield ac


@pytest_asyncio.fixture
async def other_client(other_owner: User) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers.update(_auth_header(other_owner))
        yield ac


# ---------------------------------------------------------------------------
# Factory Boy factories
# ---------------------------------------------------------------------------
class DocumentFactory(factory.Factory):
    class Meta:
        model = dict

    title = factory.Faker("sentence", nb_words=4)
    file_hash = factory.LazyFunction(lambda: uuid.uuid4().hex * 2)


class SignerFactory(factory.Factory):
    class Meta:
        model = dict

    email = factory.LazyFunction(lambda: f"signer-{uuid.uuid4().hex[:8]}@example.com")
    name = factory.Faker("name")


class FieldFactory(factory.Factory):
    class Meta:
        model = dict

    field_type = "SIGNATURE"
    signer_email = factory.LazyFunction(lambda: f"signer-{uuid.uuid4().hex[:8]}@example.com")
    label = factory.Sequence(lambda n: f"Field {n}")
    page = 1
    position_x = 10.0
    position_y = factory.Sequence(lambda n: float(10 + n % 80))
    width = 20.0
    height = 5.0
    required = True
    order = factory.Sequence(lambda n: n)


# ---------------------------------------------------------------------------
# Direct-insert helpers for service and worker tests
# ---------------------------------------------------------------------------
async def create_pending_document(
    session_factory,
    owner: User,
    signers: list[tuple[str, str, int]],
    expires_at: datetime,
    token_expires_at: Optional[datetime] = None,
    title: str = "Master Services Agreement",
    fields: bool = False,
) -> tuple[Document, list[Signature]]:
    """Insert a PENDING document with one signature per ``(email, name, order)``."""
    async with session_factory() as session:
        document = Document(
            id=uuid.uuid4(),
            owner_id=owner.id,
            title=title,
            status=DocumentStatus.pending,
            expires_at=expires_at,
        )
        session.add(document)
        await session.flush()
        signatures = []
        for email, name, order in signers:
            signature_id = uuid.uuid4()
            signature = Signature(
                id=signature_id,
                document_id=document.id,
                signer_email=email,
                signer_name=name,
                order=order,
                status=SignatureStatus.pending,
                token=issue_signing_token(signature_id, document.id, email, 7),
                token_expires_at=token_expires_at or expires_at,
            )
            session.add(signature)
            await session.flush()
            signatures.append(signature)
            if fields:
                session.add(
                    DocumentField(
                        document_id=document.id,
                        signature_id=signature_id,
                        field_type=FieldType.signature,
                        signer_email=email,
                        label=f"Signature of {name}",
                        page=1,
                        position_x=10,
                        position_y=10 + order * 10,
                        width=20,
                        height=5,
                        required=True,
                        order=order,
                    )
                )
        await session.commit()
    return document, signatures


async def create_webhook(
    session_factory,
    owner: User,
    events: Optional[list[str]] = None,
    url: str = WEBHOOK_URL,
    is_active: bool = True,
) -> Webhook:
    async with session_factory() as session:
        webhook = Webhook(
            owner_id=owner.id,
            url=url,
            secret_encrypted=seal_secret(WEBHOOK_SECRET),
            events=events or ["document.signed", "document.completed"],
            is_active=is_active,
        )
        session.add(webhook)
        await session.commit()
        await session.refresh(webhook)
    return webhook
