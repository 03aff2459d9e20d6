"""Shared pytest fixtures for test suite"""
import pytest
import sys
from pathlib import Path
from typing import Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from mailcast.container import build_container
from mailcast.core.config import Settings
from mailcast.main import app
from mailcast.models import Base
from mailcast.models.member import Member, Newsletter
from mailcast.models.post import Post
from mailcast.models.user import User
from mailcast.services.resend_client import EmailPage, SentEmail


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeResendClient:
    """In-memory stand-in for ResendClient

    Each submitted batch gets one id per message unless a behaviour for that
    call is queued: a list of ids (None for a rejected slot) or an exception.
    """

    def __init__(self):
        self.batches: List[Dict] = []
        self.batch_results: List = []
        self.pages: List[EmailPage] = []
        self.list_calls: List[Dict] = []
        self.list_error: Optional[Exception] = None
        self._next_id = 1

    async def send_batch(self, messages, idempotency_key=None):
        self.batches.append({"messages": messages, "idempotency_key": idempotency_key})
        if self.batch_results:
            result = self.batch_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        ids = []
        for _ in messages:
            ids.append(f"email_{self._next_id}")
            self._next_id += 1
        return ids

    async def list_emails(self, limit=100, after=None):
        self.list_calls.append({"limit": limit, "after": after})
        if self.list_error:
            raise self.list_error
        if not self.pages:
            return EmailPage(items=[], has_more=False, next_cursor=None)
        return self.pages.pop(0)

    def sent_ids(self) -> List[str]:
        return [f"email_{i}" for i in range(1, self._next_id)]


def make_page(events, has_more=False) -> EmailPage:
    """Provider listing page from (email_id, last_event) pairs"""
    items = [
        SentEmail(
            id=email_id,
            last_event=last_event,
            created_at="2026-01-05 10:00:00.000000+00",
            raw={"id": email_id, "last_event": last_event}
        )
        for email_id, last_event in events
    ]
    return EmailPage(items=items, has_more=has_more, next_cursor=items[-1].id if items else None)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    """Configured provider, fast batches, scheduler loop off"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        RESEND_API_KEY="re_test_key",
        RESEND_FROM_EMAIL="News <news@example.com>",
        RESEND_REPLY_TO="",
        CAMPAIGN_BATCH_DELAY_SECONDS=1.1,
        SCHEDULER_ENABLED=False,
    )


@pytest.fixture(scope="function")
def fake_resend() -> FakeResendClient:
    return FakeResendClient()


@pytest.fixture(scope="function")
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(scope="function")
def container(db_session, test_settings, fake_resend, recording_sleep):
    """Composition root wired to the test database and the fake provider"""
    return build_container(
        test_settings,
        test_engine,
        TestSessionLocal,
        client_factory=lambda: fake_resend,
        sleep=recording_sleep
    )


@pytest.fixture(scope="function")
def client(container) -> Generator[TestClient, None, None]:
    """FastAPI test client using the test container"""
    app.state.container = container
    try:
        with TestClient(app) as test_client:
            test_client.headers.update({"X-Staff-User-Id": "1"})
            yield test_client
    finally:
        del app.state.container


@pytest.fixture(scope="function")
def staff_user(db_session: Session) -> User:
    user = User(email="editor@example.com", name="Editor", status="active")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def published_post(db_session: Session) -> Post:
    post = Post(
        title="Weekly digest",
        email_subject="This week in review",
        html="<p>Hello</p>",
        plaintext="Hello",
        status="published"
    )
    db_session.add(post)
    db_session.commit()
    db_session.refresh(post)
    return post


@pytest.fixture(scope="function")
def draft_post(db_session: Session) -> Post:
    post = Post(title="Unfinished", status="draft")
    db_session.add(post)
    db_session.commit()
    db_session.refresh(post)
    return post


@pytest.fixture(scope="function")
def newsletter(db_session: Session) -> Newsletter:
    newsletter = Newsletter(name="Default newsletter", status="active")
    db_session.add(newsletter)
    db_session.commit()
    db_session.refresh(newsletter)
    return newsletter


def add_member(db_session: Session, email: str, status: str = "free", newsletter=None,
               name: Optional[str] = None, email_disabled: bool = False) -> Member:
    member = Member(email=email, name=name, status=status, email_disabled=email_disabled)
    if newsletter is not None:
        member.newsletters.append(newsletter)
    db_session.add(member)
    db_session.commit()
    db_session.refresh(member)
    return member


@pytest.fixture(scope="function")
def subscribers(db_session: Session, newsletter, staff_user) -> List[Member]:
    """Three eligible newsletter members"""
    return [
        add_member(db_session, "ada@example.com", "free", newsletter, name="Ada"),
        add_member(db_session, "grace@example.com", "paid", newsletter, name="Grace"),
        add_member(db_session, "linus@example.com", "comped", newsletter, name="Linus"),
    ]


class _NoDispatch:
    def dispatch_now(self, campaign_id):
        return None


def confirmed_campaign(container, db_session, post, audience="newsletter_members") -> str:
    """Create and confirm a campaign without starting the one-shot dispatch"""
    service = container.campaigns
    created = service.create_campaign(post.id, audience, db_session)
    service.scheduler = _NoDispatch()
    service.confirm_campaign(post.id, created["id"], created["confirmation_token"], db_session)
    return created["id"]


def reload(db_session: Session, model, **filters) -> list:
    db_session.expire_all()
    return db_session.query(model).filter_by(**filters).all()
