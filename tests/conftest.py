"""Общие фикстуры тестов"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.models import Base, Digest, DigestTemplate
from app.repositories.digest_store import DigestStore
from app.services.email.provider import (
    BaseEmailProvider, EmailMessage, ProviderAuthError, ProviderDeliveryError,
)
from app.services.events.models import DigestEvent, EventBatch

# SQLite in-memory для тестов
TEST_DATABASE_URL = "sqlite+aiosqlite://"

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_event(
    uid: str,
    timestamp: str = "2025-03-10T08:00:00Z",
    event_type: str = "file.share",
    account_id: str = "acc-1",
    data: Optional[Dict[str, Any]] = None,
    application: str = "drive",
    environment: str = "production",
    user_id: Optional[str] = None,
) -> DigestEvent:
    return DigestEvent.from_dict({
        "eventId": uid,
        "timestamp": timestamp,
        "eventType": event_type,
        "scope": {"accountId": account_id},
        "actor": {"userId": user_id} if user_id else {},
        "source": {"application": application, "environment": environment},
        "payload": data or {},
    })


class FakeEmailProvider(BaseEmailProvider):
    """Почтовый провайдер в памяти: запоминает письма, умеет падать на заданных адресах"""

    def __init__(self, fail_for: Optional[List[str]] = None, auth_error: bool = False):
        super().__init__("fake", {})
        self.fail_for = set(fail_for or [])
        self.auth_error = auth_error
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> str:
        if self.auth_error:
            raise ProviderAuthError(status_code=401)
        if message.to in self.fail_for:
            raise ProviderDeliveryError(f"mailbox {message.to} unavailable", 422)
        self.sent.append(message)
        return f"msg-{len(self.sent)}-{message.to}"

    def is_available(self) -> bool:
        return True


class FakeEventClient:
    """Шина событий в памяти"""

    def __init__(self, events: Optional[List[DigestEvent]] = None, error: Optional[Exception] = None):
        self.events = list(events or [])
        self.error = error
        self.truncated = False
        self.emit_error: Optional[Exception] = None
        self.fetch_calls: List[Dict[str, Any]] = []
        self.emitted: List[Dict[str, Any]] = []

    async def fetch_events_since(self, last_uid, since_timestamp_ms, account_id=None, event_types=None):
        self.fetch_calls.append({
            "last_uid": last_uid,
            "since_timestamp_ms": since_timestamp_ms,
            "account_id": account_id,
            "event_types": event_types,
        })
        if self.error is not None:
            raise self.error
        return EventBatch(self.events, truncated=self.truncated)

    async def emit_event(self, event_type, account_id, data, metadata=None):
        if self.emit_error is not None:
            raise self.emit_error
        self.emitted.append({"event_type": event_type, "account_id": account_id, "data": data})


@pytest.fixture
async def session_factory():
    """Свежая in-memory БД на каждый тест"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture
def store(session_factory) -> DigestStore:
    return DigestStore(session_factory)


@pytest.fixture
def add_digest(session_factory):
    """Создать шаблон и дайджест; возвращает id дайджеста"""

    async def _add(digest_id: str = "dg-1", with_template: bool = True, **overrides: Any) -> str:
        async with session_factory() as session:
            if with_template:
                session.add(DigestTemplate(
                    id=f"tpl-{digest_id}",
                    name="Default",
                    subject_template="{{ digest.name }}: {{ eventsCount }} событий",
                    body_html_template="<ul>{% for e in events %}<li>{{ e.eventType }}</li>{% endfor %}</ul>",
                    body_text_template="{% for e in events %}- {{ e.eventType }}\n{% endfor %}",
                ))
            values = {
                "id": digest_id,
                "name": "Weekly shares",
                "account_id": "acc-1",
                "filters": {},
                "schedule": "0 9 * * *",
                "recipients": ["a@example.com"],
                "test_recipients": ["qa@example.com"],
                "template_id": f"tpl-{digest_id}",
                "is_active": True,
                "is_paused": False,
            }
            values.update(overrides)
            session.add(Digest(**values))
            await session.commit()
        return digest_id

    return _add


def naive(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite хранит время без часового пояса"""
    if value is None:
        return None
    return value.replace(tzinfo=None)
