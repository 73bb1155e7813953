from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel, create_engine

from app.core.article_sync_config import ArticleSyncConfig
from app.models import DistributedLock, SyncedArticle  # noqa: F401  регистрация таблиц
from app.services.article_store import SqlArticleStore
from app.services.content_source.base import ContentSource
from app.services.content_source.models import SourcePage
from app.services.locks.manager import LockManager
from app.services.locks.store import SqlLockStore
from app.services.retry import RetryPolicy

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Управляемые часы для проверки истечения аренды."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeSource(ContentSource):
    """
    Источник статей в памяти. Курсор равен смещению.
    errors выбрасываются по одной перед очередными запросами страницы.
    """

    def __init__(self, items: List[Dict[str, Any]], errors: Optional[List[Exception]] = None, on_page=None):
        self.items = items
        self.errors = list(errors or [])
        self.on_page = on_page
        self.calls = 0
        self.cancel_event = None

    def bind_cancel_event(self, cancel_event):
        self.cancel_event = cancel_event

    def fetch_page(self, cursor: Optional[str], page_size: int) -> SourcePage:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        offset = int(cursor) if cursor else 0
        chunk = self.items[offset:offset + page_size]
        next_offset = offset + page_size
        if self.on_page is not None:
            self.on_page(self.calls)
        return SourcePage(
            items=[dict(item) for item in chunk],
            next_cursor=str(next_offset) if next_offset < len(self.items) else None,
            total=len(self.items),
        )


def make_item(index: int, **overrides) -> Dict[str, Any]:
    """Статья в формате источника; чем больше index, тем старше публикация."""
    item = {
        "external_id": f"msg-{index}:1",
        "title": f"Статья {index}",
        "author": "Редакция",
        "digest": f"Кратко о статье {index}",
        "content": f"<p>Текст статьи {index}</p>",
        "source_url": f"https://example.com/a/{index}",
        "cover_url": f"https://example.com/c/{index}.jpg",
        "published_at": (BASE_TIME - timedelta(days=index)).isoformat(),
        "is_deleted": False,
    }
    item.update(overrides)
    return item


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'article_sync.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lock_store(session_factory):
    return SqlLockStore(session_factory)


@pytest.fixture
def lock_manager(lock_store, clock):
    return LockManager(lock_store, clock=clock)


@pytest.fixture
def article_store(session_factory):
    return SqlArticleStore(session_factory)


@pytest.fixture
def sync_config():
    return ArticleSyncConfig(page_size=3, max_item_limit=100, lock_ttl_seconds=60)


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False)
