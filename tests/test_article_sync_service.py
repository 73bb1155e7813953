import threading
from datetime import timedelta
from unittest import mock

import pytest

from app.models.synced_article import ArticleStatus
from app.schemas.article_sync import RunState, SyncOptions
from app.services.article_store import SqlArticleStore
from app.services.article_sync_service import ArticleSyncService, compute_content_hash
from app.services.content_source.models import SourceArticle
from app.services.retry import RetryPolicy
from app.services.sync_errors import (
    ItemWriteError,
    SourceAuthError,
    SourceRateLimitError,
    StoreError,
    TransientSourceError,
)
from tests.conftest import BASE_TIME, FakeSource, make_item

LOCK_KEY = "sync:acc1"


class RacingStore(SqlArticleStore):
    """find не видит строку, которую вставил параллельный процесс."""

    def find(self, account_id, external_id):
        return None


class FailingUpdateStore(SqlArticleStore):
    def update_if_changed(self, account_id, article, content_hash, status, now):
        raise ItemWriteError(f"Ошибка обновления статьи {article.external_id}: value too long")


class FailingInsertStore(SqlArticleStore):
    def insert(self, account_id, article, content_hash, status, now):
        if article.external_id == "msg-2:1":
            raise ItemWriteError(f"Ошибка вставки статьи {article.external_id}: value too long")
        return super().insert(account_id, article, content_hash, status, now)


class BrokenStore(SqlArticleStore):
    def find(self, account_id, external_id):
        raise StoreError("Хранилище статей недоступно")


@pytest.fixture
def make_service(lock_manager, article_store, sync_config, fast_retry, clock):
    def factory(source, store=None, dispatcher=None, retry_policy=None):
        return ArticleSyncService(
            lock_manager=lock_manager,
            article_store=store or article_store,
            source=source,
            config=sync_config,
            retry_policy=retry_policy or fast_retry,
            dispatcher=dispatcher,
            clock=clock,
        )
    return factory


def recent(limit):
    return SyncOptions(scope="recent", item_limit=limit)


def test_recent_scope_respects_limit_and_resync_skips(make_service, lock_manager, article_store):
    source = FakeSource([make_item(i) for i in range(1, 8)])
    service = make_service(source)

    first = service.run("acc1", recent(5))

    assert first.success is True
    assert first.state == RunState.COMPLETED
    assert first.stats.model_dump() == {"total": 5, "created": 5, "updated": 0, "skipped": 0, "failed": 0}
    assert article_store.count("acc1") == 5
    assert not lock_manager.is_held(LOCK_KEY)

    second = service.run("acc1", recent(5))

    assert second.stats.model_dump() == {"total": 5, "created": 0, "updated": 0, "skipped": 5, "failed": 0}
    assert article_store.count("acc1") == 5


def test_changed_content_is_updated(make_service, article_store, clock):
    items = [make_item(i) for i in range(1, 4)]
    make_service(FakeSource(items)).run("acc1", {"scope": "all"})
    first_sync = article_store.last_updated_at("acc1")

    items[1] = make_item(2, content="<p>Исправленный текст</p>")
    clock.advance(60)
    result = make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    assert result.stats.updated == 1
    assert result.stats.skipped == 2
    assert article_store.last_updated_at("acc1") == first_sync + timedelta(seconds=60)


def test_malformed_item_does_not_stop_the_run(make_service, article_store):
    items = [make_item(i) for i in range(1, 11)]
    items[4] = make_item(5, external_id="")
    result = make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    assert result.state == RunState.COMPLETED
    assert result.stats.total == 10
    assert result.stats.failed == 1
    assert result.stats.created == 9
    assert len(result.errors) == 1
    assert result.errors[0].reason == "malformed_payload"
    assert result.errors[0].title == "Статья 5"
    assert article_store.count("acc1") == 9


def test_non_string_external_id_fails_only_that_item(make_service, article_store):
    items = [make_item(i) for i in range(1, 11)]
    items[2] = make_item(3, external_id=12345)

    result = make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    assert result.state == RunState.COMPLETED
    assert result.stats.failed == 1
    assert result.stats.created == 9
    assert result.errors[0].external_id == "12345"
    assert result.errors[0].reason == "malformed_payload"
    assert article_store.count("acc1") == 9


def test_insert_error_fails_only_that_item(make_service, session_factory, article_store):
    items = [make_item(i) for i in range(1, 4)]

    result = make_service(FakeSource(items), store=FailingInsertStore(session_factory)).run("acc1", {"scope": "all"})

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 2
    assert result.stats.failed == 1
    assert result.errors[0].external_id == "msg-2:1"
    assert result.errors[0].reason == "item_write_failed"
    assert article_store.find("acc1", "msg-2:1") is None


def test_write_error_marks_existing_article_failed(make_service, session_factory, article_store):
    items = [make_item(1), make_item(2)]
    make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    items[0] = make_item(1, title="Слишком длинный заголовок")
    result = make_service(FakeSource(items), store=FailingUpdateStore(session_factory)).run("acc1", {"scope": "all"})

    assert result.state == RunState.COMPLETED
    assert result.stats.failed == 1
    assert result.stats.skipped == 1
    assert result.errors[0].external_id == "msg-1:1"
    assert result.errors[0].reason == "item_write_failed"
    assert article_store.find("acc1", "msg-1:1").status == ArticleStatus.FAILED


def test_run_is_denied_while_another_run_holds_the_lock(make_service, lock_manager, article_store):
    other = lock_manager.try_acquire(LOCK_KEY, 600)
    source = FakeSource([make_item(1)])

    result = make_service(source).run("acc1", recent(5))

    assert result.success is False
    assert result.state == RunState.DENIED
    assert result.reason == "locked"
    assert source.calls == 0
    assert article_store.count("acc1") == 0
    assert lock_manager.is_held(LOCK_KEY)
    assert lock_manager.release(LOCK_KEY, other.holder_id) is True


def test_bypass_lock_runs_without_taking_over_the_lock(make_service, lock_manager):
    other = lock_manager.try_acquire(LOCK_KEY, 600)

    result = make_service(FakeSource([make_item(1)])).run(
        "acc1", {"scope": "recent", "item_limit": 5, "bypass_lock": True}
    )

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 1
    assert lock_manager.release(LOCK_KEY, other.holder_id) is True


def test_cancellation_releases_the_lock(make_service, lock_manager):
    cancel_event = threading.Event()

    def on_page(call):
        if call == 2:
            cancel_event.set()

    source = FakeSource([make_item(i) for i in range(1, 10)], on_page=on_page)
    result = make_service(source).run("acc1", {"scope": "all"}, cancel_event=cancel_event)

    assert result.state == RunState.CANCELLED
    assert result.reason == "cancelled"
    assert result.stats.created == 3
    assert not lock_manager.is_held(LOCK_KEY)


def test_service_cancel_stops_the_run(make_service, lock_manager):
    service = None

    def on_page(call):
        if call == 1:
            service.cancel()

    source = FakeSource([make_item(i) for i in range(1, 10)], on_page=on_page)
    service = make_service(source)

    result = service.run("acc1", {"scope": "all"})

    assert result.state == RunState.CANCELLED
    assert result.stats.created == 0
    assert source.calls == 1
    assert not lock_manager.is_held(LOCK_KEY)


def test_source_gets_the_run_cancel_event(make_service):
    source = FakeSource([make_item(1)])
    service = make_service(source)

    service.run("acc1", {"scope": "all"})
    assert source.cancel_event is service.cancel_event

    cancel_event = threading.Event()
    service.run("acc1", {"scope": "all"}, cancel_event=cancel_event)
    assert source.cancel_event is cancel_event


def test_lost_lease_aborts_the_run(make_service, lock_manager):
    def steal(call):
        if call == 1:
            lock_manager.force_release(LOCK_KEY)
            lock_manager.try_acquire(LOCK_KEY, 600)

    source = FakeSource([make_item(i) for i in range(1, 10)], on_page=steal)
    result = make_service(source).run("acc1", {"scope": "all"})

    assert result.success is False
    assert result.state == RunState.ABORTED_LOCK_LOST
    assert result.reason == "lost lock"
    assert result.stats.created == 3
    assert source.calls == 1
    # Чужая аренда не снимается при завершении
    assert lock_manager.is_held(LOCK_KEY)


@pytest.mark.parametrize("account_id, options", [
    ("acc1", {"scope": "recent"}),
    ("acc1", {"scope": "recent", "item_limit": 0}),
    ("acc1", {"scope": "recent", "item_limit": 101}),
    ("acc1", {"scope": "custom"}),
    ("acc1", {"scope": "custom", "custom_range": {"start": "2026-01-02T00:00:00", "end": "2026-01-01T00:00:00"}}),
    ("acc1", {"scope": "everything"}),
    ("", {"scope": "all"}),
    ("acc1", None),
])
def test_invalid_options_are_rejected_before_locking(make_service, lock_manager, account_id, options):
    source = FakeSource([make_item(1)])

    result = make_service(source).run(account_id, options)

    assert result.success is False
    assert result.state == RunState.INVALID
    assert result.reason == "invalid_options"
    assert source.calls == 0
    assert lock_manager.list_locks() == []


def test_custom_range_stops_at_older_items(make_service, article_store):
    source = FakeSource([make_item(i) for i in range(1, 10)])
    options = {
        "scope": "custom",
        "custom_range": {
            "start": (BASE_TIME - timedelta(days=4, hours=1)).isoformat(),
            "end": (BASE_TIME - timedelta(days=2) + timedelta(hours=1)).isoformat(),
        },
    }

    result = make_service(source).run("acc1", options)

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 3
    assert result.stats.total == 3
    assert article_store.find("acc1", "msg-1:1") is None
    assert article_store.find("acc1", "msg-5:1") is None
    assert source.calls == 2


def test_custom_range_skips_items_without_publish_date(make_service, article_store):
    items = [make_item(i) for i in range(1, 10)]
    items[2] = make_item(3, published_at=None)
    options = {
        "scope": "custom",
        "custom_range": {
            "start": (BASE_TIME - timedelta(days=4, hours=1)).isoformat(),
            "end": (BASE_TIME - timedelta(days=2) + timedelta(hours=1)).isoformat(),
        },
    }

    result = make_service(FakeSource(items)).run("acc1", options)

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 2
    assert result.stats.total == 2
    assert article_store.find("acc1", "msg-3:1") is None


@pytest.mark.parametrize("policy, state, created, updated, skipped, failed", [
    ("skip", RunState.COMPLETED, 0, 0, 1, 0),
    ("update", RunState.COMPLETED, 0, 1, 0, 0),
    ("fail", RunState.ABORTED_FATAL, 0, 0, 0, 1),
])
def test_duplicate_policy_on_insert_race(make_service, session_factory, article_store,
                                         policy, state, created, updated, skipped, failed):
    existing = SourceArticle.model_validate(make_item(1))
    article_store.insert("acc1", existing, "hash-from-other-process", ArticleStatus.ACTIVE, BASE_TIME)

    result = make_service(FakeSource([make_item(1)]), store=RacingStore(session_factory)).run(
        "acc1", {"scope": "all", "duplicate_policy": policy}
    )

    assert result.state == state
    assert (result.stats.created, result.stats.updated, result.stats.skipped, result.stats.failed) == (
        created, updated, skipped, failed
    )
    if policy == "fail":
        assert result.reason == "duplicate"
        assert result.errors[0].reason == "duplicate"
    if policy == "skip":
        assert article_store.find("acc1", "msg-1:1").content_hash == "hash-from-other-process"


def test_deleted_items(make_service, article_store):
    items = [make_item(1), make_item(2)]
    make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    items = [make_item(1, is_deleted=True), make_item(2), make_item(3, is_deleted=True)]
    result = make_service(FakeSource(items)).run("acc1", {"scope": "all"})

    assert result.stats.updated == 1
    assert result.stats.skipped == 2
    assert article_store.find("acc1", "msg-1:1").status == ArticleStatus.ARCHIVED
    assert article_store.find("acc1", "msg-3:1") is None

    result = make_service(FakeSource(items)).run("acc1", {"scope": "all", "include_deleted": True})

    assert result.stats.created == 1
    assert article_store.find("acc1", "msg-3:1").status == ArticleStatus.ARCHIVED


def test_transient_source_errors_are_retried(make_service):
    source = FakeSource([make_item(1)], errors=[TransientSourceError("timeout"), TransientSourceError("HTTP 502")])

    result = make_service(source).run("acc1", recent(5))

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 1
    assert source.calls == 3


def test_exhausted_transient_errors_abort_and_release_lock(make_service, lock_manager, article_store):
    errors = [TransientSourceError("HTTP 502") for _ in range(3)]
    source = FakeSource([make_item(1)], errors=errors)

    result = make_service(source).run("acc1", recent(5))

    assert result.success is False
    assert result.state == RunState.ABORTED_FATAL
    assert result.reason == "source_unavailable"
    assert source.calls == 3
    assert article_store.count("acc1") == 0
    assert not lock_manager.is_held(LOCK_KEY)


def test_rate_limit_retry_after_is_honoured(make_service):
    source = FakeSource([make_item(1)], errors=[SourceRateLimitError(retry_after=7.0)])
    policy = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=30.0, jitter=False)

    with mock.patch.object(RetryPolicy, "_wait") as wait:
        result = make_service(source, retry_policy=policy).run("acc1", recent(5))

    assert result.state == RunState.COMPLETED
    assert result.stats.created == 1
    assert source.calls == 2
    assert wait.call_count == 1
    assert wait.call_args.args[0] == 7.0


def test_auth_error_aborts_and_releases_lock(make_service, lock_manager):
    source = FakeSource([make_item(1)], errors=[SourceAuthError("errcode=40001")])

    result = make_service(source).run("acc1", recent(5))

    assert result.state == RunState.ABORTED_FATAL
    assert result.reason == "source_auth"
    assert source.calls == 1
    assert not lock_manager.is_held(LOCK_KEY)


def test_store_error_aborts_and_releases_lock(make_service, session_factory, lock_manager):
    result = make_service(FakeSource([make_item(1)]), store=BrokenStore(session_factory)).run("acc1", recent(5))

    assert result.state == RunState.ABORTED_FATAL
    assert result.reason == "store_error"
    assert not lock_manager.is_held(LOCK_KEY)


def test_async_run_is_dispatched(make_service, lock_manager):
    calls = []

    def dispatcher(account_id, options):
        calls.append((account_id, options))
        return "task-42"

    source = FakeSource([make_item(1)])
    result = make_service(source, dispatcher=dispatcher).run("acc1", {"scope": "all", "async": True})

    assert result.success is True
    assert result.state == RunState.QUEUED
    assert result.task_id == "task-42"
    assert calls[0][0] == "acc1"
    assert calls[0][1].run_async is False
    assert source.calls == 0
    assert lock_manager.list_locks() == []


def test_get_status(make_service, lock_manager, clock):
    service = make_service(FakeSource([make_item(1), make_item(2)]))
    service.run("acc1", {"scope": "all"})

    status = service.get_status("acc1")
    assert status.is_syncing is False
    assert status.article_count == 2
    assert status.last_synced_at == clock.now

    lock_manager.try_acquire(LOCK_KEY, 60)
    assert service.get_status("acc1").is_syncing is True


def test_content_hash_ignores_whitespace_only_changes():
    base = SourceArticle.model_validate(make_item(1, content="<p>Текст  статьи</p>\n"))
    same = SourceArticle.model_validate(make_item(1, content="<p>Текст статьи</p>"))
    other = SourceArticle.model_validate(make_item(1, title="Другой заголовок"))

    assert compute_content_hash(base) == compute_content_hash(same)
    assert compute_content_hash(base) != compute_content_hash(other)
    assert len(compute_content_hash(base)) == 64
