import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.v1.api import api_router
from app.api.v1.routers import article_sync as router_module
from app.schemas.article_sync import RunState, SyncResult, TaskStatus
from app.services.article_sync_service import ArticleSyncService
from app.services.sync_errors import StoreError, SyncValidationError
from tests.conftest import FakeSource, make_item


@pytest.fixture
def source():
    return FakeSource([make_item(i) for i in range(1, 5)])


class FakeTaskControl:
    def __init__(self):
        self.cancelled = []

    def status(self, task_id):
        result = SyncResult(success=False, state=RunState.CANCELLED, reason="cancelled", account_id="acc1")
        return TaskStatus(task_id=task_id, state="SUCCESS", ready=True, result=result)

    def cancel(self, task_id):
        self.cancelled.append(task_id)


@pytest.fixture
def task_control():
    return FakeTaskControl()


@pytest.fixture
def api(lock_manager, article_store, sync_config, fast_retry, clock, source, task_control):
    def factory(account_id):
        if account_id == "unknown":
            raise SyncValidationError(f"Не найдены учетные данные для аккаунта {account_id}")
        return ArticleSyncService(
            lock_manager=lock_manager,
            article_store=article_store,
            source=source,
            config=sync_config,
            retry_policy=fast_retry,
            dispatcher=lambda account_id, options: "task-1",
            clock=clock,
        )

    app = FastAPI()
    app.include_router(api_router, prefix="/api")
    app.dependency_overrides[router_module.get_service_factory] = lambda: factory
    app.dependency_overrides[router_module.get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[router_module.get_article_store] = lambda: article_store
    app.dependency_overrides[router_module.get_task_control] = lambda: task_control
    return TestClient(app)


def test_sync_completed(api):
    resp = api.post("/api/article-sync/acc1", json={"scope": "recent", "item_limit": 3})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["state"] == "completed"
    assert body["stats"]["created"] == 3


def test_sync_queued(api):
    resp = api.post("/api/article-sync/acc1", json={"scope": "all", "async": True})

    assert resp.status_code == 202
    assert resp.json()["task_id"] == "task-1"


def test_sync_denied_when_locked(api, lock_manager):
    lock_manager.try_acquire("sync:acc1", 600)

    resp = api.post("/api/article-sync/acc1", json={"scope": "all"})

    assert resp.status_code == 409
    assert resp.json()["reason"] == "locked"


def test_sync_invalid_options(api):
    resp = api.post("/api/article-sync/acc1", json={"scope": "recent"})

    assert resp.status_code == 422
    assert resp.json()["reason"] == "invalid_options"


def test_unknown_account(api):
    resp = api.post("/api/article-sync/unknown", json={"scope": "all"})

    assert resp.status_code == 422


def test_sync_aborted_maps_to_503(api, source):
    source.errors = [StoreError("Хранилище недоступно")]

    resp = api.post("/api/article-sync/acc1", json={"scope": "all"})

    assert resp.status_code == 503
    assert resp.json()["state"] == "aborted_fatal"


def test_status(api, lock_manager):
    api.post("/api/article-sync/acc1", json={"scope": "all"})
    lock_manager.try_acquire("sync:acc1", 600)

    resp = api.get("/api/article-sync/acc1/status")

    assert resp.status_code == 200
    assert resp.json()["is_syncing"] is True
    assert resp.json()["article_count"] == 4


def test_lock_admin_endpoints(api, lock_manager, clock):
    lock_manager.try_acquire("sync:old", 10)
    lock_manager.try_acquire("sync:live", 600)
    clock.advance(11)

    locks = api.get("/api/article-sync/locks").json()
    assert {lock["lock_key"]: lock["is_expired"] for lock in locks} == {"sync:old": True, "sync:live": False}

    assert api.delete("/api/article-sync/locks/expired").json()["removed"] == 1
    assert api.delete("/api/article-sync/locks/sync:live").status_code == 200
    assert api.delete("/api/article-sync/locks/sync:live").status_code == 404


def test_task_status_and_cancel(api, task_control):
    resp = api.get("/api/article-sync/tasks/task-1")

    assert resp.status_code == 200
    assert resp.json()["ready"] is True
    assert resp.json()["result"]["state"] == "cancelled"

    resp = api.delete("/api/article-sync/tasks/task-1")

    assert resp.status_code == 202
    assert resp.json() == {"status": "cancelling", "task_id": "task-1"}
    assert task_control.cancelled == ["task-1"]
