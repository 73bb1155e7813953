"""
API endpoints для запуска синхронизации статей и управления блокировками.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from app.schemas.article_sync import LockInfo, RunState, SyncResult, SyncStatus, TaskStatus
from app.services.article_store import ArticleStore
from app.services.article_sync_service import (
    ArticleSyncService,
    build_article_store,
    build_lock_manager,
    get_article_sync_service,
    read_sync_status,
)
from app.services.article_sync_tasks import SyncTaskControl
from app.services.locks.manager import LockManager
from app.services.sync_errors import StoreError, SyncValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_BY_STATE = {
    RunState.COMPLETED: status.HTTP_200_OK,
    RunState.QUEUED: status.HTTP_202_ACCEPTED,
    RunState.DENIED: status.HTTP_409_CONFLICT,
    RunState.INVALID: status.HTTP_422_UNPROCESSABLE_ENTITY,
}

ServiceFactory = Callable[[str], ArticleSyncService]


def get_lock_manager() -> LockManager:
    return build_lock_manager()


def get_article_store() -> ArticleStore:
    return build_article_store()


def get_task_control() -> SyncTaskControl:
    return SyncTaskControl()


def get_service_factory() -> ServiceFactory:
    """Фабрика сервиса синхронизации для аккаунта."""
    return get_article_sync_service


def _build_service(factory: ServiceFactory, account_id: str) -> ArticleSyncService:
    try:
        return factory(account_id)
    except SyncValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)


@router.post("/{account_id}", response_model=SyncResult, summary="Синхронизация статей аккаунта")
def sync_account(
    account_id: str,
    options: Optional[Dict[str, Any]] = Body(default=None),
    factory: ServiceFactory = Depends(get_service_factory)
):
    """
    Запустить синхронизацию статей аккаунта.

    Коды ответа: 200 завершено, 202 поставлено в очередь (async=true),
    409 синхронизация уже выполняется, 422 некорректные параметры,
    503 запуск прерван.
    """
    service = _build_service(factory, account_id)
    result = service.run(account_id, options)
    status_code = STATUS_BY_STATE.get(result.state, status.HTTP_503_SERVICE_UNAVAILABLE)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.get("/locks", response_model=List[LockInfo], summary="Список блокировок")
def list_locks(lock_manager: LockManager = Depends(get_lock_manager)):
    now = lock_manager.clock()
    try:
        locks = lock_manager.list_locks()
    except StoreError as e:
        logger.error(f"Ошибка получения списка блокировок: {e.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return [
        LockInfo(
            lock_key=lock.lock_key,
            holder_id=lock.holder_id,
            expire_time=lock.expire_time,
            created_at=lock.created_at,
            is_expired=lock.is_expired(now),
        )
        for lock in locks
    ]


@router.delete("/locks/expired", summary="Удалить истекшие блокировки")
def purge_expired_locks(lock_manager: LockManager = Depends(get_lock_manager)):
    try:
        removed = lock_manager.purge_expired()
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return {"status": "success", "removed": removed}


@router.delete("/locks/{lock_key}", summary="Принудительно снять блокировку")
def force_release_lock(lock_key: str, lock_manager: LockManager = Depends(get_lock_manager)):
    """
    Снять блокировку без проверки владельца.
    Выполняющийся запуск обнаружит потерю аренды при следующем продлении.
    """
    try:
        removed = lock_manager.force_release(lock_key)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Блокировка {lock_key} не найдена")
    return {"status": "success", "lock_key": lock_key}


@router.get("/tasks/{task_id}", response_model=TaskStatus, summary="Состояние фоновой синхронизации")
def get_task_status(task_id: str, control: SyncTaskControl = Depends(get_task_control)):
    return control.status(task_id)


@router.delete("/tasks/{task_id}", status_code=status.HTTP_202_ACCEPTED, summary="Отменить фоновую синхронизацию")
def cancel_task(task_id: str, control: SyncTaskControl = Depends(get_task_control)):
    """
    Отменить задачу из очереди или выполняющуюся синхронизацию.
    Выполняющийся запуск завершится состоянием cancelled на ближайшей границе страницы.
    """
    control.cancel(task_id)
    return {"status": "cancelling", "task_id": task_id}


@router.get("/{account_id}/status", response_model=SyncStatus, summary="Состояние синхронизации аккаунта")
def get_sync_status(
    account_id: str,
    lock_manager: LockManager = Depends(get_lock_manager),
    article_store: ArticleStore = Depends(get_article_store)
):
    try:
        return read_sync_status(account_id, lock_manager, article_store)
    except StoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
