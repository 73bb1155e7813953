"""
Celery задачи синхронизации статей.
Включает фоновый запуск синхронизации аккаунта, синхронизацию всех аккаунтов
и периодическую очистку истекших блокировок.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from celery import group
from celery.result import AsyncResult

from app.celery_shared import celery
import app.celery_logging  # noqa: F401  регистрирует настройку логирования воркера
from app.core.config import settings
from app.schemas.article_sync import RunState, SyncOptions, SyncResult, TaskStatus
from app.services.article_sync_service import build_lock_manager, get_article_sync_service
from app.services.sync_errors import LockStoreError, SyncValidationError
from app.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("article.sync")

# Сигнал, которым revoke(terminate=True) просит задачу завершиться
CANCEL_SIGNAL = signal.SIGUSR1


@contextmanager
def cancel_on_signal(cancel_event: threading.Event, signum: int = CANCEL_SIGNAL) -> Iterator[None]:
    """
    На время блока сигнал signum устанавливает cancel_event вместо завершения процесса.

    Запуск видит событие на ближайшей границе страницы или в ожидании rate limiter
    и завершается состоянием cancelled, снимая блокировку. Обработчик ставится
    только в главном потоке, предыдущий обработчик восстанавливается.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(received, frame):
        cancel_event.set()

    previous = signal.signal(signum, _handler)
    try:
        yield
    finally:
        signal.signal(signum, previous)


@celery.task(
    bind=True,
    name="app.services.article_sync_tasks.run_article_sync",
)
def run_article_sync(self, account_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
    """
    Фоновая синхронизация статей аккаунта.

    Повторы на уровне Celery не выполняются: временные ошибки источника уже
    повторяются внутри запуска, а отказ из-за занятой блокировки повторять не нужно.

    Args:
        account_id: ID аккаунта
        options: SyncOptions в виде словаря

    Returns:
        Dict: SyncResult в JSON-совместимом виде
    """
    logger.info(f"[Celery] Старт задачи {self.request.id} синхронизации аккаунта {account_id}")
    cancel_event = threading.Event()
    try:
        service = get_article_sync_service(account_id, cancel_event=cancel_event)
    except SyncValidationError as e:
        logger.error(f"[Celery] {account_id}: {e.message}")
        result = SyncResult(
            success=False,
            state=RunState.INVALID,
            reason=e.reason,
            message=e.message,
            account_id=account_id,
            task_id=self.request.id,
        )
        return result.model_dump(mode="json")

    options = dict(options)
    options.pop("async", None)
    options.pop("run_async", None)
    with cancel_on_signal(cancel_event):
        result = service.run(account_id, options, cancel_event=cancel_event)
    result.task_id = self.request.id
    return result.model_dump(mode="json")


def dispatch_article_sync(account_id: str, options: SyncOptions) -> str:
    """Ставит синхронизацию в очередь Celery и возвращает ID задачи."""
    payload = options.model_dump(mode="json", exclude={"run_async"})
    task = run_article_sync.delay(account_id, payload)
    return task.id


@celery.task(name="app.services.article_sync_tasks.sync_all_accounts")
def sync_all_accounts(options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Запускает синхронизацию всех аккаунтов из CONTENT_SOURCE_ACCOUNTS параллельно.

    Аккаунты независимы: каждый запуск берет собственную блокировку.
    """
    account_ids = sorted(settings.CONTENT_SOURCE_ACCOUNTS)
    if not account_ids:
        logger.warning("[Celery] Нет аккаунтов для синхронизации")
        return {"status": "skipped", "accounts": 0}

    payload = options or SyncOptions(scope="all").model_dump(mode="json", exclude={"run_async"})
    job = group(run_article_sync.s(account_id, payload) for account_id in account_ids)
    group_result = job.apply_async()
    logger.info(f"[Celery] Запущена синхронизация {len(account_ids)} аккаунтов, группа {group_result.id}")
    return {"status": "started", "accounts": len(account_ids), "group_id": group_result.id}


@celery.task(name="app.services.article_sync_tasks.purge_expired_locks")
def purge_expired_locks() -> Dict[str, Any]:
    """
    Удаляет строки истекших блокировок.
    Корректность захвата от этой очистки не зависит.
    """
    try:
        removed = build_lock_manager().purge_expired()
    except LockStoreError as e:
        log_error_with_context(e, "Очистка истекших блокировок")
        return {"status": "error", "error": e.message}

    log_business_event("locks_purged", "Очистка истекших блокировок", removed=removed)
    return {"status": "success", "removed": removed}


class SyncTaskControl:
    """Состояние и отмена фоновых задач синхронизации."""

    def __init__(self, app=celery):
        self.app = app

    def status(self, task_id: str) -> TaskStatus:
        async_result = AsyncResult(task_id, app=self.app)
        info = TaskStatus(task_id=task_id, state=async_result.state, ready=async_result.ready())
        if not info.ready:
            return info
        if async_result.successful() and isinstance(async_result.result, dict):
            info.result = SyncResult.model_validate(async_result.result)
        elif async_result.failed():
            info.error = str(async_result.result)
        return info

    def cancel(self, task_id: str) -> None:
        """
        Отменить задачу.

        Задача из очереди не будет запущена. Выполняющейся задаче отправляется
        CANCEL_SIGNAL: запуск завершится состоянием cancelled и снимет блокировку.
        """
        logger.info(f"[Celery] Отмена задачи синхронизации {task_id}")
        self.app.control.revoke(task_id, terminate=True, signal=CANCEL_SIGNAL.name)
