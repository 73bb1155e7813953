"""
 * @file: celery_shared.py
 * @description: Общий экземпляр Celery для задач синхронизации статей
 * @dependencies: core.config, core.article_sync_config
"""

from celery import Celery
from celery.schedules import schedule

from app.core.config import settings
from app.core.article_sync_config import article_sync_config

# Инициализация Celery
celery = Celery(
    "article_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.services.article_sync_tasks"]
)

# Настройка Celery
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,  # Логирование настраивается через setup_project_logging
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',
    broker_connection_retry_on_startup=True
)

# Периодические задачи
celery.conf.beat_schedule = {
    "purge-expired-article-sync-locks": {
        "task": "app.services.article_sync_tasks.purge_expired_locks",
        "schedule": schedule(run_every=article_sync_config.expired_lock_cleanup_minutes * 60),
    },
    "sync-all-article-accounts": {
        "task": "app.services.article_sync_tasks.sync_all_accounts",
        "schedule": schedule(run_every=article_sync_config.all_accounts_sync_minutes * 60),
    },
}
