"""
Иерархия ошибок синхронизации статей.

Каждая ошибка несет строку reason, которая попадает в SyncResult и в ItemError,
поэтому вызывающий код может различать причины без разбора текста сообщения.
"""
from typing import Optional


class ArticleSyncError(Exception):
    """Базовая ошибка синхронизации."""
    reason = "sync_error"

    def __init__(self, message: str = "Ошибка синхронизации"):
        self.message = message
        super().__init__(self.message)


class SyncValidationError(ArticleSyncError):
    """Некорректные параметры запуска. Никогда не повторяется."""
    reason = "invalid_options"


class LockBusyError(ArticleSyncError):
    """Блокировка занята другим процессом."""
    reason = "locked"


class LockLostError(ArticleSyncError):
    """Аренда истекла или перехвачена во время запуска."""
    reason = "lost lock"


class SyncCancelled(ArticleSyncError):
    """Запуск отменен вызывающим кодом."""
    reason = "cancelled"


class StoreError(ArticleSyncError):
    """Хранилище недоступно. Фатально для текущего запуска."""
    reason = "store_error"


class LockStoreError(StoreError):
    """Ошибка хранилища блокировок. Не трактуется как «блокировка свободна»."""
    reason = "lock_store_error"


class ItemWriteError(ArticleSyncError):
    """Не удалось сохранить одну статью. Остальные статьи продолжают обрабатываться."""
    reason = "item_write_failed"


class DuplicateItemError(ItemWriteError):
    """Гонка по уникальному ключу при политике fail."""
    reason = "duplicate"


class SourceError(ArticleSyncError):
    """Базовая ошибка внешнего API контента."""
    reason = "source_error"


class SourceAuthError(SourceError):
    """Неверные учетные данные. Не повторяется."""
    reason = "source_auth"


class TransientSourceError(SourceError):
    """Сетевая ошибка, таймаут или временная недоступность API. Повторяется с backoff."""
    reason = "source_unavailable"


class SourceRateLimitError(TransientSourceError):
    """API ограничивает частоту запросов. Повторяется с учетом retry_after."""
    reason = "source_rate_limited"

    def __init__(self, message: str = "Превышен лимит запросов", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
