from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SyncScope(str, Enum):
    """Объем синхронизации."""
    RECENT = "recent"
    ALL = "all"
    CUSTOM = "custom"


class DuplicatePolicy(str, Enum):
    """Поведение при гонке по уникальному ключу (строка появилась между проверкой и вставкой)."""
    SKIP = "skip"
    UPDATE = "update"
    FAIL = "fail"


class RunState(str, Enum):
    """Состояния запуска синхронизации."""
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    COMPLETED = "completed"
    DENIED = "denied"
    ABORTED_LOCK_LOST = "aborted_lock_lost"
    ABORTED_FATAL = "aborted_fatal"
    CANCELLED = "cancelled"
    # Исходы, при которых запуск не начинался
    INVALID = "invalid"
    QUEUED = "queued"


class DateRange(BaseModel):
    """Диапазон дат публикации для scope=custom. Границы хранятся как naive UTC."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end", mode="after")
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class SyncOptions(BaseModel):
    """Параметры запуска синхронизации аккаунта."""
    model_config = ConfigDict(populate_by_name=True)

    scope: SyncScope = SyncScope.RECENT
    item_limit: Optional[int] = Field(default=None, gt=0, description="Обязателен для scope=recent")
    custom_range: Optional[DateRange] = Field(default=None, description="Обязателен для scope=custom")
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.UPDATE
    include_deleted: bool = Field(default=False, description="Сохранять удаленные в источнике статьи, которых еще нет локально")
    bypass_lock: bool = Field(default=False, description="Только для диагностики: не отказывать, если блокировка занята")
    run_async: bool = Field(default=False, alias="async", description="Выполнить в фоне через Celery")

    @model_validator(mode="after")
    def check_scope_requirements(self) -> "SyncOptions":
        if self.scope == SyncScope.RECENT and self.item_limit is None:
            raise ValueError("Для scope=recent необходимо указать item_limit")
        if self.scope == SyncScope.CUSTOM:
            if self.custom_range is None:
                raise ValueError("Для scope=custom необходимо указать custom_range")
            if self.custom_range.start is None or self.custom_range.end is None:
                raise ValueError("custom_range должен содержать start и end")
            if self.custom_range.start >= self.custom_range.end:
                raise ValueError("custom_range.start должен быть раньше custom_range.end")
        return self


class SyncStats(BaseModel):
    """Счетчики запуска."""
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class ItemError(BaseModel):
    """Описание ошибки обработки одной статьи."""
    external_id: Optional[str] = None
    title: Optional[str] = None
    reason: str
    message: str


class SyncResult(BaseModel):
    """Результат синхронизации, возвращаемый вызывающему коду."""
    success: bool
    state: RunState
    reason: Optional[str] = None
    message: str = ""
    account_id: str = ""
    stats: SyncStats = Field(default_factory=SyncStats)
    errors: List[ItemError] = Field(default_factory=list)
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncStatus(BaseModel):
    """Состояние синхронизации аккаунта."""
    account_id: str
    is_syncing: bool
    article_count: int = 0
    last_synced_at: Optional[datetime] = None


class LockInfo(BaseModel):
    """Строка блокировки для административных эндпоинтов."""
    lock_key: str
    holder_id: str
    expire_time: datetime
    created_at: datetime
    is_expired: bool


class TaskStatus(BaseModel):
    """Состояние фоновой задачи синхронизации (по данным result backend Celery)."""
    task_id: str
    state: str
    ready: bool = False
    result: Optional[SyncResult] = None
    error: Optional[str] = None
