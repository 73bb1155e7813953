"""
 * @file: distributed_lock.py
 * @description: Модель распределенной блокировки (аренды) по имени ресурса
 * @dependencies: SQLModel, datetime
"""
from datetime import datetime
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field

from app.utils.date_utils import utcnow


class DistributedLock(SQLModel, table=True):
    """
    Строка аренды. Блокировка считается свободной, когда now >= expire_time,
    даже если строка физически еще существует.
    """
    __tablename__ = "distributed_locks"

    lock_key: str = Field(primary_key=True, max_length=255, description="Ключ защищаемого ресурса, например sync:<account_id>")
    holder_id: str = Field(max_length=64, description="Случайный токен текущего (последнего) владельца")
    # naive UTC, колонки DateTime без timezone
    expire_time: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True),
        description="Время истечения аренды (UTC)"
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False),
        description="Время первого создания строки"
    )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expire_time
