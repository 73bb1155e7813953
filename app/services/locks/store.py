"""
 * @file: store.py
 * @description: Хранилище распределенных блокировок (таблица distributed_locks)
 * @dependencies: DistributedLock, SQLModel, SQLAlchemy
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.models.distributed_lock import DistributedLock
from app.services.sync_errors import LockStoreError
from app.utils.dialects import get_dialect_insert

logger = logging.getLogger("distributed.lock")


class LockStore(ABC):
    """
    Общая таблица аренд с атомарными операциями.

    Все изменяющие методы выполняются одним SQL-выражением: проверка истечения
    и перезапись владельца происходят на стороне БД, без чтения-изменения-записи.
    """

    @abstractmethod
    def upsert_if_expired(self, lock_key: str, holder_id: str, expire_time: datetime, now: datetime) -> None:
        """Вставить строку или перезаписать владельца, если аренда истекла (expire_time <= now). Иначе ничего не менять."""

    @abstractmethod
    def get(self, lock_key: str) -> Optional[DistributedLock]:
        pass

    @abstractmethod
    def extend_if_holder(self, lock_key: str, holder_id: str, expire_time: datetime, now: datetime) -> bool:
        """Продлить аренду, только если она принадлежит holder_id и еще не истекла."""

    @abstractmethod
    def delete_if_holder(self, lock_key: str, holder_id: str) -> bool:
        pass

    @abstractmethod
    def delete(self, lock_key: str) -> bool:
        """Удалить строку независимо от владельца (административная операция)."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        pass

    @abstractmethod
    def list_all(self) -> List[DistributedLock]:
        pass


def _dialect_insert(session: Session):
    insert = get_dialect_insert(session)
    if insert is None:
        raise LockStoreError(
            f"Диалект {session.get_bind().dialect.name} не поддерживает атомарный upsert блокировок"
        )
    return insert


class SqlLockStore(LockStore):
    """Реализация LockStore поверх SQLModel. Каждая операция в отдельной короткой сессии."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def upsert_if_expired(self, lock_key: str, holder_id: str, expire_time: datetime, now: datetime) -> None:
        try:
            with self.session_factory() as session:
                insert = _dialect_insert(session)
                stmt = insert(DistributedLock).values(
                    lock_key=lock_key,
                    holder_id=holder_id,
                    expire_time=expire_time,
                    created_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DistributedLock.lock_key],
                    set_={
                        "holder_id": stmt.excluded.holder_id,
                        "expire_time": stmt.excluded.expire_time,
                    },
                    where=DistributedLock.expire_time <= now,
                )
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Ошибка upsert блокировки {lock_key}: {e}")
            raise LockStoreError(f"Не удалось записать блокировку {lock_key}: {e}") from e

    def get(self, lock_key: str) -> Optional[DistributedLock]:
        try:
            with self.session_factory() as session:
                return session.exec(
                    select(DistributedLock).where(DistributedLock.lock_key == lock_key)
                ).first()
        except SQLAlchemyError as e:
            raise LockStoreError(f"Не удалось прочитать блокировку {lock_key}: {e}") from e

    def extend_if_holder(self, lock_key: str, holder_id: str, expire_time: datetime, now: datetime) -> bool:
        stmt = (
            update(DistributedLock)
            .where(
                DistributedLock.lock_key == lock_key,
                DistributedLock.holder_id == holder_id,
                DistributedLock.expire_time > now,
            )
            .values(expire_time=expire_time)
        )
        return self._execute_count(stmt, f"продления блокировки {lock_key}") > 0

    def delete_if_holder(self, lock_key: str, holder_id: str) -> bool:
        stmt = delete(DistributedLock).where(
            DistributedLock.lock_key == lock_key,
            DistributedLock.holder_id == holder_id,
        )
        return self._execute_count(stmt, f"снятия блокировки {lock_key}") > 0

    def delete(self, lock_key: str) -> bool:
        stmt = delete(DistributedLock).where(DistributedLock.lock_key == lock_key)
        return self._execute_count(stmt, f"удаления блокировки {lock_key}") > 0

    def delete_expired(self, now: datetime) -> int:
        stmt = delete(DistributedLock).where(DistributedLock.expire_time <= now)
        return self._execute_count(stmt, "очистки истекших блокировок")

    def list_all(self) -> List[DistributedLock]:
        try:
            with self.session_factory() as session:
                return list(session.exec(
                    select(DistributedLock).order_by(DistributedLock.created_at.desc())
                ).all())
        except SQLAlchemyError as e:
            raise LockStoreError(f"Не удалось получить список блокировок: {e}") from e

    def _execute_count(self, stmt, action: str) -> int:
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Ошибка {action}: {e}")
            raise LockStoreError(f"Ошибка {action}: {e}") from e
