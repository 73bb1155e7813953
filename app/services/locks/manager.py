"""
 * @file: manager.py
 * @description: Аренда распределенных блокировок: захват без ожидания, продление, снятие
 * @dependencies: LockStore
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from app.models.distributed_lock import DistributedLock
from app.services.locks.store import LockStore
from app.utils.date_utils import utcnow

logger = logging.getLogger("distributed.lock")

TTL = Union[int, float, timedelta]


@dataclass(frozen=True)
class LockLease:
    """Успешно захваченная аренда. holder_id нужен для release и renew."""
    lock_key: str
    holder_id: str
    expires_at: datetime


def _to_timedelta(ttl: TTL) -> timedelta:
    if not isinstance(ttl, timedelta):
        ttl = timedelta(seconds=ttl)
    if ttl <= timedelta(0):
        raise ValueError("ttl должен быть больше нуля")
    return ttl


class LockManager:
    """
    Оптимистичная блокировка на одной строке таблицы.

    Захват выполняется атомарным upsert (вставка или перехват истекшей аренды),
    после чего строка перечитывается и сравнивается со своим токеном. Токен
    владельца генерируется заново для каждой попытки, поэтому бывший владелец,
    у которого аренда истекла и была перехвачена, не может снять чужую блокировку.

    Ошибки хранилища пробрасываются как LockStoreError и никогда не считаются
    признаком свободной блокировки.
    """

    def __init__(self, store: LockStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def try_acquire(self, lock_key: str, ttl: TTL) -> Optional[LockLease]:
        """
        Попытаться захватить блокировку без ожидания.

        Args:
            lock_key: Непустой ключ ресурса
            ttl: Время жизни аренды (секунды или timedelta)

        Returns:
            LockLease при успехе, None если блокировка занята другим владельцем.
        """
        if not lock_key:
            raise ValueError("lock_key не может быть пустым")
        ttl = _to_timedelta(ttl)

        holder_id = secrets.token_hex(16)
        now = self.clock()
        expires_at = now + ttl

        self.store.upsert_if_expired(lock_key, holder_id, expires_at, now)
        current = self.store.get(lock_key)

        if current is not None and current.holder_id == holder_id:
            logger.info(f"Блокировка {lock_key} захвачена (TTL={ttl.total_seconds():.0f}s)")
            return LockLease(lock_key=lock_key, holder_id=holder_id, expires_at=current.expire_time)

        if current is not None:
            logger.info(f"Блокировка {lock_key} занята до {current.expire_time.isoformat()}")
        else:
            logger.warning(f"Блокировка {lock_key} не найдена сразу после upsert")
        return None

    def release(self, lock_key: str, holder_id: str) -> bool:
        """Снять блокировку, только если holder_id совпадает с текущим владельцем."""
        released = self.store.delete_if_holder(lock_key, holder_id)
        if released:
            logger.info(f"Блокировка {lock_key} снята")
        else:
            logger.warning(f"Блокировка {lock_key} не снята: владелец сменился или строка уже удалена")
        return released

    def renew(self, lock_key: str, holder_id: str, ttl: TTL) -> bool:
        """Продлить аренду. False означает, что владение потеряно."""
        ttl = _to_timedelta(ttl)
        now = self.clock()
        renewed = self.store.extend_if_holder(lock_key, holder_id, now + ttl, now)
        if renewed:
            logger.debug(f"Блокировка {lock_key} продлена на {ttl.total_seconds():.0f}s")
        else:
            logger.warning(f"Не удалось продлить блокировку {lock_key}: аренда потеряна")
        return renewed

    def is_held(self, lock_key: str) -> bool:
        lock = self.store.get(lock_key)
        return lock is not None and not lock.is_expired(self.clock())

    def list_locks(self) -> List[DistributedLock]:
        return self.store.list_all()

    def purge_expired(self) -> int:
        """Удалить строки истекших аренд. На корректность не влияет, только чистит таблицу."""
        removed = self.store.delete_expired(self.clock())
        if removed:
            logger.info(f"Удалено истекших блокировок: {removed}")
        return removed

    def force_release(self, lock_key: str) -> bool:
        """Принудительно снять блокировку без проверки владельца."""
        removed = self.store.delete(lock_key)
        logger.warning(f"Принудительное снятие блокировки {lock_key}: {'удалена' if removed else 'не найдена'}")
        return removed
