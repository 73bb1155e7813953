"""
 * @file: article_store.py
 * @description: Хранилище синхронизированных статей (таблица synced_articles)
 * @dependencies: SyncedArticle, SQLModel, SQLAlchemy
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.models.synced_article import ArticleStatus, SyncedArticle
from app.services.content_source.models import SourceArticle
from app.services.sync_errors import ItemWriteError, StoreError
from app.utils.dialects import get_dialect_insert

logger = logging.getLogger("article.store")


@dataclass(frozen=True)
class StoredArticle:
    """Минимальный снимок строки, нужный для классификации."""
    external_id: str
    content_hash: str
    status: ArticleStatus


class ArticleStore(ABC):
    """
    Хранилище статей аккаунтов.

    Каждое изменение выполняется одним выражением в собственной транзакции.
    Ошибки одной записи (нарушение ограничений, некорректные данные) выражаются
    через ItemWriteError, недоступность хранилища через StoreError.
    """

    @abstractmethod
    def find(self, account_id: str, external_id: str) -> Optional[StoredArticle]:
        pass

    @abstractmethod
    def insert(self, account_id: str, article: SourceArticle, content_hash: str,
               status: ArticleStatus, now: datetime) -> bool:
        """Вставить статью. False, если строка с тем же external_id уже существует."""

    @abstractmethod
    def update_if_changed(self, account_id: str, article: SourceArticle, content_hash: str,
                          status: ArticleStatus, now: datetime) -> bool:
        """Перезаписать статью, только если ее content_hash отличается. True, если строка изменена."""

    @abstractmethod
    def mark_failed(self, account_id: str, external_id: str, error: str, now: datetime) -> bool:
        pass

    @abstractmethod
    def count(self, account_id: str) -> int:
        pass

    @abstractmethod
    def last_updated_at(self, account_id: str) -> Optional[datetime]:
        pass


def _article_values(article: SourceArticle, content_hash: str, status: ArticleStatus) -> dict:
    return {
        "content_hash": content_hash,
        "status": status,
        "title": article.title,
        "author": article.author,
        "digest": article.digest,
        "content": article.content,
        "source_url": article.source_url,
        "cover_url": article.cover_url,
        "published_at": article.published_at,
        "last_error": None,
    }


class SqlArticleStore(ArticleStore):
    """Реализация ArticleStore поверх SQLModel. Одна короткая сессия на операцию."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def find(self, account_id: str, external_id: str) -> Optional[StoredArticle]:
        try:
            with self.session_factory() as session:
                row = session.exec(
                    select(SyncedArticle.external_id, SyncedArticle.content_hash, SyncedArticle.status).where(
                        SyncedArticle.account_id == account_id,
                        SyncedArticle.external_id == external_id,
                    )
                ).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Не удалось прочитать статью {external_id}: {e}") from e
        if row is None:
            return None
        return StoredArticle(external_id=row[0], content_hash=row[1], status=ArticleStatus(row[2]))

    def insert(self, account_id: str, article: SourceArticle, content_hash: str,
               status: ArticleStatus, now: datetime) -> bool:
        values = _article_values(article, content_hash, status)
        values.update(account_id=account_id, external_id=article.external_id, created_at=now, updated_at=now)
        try:
            with self.session_factory() as session:
                insert = self._dialect_insert(session)
                stmt = insert(SyncedArticle).values(**values).on_conflict_do_nothing(
                    index_elements=[SyncedArticle.account_id, SyncedArticle.external_id]
                )
                result = session.execute(stmt)
                session.commit()
                return result.rowcount > 0
        except (IntegrityError, DataError) as e:
            raise ItemWriteError(f"Ошибка вставки статьи {article.external_id}: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Хранилище статей недоступно: {e}") from e

    def update_if_changed(self, account_id: str, article: SourceArticle, content_hash: str,
                          status: ArticleStatus, now: datetime) -> bool:
        values = _article_values(article, content_hash, status)
        values.update(updated_at=now)
        stmt = (
            update(SyncedArticle)
            .where(
                SyncedArticle.account_id == account_id,
                SyncedArticle.external_id == article.external_id,
                SyncedArticle.content_hash != content_hash,
            )
            .values(**values)
        )
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount > 0
        except (IntegrityError, DataError) as e:
            raise ItemWriteError(f"Ошибка обновления статьи {article.external_id}: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Хранилище статей недоступно: {e}") from e

    def mark_failed(self, account_id: str, external_id: str, error: str, now: datetime) -> bool:
        stmt = (
            update(SyncedArticle)
            .where(
                SyncedArticle.account_id == account_id,
                SyncedArticle.external_id == external_id,
            )
            .values(status=ArticleStatus.FAILED, last_error=error[:2000], updated_at=now)
        )
        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise StoreError(f"Не удалось отметить статью {external_id} как failed: {e}") from e

    def count(self, account_id: str) -> int:
        try:
            with self.session_factory() as session:
                return session.exec(
                    select(func.count()).select_from(SyncedArticle).where(SyncedArticle.account_id == account_id)
                ).one()
        except SQLAlchemyError as e:
            raise StoreError(f"Не удалось посчитать статьи аккаунта {account_id}: {e}") from e

    def last_updated_at(self, account_id: str) -> Optional[datetime]:
        try:
            with self.session_factory() as session:
                return session.exec(
                    select(func.max(SyncedArticle.updated_at)).where(SyncedArticle.account_id == account_id)
                ).one()
        except SQLAlchemyError as e:
            raise StoreError(f"Не удалось получить время синхронизации аккаунта {account_id}: {e}") from e

    @staticmethod
    def _dialect_insert(session: Session):
        insert = get_dialect_insert(session)
        if insert is None:
            raise StoreError(f"Диалект {session.get_bind().dialect.name} не поддерживает INSERT ... ON CONFLICT")
        return insert
