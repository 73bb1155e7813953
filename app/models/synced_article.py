from datetime import datetime
from typing import Optional
from enum import Enum

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, Text, UniqueConstraint

from app.utils.date_utils import utcnow


class ArticleStatus(str, Enum):
    """Статусы синхронизированной статьи."""
    ACTIVE = "active"
    ARCHIVED = "archived"
    FAILED = "failed"


class SyncedArticle(SQLModel, table=True):
    """
    Статья, загруженная из внешнего API контента.

    external_id уникален в пространстве аккаунта; content_hash позволяет
    не переписывать строку и не трогать updated_at, если контент не менялся.
    """
    __tablename__ = "synced_articles"
    __table_args__ = (
        UniqueConstraint("account_id", "external_id", name="uq_synced_articles_account_external"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    # Идентификация
    account_id: str = Field(index=True, max_length=100, description="Аккаунт во внешнем API")
    external_id: str = Field(max_length=255, description="Стабильный идентификатор из внешнего API")
    content_hash: str = Field(max_length=64, description="SHA-256 нормализованного контента")
    status: ArticleStatus = Field(default=ArticleStatus.ACTIVE, index=True, description="Статус статьи")

    # Контент
    title: str = Field(default="", max_length=255)
    author: str = Field(default="", max_length=100)
    digest: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    content: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    source_url: str = Field(default="", max_length=1024)
    cover_url: str = Field(default="", max_length=1024)
    published_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True, index=True),
        description="Время публикации во внешнем API"
    )
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    # Метаданные (naive UTC, колонки DateTime без timezone)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False),
        description="Время создания"
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True),
        description="Время последнего изменения контента"
    )
