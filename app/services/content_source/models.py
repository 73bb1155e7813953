from typing import List, Dict, Any, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class SourceArticle(BaseModel):
    """Статья из внешнего API, приведенная к единому виду."""
    external_id: str = Field(min_length=1, max_length=255)
    title: str = Field(default="", max_length=255)
    author: str = ""
    digest: str = ""
    content: str = ""
    source_url: str = ""
    cover_url: str = ""
    published_at: Optional[datetime] = None
    is_deleted: bool = False

    @field_validator("external_id", "title", "author", "digest", "source_url", "cover_url", mode="before")
    def strip_strings(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("published_at", mode="after")
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class SourcePage(BaseModel):
    """
    Страница ответа внешнего API.

    items содержит сырые словари: каждый разбирается в SourceArticle отдельно,
    чтобы одна битая запись не ломала всю страницу.
    """
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    total: Optional[int] = None


class AccessTokenResponse(BaseModel):
    access_token: str
    expires_in: int = 7200
