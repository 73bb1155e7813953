import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from app.services.content_source.base import BaseClient, ContentSource
from app.services.content_source.models import AccessTokenResponse, SourcePage
from app.services.content_source.rate_limiter import TokenBucketRateLimiter
from app.services.sync_errors import (
    SourceAuthError,
    SourceError,
    SourceRateLimitError,
    SyncCancelled,
    TransientSourceError,
)

logger = logging.getLogger("content.source")

# Коды ошибок API (поле errcode)
SYSTEM_BUSY_CODES = {-1}
AUTH_ERROR_CODES = {40001, 40002, 40013, 40125, 40164, 41002, 41004, 48001, 50001}
TOKEN_EXPIRED_CODES = {40001, 40014, 42001}
RATE_LIMIT_CODES = {45009, 45011}

# Токен обновляется заранее, за столько секунд до истечения
TOKEN_REFRESH_MARGIN = 300


def extract_articles(item: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Разворачивает опубликованное сообщение в список статей.

    Одно сообщение может содержать несколько статей; у всех общий article_id,
    поэтому external_id дополняется порядковым номером статьи внутри сообщения.
    """
    content = item.get("content") or {}
    news_items = content.get("news_item") or content.get("item") or []
    article_id = item.get("article_id") or ""
    publish_time = item.get("publish_time") or item.get("update_time")

    articles = []
    for index, news in enumerate(news_items, start=1):
        articles.append({
            "external_id": f"{article_id}:{index}" if article_id else "",
            "title": news.get("title", ""),
            "author": news.get("author", ""),
            "digest": news.get("digest", ""),
            "content": news.get("content", ""),
            "source_url": news.get("url") or news.get("content_source_url", ""),
            "cover_url": news.get("thumb_url", ""),
            "published_at": publish_time or None,
            "is_deleted": bool(news.get("is_deleted", False)),
        })
    return articles


class ContentSourceClient(BaseClient, ContentSource):
    """
    Клиент API опубликованных статей одного аккаунта.

    Все запросы проходят через общий rate limiter, ошибки HTTP и коды errcode
    переводятся в иерархию SourceError. Повторы выполняет вызывающий код (RetryPolicy).
    """
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = 10,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        http: Optional[requests.Session] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        super().__init__(base_url, timeout)
        self.app_id = app_id
        self.app_secret = app_secret
        self.rate_limiter = rate_limiter
        self.http = http or requests.Session()
        self.cancel_event = cancel_event
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    def get_access_token(self) -> str:
        """Получает access_token, используя кеш до истечения срока."""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        data = self._request(
            "GET",
            "/token",
            params={
                "grant_type": "client_credential",
                "appid": self.app_id,
                "secret": self.app_secret,
            },
            auth_endpoint=True,
        )
        try:
            token = AccessTokenResponse.model_validate(data)
        except ValidationError:
            raise SourceError(f"Некорректный ответ при получении access_token: {data}")

        self._access_token = token.access_token
        self._token_expires_at = time.monotonic() + max(token.expires_in - TOKEN_REFRESH_MARGIN, 0)
        logger.info(f"Получен access_token для appid {self.app_id}")
        return self._access_token

    def bind_cancel_event(self, cancel_event: threading.Event) -> None:
        self.cancel_event = cancel_event

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    def fetch_page(self, cursor: Optional[str], page_size: int) -> SourcePage:
        """
        Получает страницу опубликованных сообщений.

        Курсор равен смещению (offset) в списке сообщений.
        """
        offset = int(cursor) if cursor else 0
        token = self.get_access_token()
        data = self._request(
            "POST",
            "/freepublish/batchget",
            params={"access_token": token},
            json={"offset": offset, "count": page_size, "no_content": 0},
        )

        items = data.get("item")
        if items is None:
            raise SourceError(f"Ответ без поля item: {data}")

        articles = []
        for item in items:
            articles.extend(extract_articles(item))

        total = data.get("total_count")
        next_offset = offset + len(items)
        has_more = len(items) >= page_size and (total is None or next_offset < total)

        logger.info(
            f"Получена страница offset={offset}: сообщений {len(items)}, статей {len(articles)}, всего {total}"
        )
        return SourcePage(
            items=articles,
            next_cursor=str(next_offset) if has_more else None,
            total=total,
        )

    def _request(self, method: str, path: str, auth_endpoint: bool = False, **kwargs) -> Dict[str, Any]:
        if self.rate_limiter is not None:
            if not self.rate_limiter.acquire(timeout=self.timeout, cancel_event=self.cancel_event):
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise SyncCancelled("Запрос к API отменен во время ожидания лимита")
                raise SourceRateLimitError("Локальный лимит запросов исчерпан")

        try:
            resp = self.http.request(
                method,
                f"{self.base_url}{path}",
                headers=self.headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.Timeout as e:
            raise TransientSourceError(f"Таймаут запроса {path}: {e}")
        except requests.ConnectionError as e:
            raise TransientSourceError(f"Ошибка соединения {path}: {e}")
        except requests.RequestException as e:
            raise TransientSourceError(f"Ошибка запроса {path}: {e}")

        if resp.status_code == 429:
            raise SourceRateLimitError(
                f"HTTP 429 для {path}",
                retry_after=self._parse_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code in (401, 403):
            raise SourceAuthError(f"HTTP {resp.status_code} для {path}")
        if resp.status_code >= 500:
            raise TransientSourceError(f"HTTP {resp.status_code} для {path}")
        if resp.status_code >= 400:
            raise SourceError(f"HTTP {resp.status_code} для {path}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            raise SourceError(f"Ответ {path} не является JSON: {resp.text[:200]}")

        errcode = data.get("errcode", 0)
        if errcode:
            self._raise_for_errcode(errcode, data.get("errmsg", ""), path, auth_endpoint)
        return data

    def _raise_for_errcode(self, errcode: int, errmsg: str, path: str, auth_endpoint: bool) -> None:
        message = f"{path}: errcode={errcode}, errmsg={errmsg}"
        if errcode in SYSTEM_BUSY_CODES:
            raise TransientSourceError(message)
        if errcode in RATE_LIMIT_CODES:
            raise SourceRateLimitError(message)
        if not auth_endpoint and errcode in TOKEN_EXPIRED_CODES:
            # Токен отозван или истек раньше срока: следующий запрос получит новый
            self.invalidate_token()
            raise TransientSourceError(message)
        if errcode in AUTH_ERROR_CODES:
            logger.error(f"Ошибка авторизации appid {self.app_id}: {message}")
            raise SourceAuthError(message)
        raise SourceError(message)

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None
