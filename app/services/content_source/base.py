import threading
from abc import ABC, abstractmethod
from typing import Optional

from app.core.config import settings
from app.services.content_source.models import SourcePage


class ContentSource(ABC):
    """
    Постраничный источник статей одного аккаунта.

    Страницы возвращаются от новых статей к старым; курсор непрозрачен для
    вызывающего кода и равен None на последней странице.
    """

    @abstractmethod
    def fetch_page(self, cursor: Optional[str], page_size: int) -> SourcePage:
        pass

    def bind_cancel_event(self, cancel_event: threading.Event) -> None:
        """Событие отмены текущего запуска; источники с ожиданием должны его учитывать."""


class BaseClient:

    def __init__(
        self,
        base_url: str = None,
        timeout: Optional[float] = 10
    ):
        """
        :param base_url: Базовый URL API, например "https://api.weixin.qq.com/cgi-bin"
        :param timeout: Таймаут запросов в секундах
        """
        if base_url:
            self.base_url = base_url.rstrip('/')
        else:
            self.base_url = settings.CONTENT_SOURCE_BASE_URL.rstrip("/")
        self.headers = {
            'Content-Type': 'application/json'
        }
        self.timeout = timeout
