"""
 * @file: retry.py
 * @description: Повтор запросов к внешнему API с экспоненциальным backoff
 * @dependencies: ArticleSyncConfig, sync_errors
"""
import logging
import random
import threading
from typing import Any, Callable, Optional, TypeVar

from app.core.article_sync_config import ArticleSyncConfig
from app.services.sync_errors import (
    SourceAuthError,
    SourceRateLimitError,
    SyncCancelled,
    TransientSourceError,
)

logger = logging.getLogger("content.source")

T = TypeVar("T")


class RetryPolicy:
    """
    Ограниченный повтор временных ошибок источника.

    TransientSourceError повторяется с экспоненциальной задержкой,
    SourceRateLimitError использует retry_after из ответа API, если он есть.
    SourceAuthError и прочие ошибки пробрасываются сразу.
    Ожидание между попытками прерывается через cancel_event.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts должен быть не меньше 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: ArticleSyncConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter=config.retry_jitter,
        )

    def compute_delay(self, attempt: int) -> float:
        """Задержка перед попыткой attempt + 1 (attempt начинается с 1)."""
        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )
        if self.jitter:
            delay = delay * random.uniform(0.5, 1.0)
        return delay

    def call(
        self,
        func: Callable[..., T],
        *args: Any,
        cancel_event: Optional[threading.Event] = None,
        description: str = "запрос",
        **kwargs: Any
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelled(f"{description}: отменено")
            try:
                return func(*args, **kwargs)
            except SourceAuthError:
                raise
            except TransientSourceError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description}: исчерпаны попытки ({attempt}/{self.max_attempts}): {e.message}")
                    raise
                if isinstance(e, SourceRateLimitError) and e.retry_after is not None:
                    delay = min(max(e.retry_after, 0.0), self.max_delay)
                else:
                    delay = self.compute_delay(attempt)
                logger.warning(
                    f"{description}: попытка {attempt}/{self.max_attempts} неудачна ({e.reason}: {e.message}), "
                    f"повтор через {delay:.2f}s"
                )
                self._wait(delay, cancel_event, description)

    @staticmethod
    def _wait(delay: float, cancel_event: Optional[threading.Event], description: str) -> None:
        if cancel_event is None:
            cancel_event = threading.Event()
        if cancel_event.wait(delay):
            raise SyncCancelled(f"{description}: отменено во время ожидания повтора")
