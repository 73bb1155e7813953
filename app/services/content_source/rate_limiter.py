"""
 * @file: rate_limiter.py
 * @description: Rate limiter для внешнего API контента (Token Bucket)
 * @dependencies: threading, time
"""

import threading
import time
from typing import Optional


class TokenBucketRateLimiter:
    """
    Rate limiter (Token Bucket), общий для всех запросов одного клиента.
    Ограничивает количество запросов до requests_per_minute.
    """
    def __init__(self, requests_per_minute: int = 600):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute должен быть больше нуля")
        self.capacity = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.refill_rate = requests_per_minute / 60  # токенов в секунду
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self, tokens: int = 1, timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Получить токен(ы) для запроса. Блокирует поток до появления токенов, до timeout
        или до отмены через cancel_event.
        Возвращает True, если токены получены, иначе False.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            with self.lock:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True
            if deadline is not None and time.monotonic() > deadline:
                return False
            if cancel_event is not None:
                if cancel_event.wait(0.05):
                    return False
            else:
                time.sleep(0.05)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now
