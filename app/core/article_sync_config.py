from pydantic import Field
from pydantic_settings import BaseSettings


class ArticleSyncConfig(BaseSettings):
    """
    Конфигурация синхронизации статей из внешнего API контента.

    Настройки можно переопределить через переменные окружения с префиксом ARTICLE_SYNC_
    """

    # Настройки распределенной блокировки
    lock_ttl_seconds: int = Field(default=1800, gt=0)  # 30 минут
    lock_renew_every_pages: int = Field(default=1, ge=1)
    lock_key_prefix: str = "sync:"
    expired_lock_cleanup_minutes: int = Field(default=15, gt=0)
    all_accounts_sync_minutes: int = Field(default=60, gt=0)

    # Ограничения запуска
    max_item_limit: int = Field(default=1000, gt=0)
    page_size: int = Field(default=20, gt=0)

    # Настройки запросов к внешнему API
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    rate_limit_requests_per_minute: int = Field(default=600, gt=0)

    # Настройки retry механизма
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0)  # секунды
    retry_max_delay: float = Field(default=60.0, ge=0)  # секунды
    retry_exponential_base: float = 2.0
    retry_jitter: bool = True

    model_config = {
        "env_prefix": "ARTICLE_SYNC_",
        "env_file": ".env.docker",
        "extra": "ignore"  # Игнорировать дополнительные поля из .env
    }

    def lock_key(self, account_id: str) -> str:
        """Ключ блокировки синхронизации аккаунта."""
        return f"{self.lock_key_prefix}{account_id}"


# Глобальный экземпляр конфигурации
article_sync_config = ArticleSyncConfig()
