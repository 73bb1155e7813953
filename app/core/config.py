import os
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, PostgresDsn, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv

load_dotenv()

# Затем проверяем, запущено ли приложение в Docker
is_docker = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")

# Если запущено в Docker, перезагружаем переменные из .env.docker
if is_docker:
    load_dotenv(".env.docker", override=True)


class ContentSourceCredentials(BaseModel):
    """Учетные данные аккаунта во внешнем API контента."""
    app_id: str
    app_secret: str


class Settings(BaseSettings):
    API_V1_STR: str = "/api"

    PROJECT_NAME: str = "article_sync"

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "article_sync"
    SQLALCHEMY_DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)

    # Брокер и бэкенд результатов Celery (Redis)
    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/1"

    # Внешний API контента
    CONTENT_SOURCE_BASE_URL: str = "https://api.weixin.qq.com/cgi-bin"
    CONTENT_SOURCE_APP_ID: Optional[str] = None
    CONTENT_SOURCE_APP_SECRET: Optional[str] = None
    # JSON-объект {"<account_id>": {"app_id": "...", "app_secret": "..."}}
    CONTENT_SOURCE_ACCOUNTS: Dict[str, ContentSourceCredentials] = {}

    @field_validator("SQLALCHEMY_DATABASE_URI", mode='before')
    def assemble_db_connection(cls, v: Optional[str], values: ValidationInfo) -> Any:
        if isinstance(v, str) and v:
            return v
        return PostgresDsn.build(
            scheme="postgresql",
            username=values.data.get("POSTGRES_USER"),
            password=values.data.get("POSTGRES_PASSWORD") or None,
            host=values.data.get("POSTGRES_SERVER"),
            path=f"{values.data.get('POSTGRES_DB') or ''}",
        ).unicode_string()

    def get_source_credentials(self, account_id: str) -> Optional[ContentSourceCredentials]:
        """
        Учетные данные для аккаунта: сначала персональные, затем общие по умолчанию.
        """
        credentials = self.CONTENT_SOURCE_ACCOUNTS.get(account_id)
        if credentials:
            return credentials
        if self.CONTENT_SOURCE_APP_ID and self.CONTENT_SOURCE_APP_SECRET:
            return ContentSourceCredentials(
                app_id=self.CONTENT_SOURCE_APP_ID,
                app_secret=self.CONTENT_SOURCE_APP_SECRET,
            )
        return None

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")


settings = Settings()
logging.getLogger(__name__).debug(f"settings loaded for {settings.PROJECT_NAME}")
