import os
import logging
from typing import Any, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv

load_dotenv()

# Затем проверяем, запущено ли приложение в Docker
is_docker = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")

# Если запущено в Docker, перезагружаем переменные из .env.docker
if is_docker:
    load_dotenv(".env.docker", override=True)


class Settings(BaseSettings):
    PROJECT_NAME: str = "catalog_sync"

    # База данных каталога, состояния синхронизации и журнала ошибок
    DATABASE_URL: str = "sqlite:///./catalog_sync.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 30

    # ERP с постраничным API на номере сессии
    ERP_BASE_URL: str = "http://localhost:8000/erp"
    ERP_SESSION_TOKEN: Optional[str] = None
    ERP_SESSION_PARAM: str = "session"

    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: Optional[str] = None

    @field_validator("ERP_BASE_URL", mode='before')
    def strip_erp_url(cls, v: Optional[str]) -> Any:
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @property
    def result_backend(self) -> str:
        if self.CELERY_RESULT_BACKEND:
            return self.CELERY_RESULT_BACKEND
        # Результаты храним в соседней базе Redis
        if self.CELERY_BROKER_URL.startswith("redis://") and self.CELERY_BROKER_URL.endswith("/0"):
            return self.CELERY_BROKER_URL[:-2] + "/1"
        return self.CELERY_BROKER_URL

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")


settings = Settings()
logging.info(f"settings {settings.PROJECT_NAME}: erp={settings.ERP_BASE_URL}")
