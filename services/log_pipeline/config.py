import os
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Конфигурация log_pipeline — сервиса приёма, буферизации и нормализации логов.
    Все параметры — простые скаляры, читаются из окружения / .env.
    Некорректные значения (интервалы, часы запуска) валят сервис на старте.
    """

    # --- Общая информация ---
    SERVICE_NAME: str = "Log Pipeline Service"
    VERSION: str = "1.0.0"
    ENV: str = os.getenv("ENV", "dev")

    # --- Подключение к базе ---
    # PostgreSQL / MySQL / SQLite: стратегия захвата выбирается по движку
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./log_pipeline.db",
    )

    # --- Буферизованная запись (writer) ---
    WRITER_BATCH_SIZE: int = Field(default=100, gt=0)
    WRITER_FLUSH_INTERVAL_SEC: float = Field(default=5.0, gt=0)
    WRITER_MAX_QUEUE_SIZE: int = Field(default=10_000, gt=0)
    EAGER_FLUSH_LEVELS: List[str] = ["error", "fatal"]
    SOURCE_TOKEN: Optional[str] = None

    # --- Захват и разбор сырых событий ---
    CLAIM_BATCH_SIZE: int = Field(default=200, gt=0)
    CLAIM_RETRIES: int = Field(default=3, gt=0)
    # экспоненциальная пауза между повторами захвата (tenacity)
    CLAIM_RETRY_WAIT_SEC: float = Field(default=0.1, ge=0)
    CLAIM_RETRY_MAX_WAIT_SEC: float = Field(default=2.0, ge=0)

    # --- Реестр динамических полей ---
    PROMOTION_THRESHOLD: int = Field(default=1000, ge=0)
    AUTO_PROMOTE_CUTOFF: int = Field(default=80, ge=0, le=100)
    AUTO_PROMOTE_FIELDS: bool = False
    RECENCY_WINDOW_DAYS: int = Field(default=30, gt=0)

    # --- Планировщик ---
    JOB_MODE: Literal["scheduler", "manual"] = "scheduler"
    PARSE_INTERVAL_SEC: float = Field(default=10, gt=0)
    CACHE_CLEANUP_INTERVAL_SEC: float = Field(default=3600, gt=0)
    RETENTION_HOUR: int = Field(default=2, ge=0, le=23)
    FIELD_ANALYSIS_HOUR: int = Field(default=3, ge=0, le=23)
    DAILY_POLL_INTERVAL_SEC: float = Field(default=600, gt=0)
    DAILY_COOLDOWN_SEC: float = Field(default=3600, gt=0)
    STOP_GRACE_SEC: float = Field(default=5, gt=0)

    # --- Ретеншн и здоровье ---
    RETENTION_DAYS: int = Field(default=30, gt=0)
    ERROR_RETENTION_DAYS: int = Field(default=90, gt=0)
    STALE_UNCLAIMED_SEC: int = Field(default=3600, gt=0)

    # --- Логирование ---
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Глобальный объект конфигурации
settings = Settings()
