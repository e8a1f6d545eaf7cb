# services/log_pipeline/models.py

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base, PIPELINE_SCHEMA
from .utils.timeutils import utcnow

# BIGINT в PostgreSQL/MySQL, INTEGER в SQLite (иначе не будет автоинкремента)
BigId = BigInteger().with_variant(Integer, "sqlite")


class RawEvent(Base):
    """
    Сырое событие лога в том виде, в каком его прислал продюсер.
    Его потом забирает (claim) parse worker.
    После захвата claimed/claimed_at больше не меняются.
    """
    __tablename__ = "raw_events"
    __table_args__ = (
        # выборка незахваченных строк в порядке поступления
        Index("ix_raw_events_claimed_received", "claimed", "received_at"),
        {"schema": PIPELINE_SCHEMA},
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)

    # Сериализованный JSON от продюсера, хранится как есть
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    # Ссылка на источник (токен/сервис), опционально
    source_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class NormalizedRecord(Base):
    """
    Нормализованная запись — результат разбора одного RawEvent.
    Фиксированные поля вынесены в колонки, остальное лежит в dynamic_fields.
    raw_event_id без внешнего ключа: вставка пачкой важнее ссылочной целостности.
    """
    __tablename__ = "normalized_records"
    __table_args__ = (
        Index("ix_normalized_records_severity_occurred", "severity", "occurred_at"),
        {"schema": PIPELINE_SCHEMA},
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    raw_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    free_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    app: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    environment: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Корреляция запросов и фоновых задач
    correlation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    job_correlation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # HTTP / производительность
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    route_controller: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    route_action: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    route_path: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    http_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    dynamic_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Когда запись была создана parse worker'ом
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class FieldStatistic(Base):
    """
    Статистика по имени динамического поля.
    inferred_type фиксируется при первом появлении и не перезаписывается,
    usage_count только растёт.
    """
    __tablename__ = "field_statistics"
    __table_args__ = {"schema": PIPELINE_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    inferred_type: Mapped[str] = mapped_column(String(16), nullable=False)
    usage_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    promoted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)


class FacetCacheEntry(Base):
    """
    Кэш фасетов для слоя поиска.
    Сам пайплайн только чистит просроченные строки.
    """
    __tablename__ = "facet_cache"
    __table_args__ = {"schema": PIPELINE_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    cache_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
