from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ConfigDict

Severity = Literal["debug", "info", "warn", "error", "fatal", "unknown"]
FieldType = Literal["string", "number", "boolean", "datetime", "array", "object"]


class RawEventOut(BaseModel):
    """
    DTO захваченного сырого события (отдаётся parse worker'у после claim).
    """
    id: int
    payload: str
    source_token: Optional[str] = None
    received_at: datetime
    claimed: bool
    claimed_at: Optional[datetime] = None

    # Pydantic v2: включить работу напрямую с ORM-моделями
    model_config = ConfigDict(from_attributes=True)


class ParsedRecord(BaseModel):
    """
    Результат нормализации одного payload: фиксированные поля + dynamic_fields.
    Ни один ключ dynamic_fields не совпадает с псевдонимами фиксированных полей.
    """
    occurred_at: datetime
    severity: Severity = "info"
    free_text: Optional[str] = None
    app: Optional[str] = None
    environment: Optional[str] = None
    correlation_id: Optional[str] = None
    job_correlation_id: Optional[str] = None
    duration: Optional[float] = None
    status_code: Optional[int] = None
    route_controller: Optional[str] = None
    route_action: Optional[str] = None
    route_path: Optional[str] = None
    http_method: Optional[str] = None
    dynamic_fields: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def to_row(self, raw_event_id: int) -> Dict[str, Any]:
        """Строка для пакетной вставки в normalized_records."""
        row = self.model_dump()
        row["raw_event_id"] = raw_event_id
        return row


class FieldRecommendation(BaseModel):
    """
    Рекомендация на продвижение динамического поля в отдельную колонку.
    """
    name: str
    inferred_type: FieldType
    usage_count: int = Field(ge=0)
    last_seen_at: datetime
    priority: int = Field(
        ge=0,
        le=100,
        description="Приоритет продвижения 0..100 (объём + свежесть + тип)",
    )
    reason: str = Field(description="Человекочитаемое объяснение приоритета")


class FieldStatisticOut(BaseModel):
    name: str
    inferred_type: FieldType
    usage_count: int
    last_seen_at: datetime
    promoted: bool

    model_config = ConfigDict(from_attributes=True)


class ParseBatchRequest(BaseModel):
    """
    Параметры одного прохода разбора.
    """
    limit: Optional[int] = Field(
        default=None,
        gt=0,
        description="Сколько сырых событий захватить; по умолчанию CLAIM_BATCH_SIZE",
    )


class ParseBatchResult(BaseModel):
    """
    Результат одного прохода разбора.
    """
    processed: int = Field(default=0, description="Сколько сырых событий было захвачено")
    created: int = Field(default=0, description="Сколько нормализованных записей создано")
    skipped: int = Field(default=0, description="Сколько событий не удалось разобрать")
    details: Optional[List[str]] = Field(
        default=None,
        description="Опциональные текстовые детали (ошибки разбора и т.п.)",
    )


class PromotionResult(BaseModel):
    promoted: int = Field(description="Сколько полей помечено promoted")


class RetentionResult(BaseModel):
    records_deleted: int = 0
    raw_deleted: int = 0
    cache_cleared: int = 0


class PipelineStatus(BaseModel):
    """
    Сводная информация о состоянии пайплайна (приём, разбор, хранение).
    """
    total_raw: int
    unclaimed: int
    stale_unclaimed: int
    parse_backlog_percentage: float
    health_status: Literal["healthy", "degraded", "warning", "critical"]
    last_received_at: Optional[datetime] = None
    total_records: int
    total_fields: int
    promoted_fields: int
    hot_fields: int
