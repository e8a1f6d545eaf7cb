# services/log_pipeline/routers/pipeline.py

from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..config import settings
from ..health import pipeline_status
from ..jobs import parse_job
from ..parse_worker import ParseWorker
from ..raw_store import ClaimError, RawStore
from ..registry import SchemaRegistry
from ..schemas import (
    FieldRecommendation,
    FieldStatisticOut,
    ParseBatchRequest,
    ParseBatchResult,
    PipelineStatus,
    PromotionResult,
)
from ..utils.logging import internal_logger as logger

router = APIRouter(prefix="/api/v1/pipeline", tags=["pipeline"])


# ---------- Зависимости ----------


@lru_cache
def get_parse_worker() -> ParseWorker:
    return ParseWorker()


def get_raw_store(worker: ParseWorker = Depends(get_parse_worker)) -> RawStore:
    return worker.store


def get_registry(worker: ParseWorker = Depends(get_parse_worker)) -> SchemaRegistry:
    return worker.registry


# ---------- Служебные эндпойнты ----------


@router.get("/status", response_model=PipelineStatus)
def get_status(store: RawStore = Depends(get_raw_store)):
    """
    Состояние пайплайна:
      - сколько сырых событий принято и сколько ждут разбора
      - застрявшие незахваченные события
      - сколько полей в реестре и сколько из них «горячие»
    """
    return pipeline_status(store)


# ---------- Разбор ----------


@router.post("/run", response_model=ParseBatchResult)
def run_parse(
    req: Optional[ParseBatchRequest] = None,
    worker: ParseWorker = Depends(get_parse_worker),
):
    """Один проход разбора (для JOB_MODE=manual и отладки)."""
    limit = req.limit if req else None
    logger.info(f"🧹 Parse run requested: limit={limit}")
    try:
        return parse_job(worker, limit)
    except ClaimError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ---------- Реестр полей ----------


@router.get("/fields", response_model=List[FieldStatisticOut])
def list_fields(
    promoted: Optional[bool] = None,
    registry: SchemaRegistry = Depends(get_registry),
):
    """
    Содержимое реестра динамических полей.
    promoted=true|false фильтрует по флагу продвижения.
    """
    return [FieldStatisticOut.model_validate(field) for field in registry.list_fields(promoted)]


@router.get("/fields/recommendations", response_model=List[FieldRecommendation])
def list_recommendations(
    threshold: int = Query(default=settings.PROMOTION_THRESHOLD, ge=0),
    registry: SchemaRegistry = Depends(get_registry),
):
    """Кандидаты на продвижение в колонки, по убыванию приоритета."""
    return registry.analyze(threshold)


@router.post("/fields/auto_promote", response_model=PromotionResult)
def auto_promote_fields(
    threshold: int = Query(default=settings.PROMOTION_THRESHOLD, ge=0),
    registry: SchemaRegistry = Depends(get_registry),
):
    promoted = registry.auto_promote(threshold)
    logger.info(f"⭐ Auto-promoted {promoted} fields")
    return PromotionResult(promoted=promoted)
