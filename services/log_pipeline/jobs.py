# services/log_pipeline/jobs.py
"""
Фоновые задачи пайплайна. Их крутит Scheduler (JOB_MODE=scheduler)
или внешний планировщик (JOB_MODE=manual, например cron).
"""

from typing import Optional

from .config import settings
from .parse_worker import ParseWorker
from .registry import SchemaRegistry
from .retention import RetentionService
from .schemas import ParseBatchResult, RetentionResult
from .utils.logging import internal_logger as logger


def parse_job(worker: ParseWorker, limit: Optional[int] = None) -> ParseBatchResult:
    result = worker.run_once(limit)
    if result.processed:
        logger.info(
            f"🧹 Parse pass finished: processed={result.processed}, "
            f"created={result.created}, skipped={result.skipped}"
        )
    return result


def cache_cleanup_job(retention: RetentionService) -> int:
    cleared = retention.cleanup_cache()
    if cleared:
        logger.info(f"🧽 Cleared {cleared} expired facet cache entries")
    return cleared


def retention_job(
    retention: RetentionService,
    retention_days: int = settings.RETENTION_DAYS,
    error_retention_days: int = settings.ERROR_RETENTION_DAYS,
) -> RetentionResult:
    logger.info(
        f"🗑️ Retention cleanup started (retention: {retention_days} days, "
        f"errors: {error_retention_days} days)"
    )
    result = retention.cleanup(retention_days, error_retention_days)
    logger.info(
        f"🗑️ Deleted {result.records_deleted} records, {result.raw_deleted} raw events, "
        f"cleared {result.cache_cleared} cache entries"
    )
    return result


def field_analysis_job(
    registry: SchemaRegistry,
    auto_promote: bool = settings.AUTO_PROMOTE_FIELDS,
    threshold: int = settings.PROMOTION_THRESHOLD,
) -> int:
    """
    Логирует топ-10 кандидатов на продвижение; при auto_promote
    помечает подходящие поля. Возвращает число продвинутых полей.
    """
    recommendations = registry.analyze(threshold)
    if not recommendations:
        logger.info("📊 No fields meet promotion threshold")
        return 0

    logger.info(f"📊 Found {len(recommendations)} fields for potential promotion")
    for rec in recommendations[:10]:
        logger.info(f"  - {rec.name} ({rec.usage_count} uses, priority: {rec.priority})")

    if not auto_promote:
        return 0

    promoted = registry.auto_promote(threshold)
    logger.info(f"⭐ Auto-promoted {promoted} fields")
    return promoted
