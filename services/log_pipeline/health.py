# services/log_pipeline/health.py

from sqlalchemy import func, select

from .config import settings
from .models import FieldStatistic, NormalizedRecord
from .raw_store import RawStore
from .schemas import PipelineStatus


def classify_health(backlog_percentage: float, stale_unclaimed: int) -> str:
    if backlog_percentage > 50:
        return "critical"
    if backlog_percentage > 20:
        return "warning"
    if stale_unclaimed > 100:
        return "degraded"
    return "healthy"


def pipeline_status(
    store: RawStore,
    hot_threshold: int = settings.PROMOTION_THRESHOLD,
) -> PipelineStatus:
    """
    Сводка по приёму и разбору: объём сырых событий, очередь на разбор,
    застрявшие события, размер реестра полей.
    """
    total_raw = store.count_total()
    unclaimed = store.count_unclaimed()
    stale = store.count_stale_unclaimed()
    backlog = round(unclaimed / total_raw * 100, 2) if total_raw else 0.0

    with store.session_factory() as session:
        total_records = session.scalar(select(func.count(NormalizedRecord.id))) or 0
        total_fields = session.scalar(select(func.count(FieldStatistic.id))) or 0
        promoted_fields = session.scalar(
            select(func.count(FieldStatistic.id)).where(FieldStatistic.promoted.is_(True))
        ) or 0
        hot_fields = session.scalar(
            select(func.count(FieldStatistic.id)).where(
                FieldStatistic.usage_count >= hot_threshold
            )
        ) or 0

    return PipelineStatus(
        total_raw=total_raw,
        unclaimed=unclaimed,
        stale_unclaimed=stale,
        parse_backlog_percentage=backlog,
        health_status=classify_health(backlog, stale),
        last_received_at=store.last_received_at(),
        total_records=total_records,
        total_fields=total_fields,
        promoted_fields=promoted_fields,
        hot_fields=hot_fields,
    )
