# services/log_pipeline/retention.py

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import sessionmaker

from .config import settings
from .database import SessionLocal
from .models import FacetCacheEntry, NormalizedRecord, RawEvent
from .schemas import RetentionResult
from .utils.timeutils import utcnow

ERROR_SEVERITIES = ("error", "fatal")


class RetentionService:
    """
    Простое удаление по возрасту:
      - обычные записи старше retention_days,
      - error/fatal старше error_retention_days,
      - захваченные сырые события старше retention_days без записи,
      - просроченный кэш фасетов.
    Незахваченные сырые события не трогаем никогда.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def cleanup(
        self,
        retention_days: int = settings.RETENTION_DAYS,
        error_retention_days: int = settings.ERROR_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> RetentionResult:
        now = now or utcnow()
        regular_threshold = now - timedelta(days=retention_days)
        error_threshold = now - timedelta(days=error_retention_days)

        with self.session_factory() as session:
            with session.begin():
                regular = session.execute(
                    delete(NormalizedRecord).where(
                        NormalizedRecord.occurred_at < regular_threshold,
                        NormalizedRecord.severity.not_in(ERROR_SEVERITIES),
                    )
                ).rowcount
                errors = session.execute(
                    delete(NormalizedRecord).where(
                        NormalizedRecord.occurred_at < error_threshold,
                        NormalizedRecord.severity.in_(ERROR_SEVERITIES),
                    )
                ).rowcount

                has_record = exists(
                    select(NormalizedRecord.id).where(
                        NormalizedRecord.raw_event_id == RawEvent.id
                    )
                )
                raw = session.execute(
                    delete(RawEvent)
                    .where(
                        RawEvent.claimed.is_(True),
                        RawEvent.received_at < regular_threshold,
                        ~has_record,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount

        result = RetentionResult(
            records_deleted=regular + errors,
            raw_deleted=raw,
            cache_cleared=self.cleanup_cache(now=now),
        )
        return result

    def cleanup_cache(self, now: Optional[datetime] = None) -> int:
        """Удаляет просроченные строки кэша фасетов."""
        now = now or utcnow()
        with self.session_factory() as session:
            with session.begin():
                return session.execute(
                    delete(FacetCacheEntry).where(FacetCacheEntry.expires_at < now)
                ).rowcount
