# services/log_pipeline/parse_worker.py

from typing import Dict, List, Optional, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import NormalizedRecord
from .normalizer import normalize
from .raw_store import RawStore
from .registry import FieldUsage, SchemaRegistry, collect_usage
from .schemas import ParseBatchResult
from .utils.logging import internal_logger as logger
from .utils.timeutils import utcnow

# Ошибки данных одной строки: их изолируем, остальные (соединение,
# блокировки) пробрасываем наверх
ROW_ERRORS = (DataError, IntegrityError, OverflowError, ValueError, TypeError)

Entry = Tuple[int, dict]


class ParseWorker:
    """
    Один проход разбора:
      1. захватить пачку сырых событий из RawStore,
      2. нормализовать каждое (ошибка одного не мешает остальным),
      3. одной транзакцией: вставить нормализованные записи пачкой
         и обновить счётчики динамических полей.

    Если пакетная вставка падает на данных, пачка вставляется построчно
    в savepoint'ах, и теряется только сломанная запись.

    Непарсящиеся события остаются захваченными и автоматически не
    повторяются, они попадают в skipped/details.
    """

    def __init__(
        self,
        store: Optional[RawStore] = None,
        registry: Optional[SchemaRegistry] = None,
        batch_size: int = settings.CLAIM_BATCH_SIZE,
    ):
        self.store = store or RawStore()
        self.registry = registry or SchemaRegistry(
            self.store.session_factory, adapter=self.store.adapter
        )
        self.batch_size = batch_size

    def run_once(self, limit: Optional[int] = None) -> ParseBatchResult:
        claimed = self.store.claim(limit or self.batch_size)
        if not claimed:
            return ParseBatchResult()

        logger.info(f"🧹 Processing {len(claimed)} raw events")

        entries: List[Entry] = []
        details: List[str] = []
        created_at = utcnow()

        for raw_event in claimed:
            try:
                record = normalize(raw_event.payload)
            except Exception as e:
                logger.error(f"❌ Failed to normalize raw event {raw_event.id}: {e}")
                details.append(f"raw event {raw_event.id}: {e}")
                continue

            if record is None:
                logger.warning(f"⚠️ Raw event {raw_event.id} is not a JSON object, skipped")
                details.append(f"raw event {raw_event.id}: unparseable payload")
                continue

            row = record.to_row(raw_event.id)
            row["created_at"] = created_at
            entries.append((raw_event.id, row))

        persisted: List[Entry] = []
        if entries:
            with self.store.session_factory() as session:
                with session.begin():
                    persisted = self._insert_records(session, entries, details)
                    usages: Dict[str, FieldUsage] = {}
                    for _, row in persisted:
                        collect_usage(usages, row["dynamic_fields"])
                    self.registry.record_usage(session, usages, now=created_at)
            logger.info(f"💾 Inserted {len(persisted)} normalized records")

        return ParseBatchResult(
            processed=len(claimed),
            created=len(persisted),
            skipped=len(claimed) - len(persisted),
            details=details or None,
        )

    def _insert_records(
        self, session: Session, entries: List[Entry], details: List[str]
    ) -> List[Entry]:
        try:
            with session.begin_nested():
                session.execute(insert(NormalizedRecord), [row for _, row in entries])
            return entries
        except ROW_ERRORS as e:
            logger.warning(f"⚠️ Batch insert failed, falling back to row-by-row: {e}")

        persisted: List[Entry] = []
        for raw_event_id, row in entries:
            try:
                with session.begin_nested():
                    session.execute(insert(NormalizedRecord), [row])
            except ROW_ERRORS as e:
                logger.error(f"❌ Failed to store record for raw event {raw_event_id}: {e}")
                details.append(f"raw event {raw_event_id}: {e}")
                continue
            persisted.append((raw_event_id, row))
        return persisted
