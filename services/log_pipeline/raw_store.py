# services/log_pipeline/raw_store.py

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from tenacity import RetryCallState
from tenacity import RetryError
from tenacity import retry
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from .adapters import BaseAdapter, adapter_for
from .config import settings
from .database import SessionLocal
from .models import RawEvent
from .schemas import RawEventOut
from .utils.logging import internal_logger as logger
from .utils.timeutils import utcnow


class ClaimError(RuntimeError):
    """Захват пачки не удался после всех повторов."""


class RawStore:
    """
    Надёжное хранилище сырых событий + атомарный захват (claim).

    append — одна многострочная вставка в одной транзакции.
    claim  — выбрать, пометить и вернуть незахваченные события одной
             транзакцией; пересечений между параллельными захватчиками нет.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        adapter: Optional[BaseAdapter] = None,
        claim_retries: int = settings.CLAIM_RETRIES,
        retry_wait: float = settings.CLAIM_RETRY_WAIT_SEC,
        retry_max_wait: float = settings.CLAIM_RETRY_MAX_WAIT_SEC,
    ):
        self.session_factory = session_factory
        self.adapter = adapter or adapter_for(session_factory.kw["bind"])
        self.claim_retries = claim_retries
        self.retry_wait = retry_wait
        self.retry_max_wait = retry_max_wait

    # ---------- Запись ----------

    def append(self, batch: Sequence[Dict[str, Any]]) -> int:
        """
        Сохраняет пачку событий. Элемент: payload (str), source_token,
        received_at (опционально). id назначает БД.
        """
        if not batch:
            return 0

        now = utcnow()
        rows = [
            {
                "payload": item["payload"],
                "source_token": item.get("source_token"),
                "received_at": item.get("received_at") or now,
                "claimed": False,
                "claimed_at": None,
            }
            for item in batch
        ]

        with self.session_factory() as session:
            with session.begin():
                session.execute(insert(RawEvent), rows)

        logger.debug(f"📥 Appended {len(rows)} raw events")
        return len(rows)

    # ---------- Захват ----------

    def claim(self, limit: int = settings.CLAIM_BATCH_SIZE) -> List[RawEventOut]:
        """
        Захватывает до limit событий (по received_at, старые первыми).
        Транзиентные ошибки (дедлок, таймаут блокировки) повторяются через
        tenacity с экспоненциальной паузой; после claim_retries неудач ClaimError.
        """
        if limit <= 0:
            return []

        claim_with_retry = retry(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(self.claim_retries),
            wait=wait_exponential(multiplier=self.retry_wait, max=self.retry_max_wait),
            before_sleep=self._log_retry,
        )(self._claim_once)

        try:
            return claim_with_retry(limit)
        except RetryError as e:
            raise ClaimError(
                f"Failed to claim raw events after {self.claim_retries} attempts"
            ) from e.last_attempt.exception()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(
            f"⚠️ Claim attempt {retry_state.attempt_number}/{self.claim_retries} failed: "
            f"{retry_state.outcome.exception()}"
        )

    def _claim_once(self, limit: int) -> List[RawEventOut]:
        now = utcnow()
        with self.session_factory() as session:
            with session.begin():
                events = self.adapter.claim_batch(session, limit, now)
                claimed = [RawEventOut.model_validate(event) for event in events]

        if claimed:
            logger.debug(f"🔒 Claimed {len(claimed)} raw events")
        return claimed

    # ---------- Статистика ----------

    def count_total(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(RawEvent.id))) or 0

    def count_unclaimed(self) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(RawEvent.id)).where(RawEvent.claimed.is_(False))
            ) or 0

    def count_stale_unclaimed(
        self,
        max_age: timedelta = timedelta(seconds=settings.STALE_UNCLAIMED_SEC),
        now: Optional[datetime] = None,
    ) -> int:
        """Сколько незахваченных событий ждут дольше max_age (детектор застоя)."""
        threshold = (now or utcnow()) - max_age
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(RawEvent.id)).where(
                    RawEvent.claimed.is_(False),
                    RawEvent.received_at < threshold,
                )
            ) or 0

    def last_received_at(self) -> Optional[datetime]:
        with self.session_factory() as session:
            return session.scalar(select(func.max(RawEvent.received_at)))
