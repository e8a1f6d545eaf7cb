# services/log_pipeline/adapters.py
"""
Адаптеры хранилища: всё, что зависит от конкретного движка БД.

- захват пачки сырых событий (SKIP LOCKED или двухфазный захват);
- атомарный upsert счётчиков динамических полей.

Адаптер выбирается один раз по движку (adapter_for), дальше код
работает только через его интерфейс.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import FieldStatistic, RawEvent


class BaseAdapter(ABC):
    """Общий интерфейс адаптеров хранилища."""

    name = "base"

    def __init__(self, engine: Engine):
        self.engine = engine
        # стратегия захвата фиксируется при создании адаптера
        self._skip_locked = self.supports_skip_locked()

    def supports_skip_locked(self) -> bool:
        return False

    # ---------- Захват ----------

    def _unclaimed_query(self, columns, limit: int):
        return (
            select(*columns)
            .where(RawEvent.claimed.is_(False))
            .order_by(RawEvent.received_at.asc(), RawEvent.id.asc())
            .limit(limit)
        )

    def claim_batch(self, session: Session, limit: int, now: datetime) -> List[RawEvent]:
        """
        Захватывает до limit незахваченных событий (старые первыми) и
        помечает их claimed в той же транзакции. Коммит делает вызывающий.
        """
        if self._skip_locked:
            return self._claim_skip_locked(session, limit, now)
        return self._claim_two_phase(session, limit, now)

    def _claim_skip_locked(self, session: Session, limit: int, now: datetime) -> List[RawEvent]:
        # строки, заблокированные другим захватчиком, просто пропускаются
        events = session.scalars(
            self._unclaimed_query([RawEvent], limit).with_for_update(skip_locked=True)
        ).all()
        if not events:
            return []

        ids = [event.id for event in events]
        session.execute(
            update(RawEvent)
            .where(RawEvent.id.in_(ids))
            .values(claimed=True, claimed_at=now)
        )
        return list(events)

    def _claim_two_phase(self, session: Session, limit: int, now: datetime) -> List[RawEvent]:
        # 1. id под блокировкой, сериализующей захватчиков
        ids = session.scalars(
            self._unclaimed_query([RawEvent.id], limit).with_for_update()
        ).all()
        if not ids:
            return []

        # 2. сразу помечаем, пока блокировка у нас
        session.execute(
            update(RawEvent)
            .where(RawEvent.id.in_(ids), RawEvent.claimed.is_(False))
            .values(claimed=True, claimed_at=now)
        )

        # 3. только потом читаем полные строки
        return list(
            session.scalars(
                select(RawEvent)
                .where(RawEvent.id.in_(ids))
                .order_by(RawEvent.received_at.asc(), RawEvent.id.asc())
                .execution_options(populate_existing=True)
            ).all()
        )

    # ---------- Реестр полей ----------

    @abstractmethod
    def _upsert_statement(self, rows: List[Dict[str, Any]]):
        """Диалектный INSERT ... с увеличением usage_count при конфликте по name."""

    def upsert_field_usage(self, session: Session, rows: List[Dict[str, Any]]) -> None:
        """
        Одним условным upsert'ом создаёт/увеличивает счётчики полей.
        rows: name, inferred_type, usage_count (прирост), last_seen_at.
        inferred_type в UPDATE не участвует — первый тип остаётся навсегда.
        """
        if not rows:
            return
        ordered = sorted(rows, key=lambda row: row["name"])
        session.execute(self._upsert_statement(ordered))


class _OnConflictUpsertMixin:
    """INSERT ... ON CONFLICT (name) DO UPDATE — PostgreSQL и SQLite."""

    def _upsert_statement(self, rows):
        stmt = self._insert()(FieldStatistic).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=[FieldStatistic.name],
            set_={
                "usage_count": FieldStatistic.usage_count + stmt.excluded.usage_count,
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        )


class PostgresqlAdapter(_OnConflictUpsertMixin, BaseAdapter):
    name = "postgresql"

    def supports_skip_locked(self) -> bool:
        return True

    def _insert(self):
        return pg_insert


class SqliteAdapter(_OnConflictUpsertMixin, BaseAdapter):
    """
    SQLite без SKIP LOCKED: двухфазный захват. Сериализацию даёт
    BEGIN IMMEDIATE, который database.build_engine вешает на каждую транзакцию.
    """

    name = "sqlite"

    def _insert(self):
        return sqlite_insert


class MysqlAdapter(BaseAdapter):
    """MySQL 8.0+ / MariaDB 10.6+ — SKIP LOCKED, старые версии — двухфазный захват."""

    name = "mysql"

    def supports_skip_locked(self) -> bool:
        version = self.engine.dialect.server_version_info or ()
        if getattr(self.engine.dialect, "is_mariadb", False):
            return tuple(version[:2]) >= (10, 6)
        return tuple(version[:1]) >= (8,)

    def _upsert_statement(self, rows):
        stmt = mysql_insert(FieldStatistic).values(rows)
        return stmt.on_duplicate_key_update(
            usage_count=FieldStatistic.usage_count + stmt.inserted.usage_count,
            last_seen_at=stmt.inserted.last_seen_at,
        )


_ADAPTERS = {
    "postgresql": PostgresqlAdapter,
    "sqlite": SqliteAdapter,
    "mysql": MysqlAdapter,
    "mariadb": MysqlAdapter,
}


def adapter_for(engine: Engine) -> BaseAdapter:
    """Выбирает адаптер по движку. Неизвестный движок — ошибка конфигурации."""
    dialect = engine.dialect.name
    adapter_cls = _ADAPTERS.get(dialect)
    if adapter_cls is None:
        raise ValueError(f"Unsupported database backend: {dialect}")
    if adapter_cls is MysqlAdapter:
        # версия сервера известна только после первого подключения
        with engine.connect():
            pass
    return adapter_cls(engine)
