# services/log_pipeline/registry.py

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .adapters import BaseAdapter, adapter_for
from .config import settings
from .database import SessionLocal
from .models import FieldStatistic
from .normalizer import parse_iso_datetime
from .schemas import FieldRecommendation
from .utils.logging import internal_logger as logger
from .utils.timeutils import utcnow

# Максимальные баллы за объём и свежесть; тип даёт ещё до 25
USAGE_WEIGHT = 50
RECENCY_WEIGHT = 25

# Простые скаляры легче превратить в колонку, чем массивы/объекты
TYPE_SCORES = {
    "string": 25,
    "number": 25,
    "boolean": 25,
    "datetime": 20,
    "array": 10,
    "object": 10,
}


def infer_type(value: Any) -> str:
    """
    Тип значения по его форме: string/number/boolean/datetime/array/object.
    Строки, похожие на дату (ISO-8601), считаются datetime.
    """
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str) and _looks_like_datetime(value):
        return "datetime"
    return "string"


def _looks_like_datetime(value: str) -> bool:
    # минимум YYYY-MM-DD, иначе "2024" и прочие числа станут датами
    text = value.strip()
    if len(text) < 10 or text[4] != "-" or text[7] != "-":
        return False
    return parse_iso_datetime(text) is not None


class FieldUsage:
    """Накопленные за проход разбора вхождения одного динамического поля."""

    __slots__ = ("count", "inferred_type")

    def __init__(self, inferred_type: str, count: int = 0):
        self.inferred_type = inferred_type
        self.count = count


def collect_usage(usages: Dict[str, FieldUsage], dynamic_fields: Dict[str, Any]) -> None:
    """Добавляет вхождения полей одной записи в накопитель прохода."""
    for name, value in dynamic_fields.items():
        usage = usages.get(name)
        if usage is None:
            # тип берём по первому вхождению в пачке; в БД действует «первый навсегда»
            usage = usages[name] = FieldUsage(infer_type(value))
        usage.count += 1


class SchemaRegistry:
    """
    Реестр динамических полей: счётчики использования и рекомендации
    на продвижение «горячих» полей в отдельные колонки.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        adapter: Optional[BaseAdapter] = None,
        recency_window_days: int = settings.RECENCY_WINDOW_DAYS,
        auto_promote_cutoff: int = settings.AUTO_PROMOTE_CUTOFF,
    ):
        self.session_factory = session_factory
        self.adapter = adapter or adapter_for(session_factory.kw["bind"])
        self.recency_window_days = recency_window_days
        self.auto_promote_cutoff = auto_promote_cutoff

    # ---------- Учёт ----------

    def track(self, name: str, value: Any, now: Optional[datetime] = None) -> None:
        """Одно вхождение поля: создать при первом появлении, иначе +1."""
        with self.session_factory() as session:
            with session.begin():
                self.record_usage(session, {name: FieldUsage(infer_type(value), 1)}, now=now)

    def record_usage(
        self,
        session: Session,
        usages: Dict[str, FieldUsage],
        now: Optional[datetime] = None,
    ) -> None:
        """
        Один атомарный upsert на поле в текущей транзакции вызывающего.
        Счётчики увеличиваются на стороне БД, не read-modify-write.
        """
        if not usages:
            return
        seen_at = now or utcnow()
        rows = [
            {
                "name": name,
                "inferred_type": usage.inferred_type,
                "usage_count": usage.count,
                "last_seen_at": seen_at,
                "promoted": False,
            }
            for name, usage in usages.items()
            if usage.count > 0
        ]
        self.adapter.upsert_field_usage(session, rows)

    # ---------- Анализ ----------

    def analyze(
        self,
        threshold: int = settings.PROMOTION_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> List[FieldRecommendation]:
        """
        Непродвинутые поля с usage_count > threshold, виденные за окно
        свежести, с приоритетом 0..100. Сортировка: приоритет по убыванию,
        при равенстве — по имени.
        """
        now = now or utcnow()
        window_start = now - timedelta(days=self.recency_window_days)

        with self.session_factory() as session:
            fields = session.scalars(
                select(FieldStatistic).where(
                    FieldStatistic.promoted.is_(False),
                    FieldStatistic.usage_count > threshold,
                    FieldStatistic.last_seen_at >= window_start,
                )
            ).all()

        recommendations = [
            FieldRecommendation(
                name=field.name,
                inferred_type=field.inferred_type,
                usage_count=field.usage_count,
                last_seen_at=field.last_seen_at,
                priority=calculate_priority(field, threshold, now),
                reason=promotion_reason(field, threshold, now),
            )
            for field in fields
        ]
        recommendations.sort(key=lambda rec: (-rec.priority, rec.name))
        return recommendations

    def auto_promote(
        self,
        threshold: int = settings.PROMOTION_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Помечает promoted все поля с приоритетом не ниже auto_promote_cutoff.
        Это только флаг для внешней миграции схемы, колонки не создаются.
        """
        candidates = [
            rec for rec in self.analyze(threshold, now=now)
            if rec.priority >= self.auto_promote_cutoff
        ]
        if not candidates:
            return 0

        for rec in candidates:
            logger.info(
                f"⭐ Auto-promoting field '{rec.name}' "
                f"(usage: {rec.usage_count}, priority: {rec.priority})"
            )

        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(FieldStatistic)
                    .where(
                        FieldStatistic.name.in_([rec.name for rec in candidates]),
                        FieldStatistic.promoted.is_(False),
                    )
                    .values(promoted=True)
                )
        return result.rowcount

    # ---------- Ручное управление ----------

    def _set_promoted(self, name: str, promoted: bool) -> bool:
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(FieldStatistic)
                    .where(FieldStatistic.name == name)
                    .values(promoted=promoted)
                )
        return result.rowcount > 0

    def promote(self, name: str) -> bool:
        return self._set_promoted(name, True)

    def demote(self, name: str) -> bool:
        return self._set_promoted(name, False)

    def promoted_names(self) -> List[str]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(FieldStatistic.name)
                    .where(FieldStatistic.promoted.is_(True))
                    .order_by(FieldStatistic.name)
                ).all()
            )

    def list_fields(self, promoted: Optional[bool] = None) -> List[FieldStatistic]:
        """Все поля реестра по убыванию usage_count; опционально только promoted или нет."""
        query = select(FieldStatistic).order_by(
            FieldStatistic.usage_count.desc(), FieldStatistic.name
        )
        if promoted is not None:
            query = query.where(FieldStatistic.promoted.is_(promoted))
        with self.session_factory() as session:
            return list(session.scalars(query).all())

    def get(self, name: str) -> Optional[FieldStatistic]:
        with self.session_factory() as session:
            return session.scalar(select(FieldStatistic).where(FieldStatistic.name == name))


# ---------- Скоринг ----------


def _days_since(last_seen_at: datetime, now: datetime) -> float:
    return max((now - last_seen_at).total_seconds(), 0.0) / 86400.0


def calculate_priority(field: FieldStatistic, threshold: int, now: datetime) -> int:
    """
    Приоритет продвижения 0..100:
      - объём (0..50): usage_count относительно threshold * 10;
      - свежесть (0..25): сегодня > за неделю > старше;
      - тип (10..25): скаляры выше массивов/объектов.
    """
    scale = max(threshold, 1) * 10
    usage_score = min(USAGE_WEIGHT, int(field.usage_count / scale * USAGE_WEIGHT))

    days = _days_since(field.last_seen_at, now)
    if days < 1:
        recency_score = RECENCY_WEIGHT
    elif days < 7:
        recency_score = 15
    else:
        recency_score = 5

    type_score = TYPE_SCORES.get(field.inferred_type, 10)
    return max(0, min(100, usage_score + recency_score + type_score))


def promotion_reason(field: FieldStatistic, threshold: int, now: datetime) -> str:
    reasons = []
    if field.usage_count >= threshold * 10:
        reasons.append(f"extremely high usage ({field.usage_count})")
    elif field.usage_count >= threshold * 5:
        reasons.append(f"very high usage ({field.usage_count})")
    else:
        reasons.append(f"high usage ({field.usage_count})")

    days = _days_since(field.last_seen_at, now)
    if days < 1:
        reasons.append("actively used today")
    elif days < 7:
        reasons.append("recently active")
    return ", ".join(reasons)
