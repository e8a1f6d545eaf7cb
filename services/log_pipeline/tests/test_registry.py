import threading
from datetime import datetime, timedelta

from log_pipeline.models import FieldStatistic
from log_pipeline.registry import (
    FieldUsage,
    calculate_priority,
    infer_type,
    promotion_reason,
)
from log_pipeline.utils.timeutils import utcnow


def _seed(registry, name: str, inferred_type: str, count: int, seen_at: datetime) -> None:
    with registry.session_factory() as session:
        with session.begin():
            registry.record_usage(session, {name: FieldUsage(inferred_type, count)}, now=seen_at)


def test_infer_type_by_value_shape() -> None:
    assert infer_type(True) == "boolean"
    assert infer_type(42) == "number"
    assert infer_type(1.5) == "number"
    assert infer_type("hello") == "string"
    assert infer_type("2024-01-15T10:30:00Z") == "datetime"
    assert infer_type("2024") == "string"
    assert infer_type([1, 2]) == "array"
    assert infer_type({"a": 1}) == "object"


def test_track_creates_then_increments_with_sticky_type(registry) -> None:
    registry.track("user_id", 42)
    registry.track("user_id", "not-a-number")

    field = registry.get("user_id")
    assert field.usage_count == 2
    assert field.inferred_type == "number"
    assert field.promoted is False


def test_usage_count_is_monotonic(registry) -> None:
    counts = []
    for value in (1, "x", [1], None):
        registry.track("mixed", value)
        counts.append(registry.get("mixed").usage_count)

    assert counts == sorted(counts)
    assert counts[-1] == 4


def test_concurrent_tracking_loses_no_updates(registry) -> None:
    def tracker():
        for _ in range(25):
            registry.track("shared", 1)

    threads = [threading.Thread(target=tracker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert registry.get("shared").usage_count == 100


def test_analyze_filters_by_threshold_recency_and_promotion(registry) -> None:
    now = utcnow()
    _seed(registry, "hot", "string", 50, now)
    _seed(registry, "cold", "string", 5, now)
    _seed(registry, "forgotten", "string", 50, now - timedelta(days=40))
    _seed(registry, "already", "string", 50, now)
    registry.promote("already")

    names = [rec.name for rec in registry.analyze(threshold=10, now=now)]

    assert names == ["hot"]


def test_analyze_ranks_scalars_above_arrays_and_breaks_ties_by_name(registry) -> None:
    now = utcnow()
    _seed(registry, "zeta", "string", 500, now)
    _seed(registry, "alpha", "string", 500, now)
    _seed(registry, "tags", "array", 500, now)

    recommendations = registry.analyze(threshold=100, now=now)

    assert [rec.name for rec in recommendations] == ["alpha", "zeta", "tags"]
    assert recommendations[0].priority > recommendations[2].priority
    assert all(0 <= rec.priority <= 100 for rec in recommendations)


def test_calculate_priority_components() -> None:
    now = datetime(2024, 6, 1, 12, 0, 0)

    def field(inferred_type, usage, age):
        return FieldStatistic(
            name="f", inferred_type=inferred_type, usage_count=usage, last_seen_at=now - age
        )

    assert calculate_priority(field("string", 1000, timedelta(hours=1)), 100, now) == 100
    assert calculate_priority(field("array", 500, timedelta(days=3)), 100, now) == 50
    assert calculate_priority(field("datetime", 200, timedelta(days=20)), 100, now) == 35
    assert calculate_priority(field("number", 10**9, timedelta(hours=1)), 100, now) == 100


def test_promotion_reason_text() -> None:
    now = datetime(2024, 6, 1, 12, 0, 0)
    field = FieldStatistic(
        name="f", inferred_type="string", usage_count=1000, last_seen_at=now
    )

    assert promotion_reason(field, 100, now) == "extremely high usage (1000), actively used today"


def test_auto_promote_marks_high_priority_fields(registry) -> None:
    now = utcnow()
    _seed(registry, "request_path", "string", 1000, now)
    _seed(registry, "payload_items", "array", 150, now - timedelta(days=10))

    assert registry.auto_promote(threshold=100, now=now) == 1
    assert registry.promoted_names() == ["request_path"]
    assert registry.auto_promote(threshold=100, now=now) == 0


def test_manual_promote_and_demote(registry) -> None:
    registry.track("tenant", "acme")

    assert registry.promote("tenant") is True
    assert registry.promoted_names() == ["tenant"]
    assert registry.demote("tenant") is True
    assert registry.promoted_names() == []
    assert registry.promote("missing") is False
