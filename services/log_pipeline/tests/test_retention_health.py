from datetime import timedelta

from sqlalchemy import select

from log_pipeline.health import classify_health, pipeline_status
from log_pipeline.jobs import field_analysis_job, retention_job
from log_pipeline.models import FacetCacheEntry, NormalizedRecord, RawEvent
from log_pipeline.registry import FieldUsage
from log_pipeline.retention import RetentionService
from log_pipeline.utils.timeutils import utcnow


def _record(raw_event_id: int, severity: str, age: timedelta, now) -> NormalizedRecord:
    return NormalizedRecord(
        raw_event_id=raw_event_id,
        occurred_at=now - age,
        severity=severity,
        free_text=f"{severity} record",
        dynamic_fields={},
    )


def test_retention_deletes_by_age_and_severity(session_factory) -> None:
    now = utcnow()
    old = now - timedelta(days=40)

    with session_factory() as session:
        with session.begin():
            session.add_all(
                [
                    RawEvent(id=1, payload="{}", received_at=old, claimed=True, claimed_at=old),
                    RawEvent(id=2, payload="{}", received_at=old, claimed=True, claimed_at=old),
                    RawEvent(id=3, payload="{}", received_at=old, claimed=False),
                    _record(2, "info", timedelta(days=1), now),
                    _record(100, "info", timedelta(days=40), now),
                    _record(101, "error", timedelta(days=40), now),
                    _record(102, "fatal", timedelta(days=100), now),
                    FacetCacheEntry(cache_key="expired", cache_value=[1], expires_at=now - timedelta(minutes=1)),
                    FacetCacheEntry(cache_key="fresh", cache_value=[2], expires_at=now + timedelta(hours=1)),
                ]
            )

    result = RetentionService(session_factory).cleanup(30, 90, now=now)

    assert (result.records_deleted, result.raw_deleted, result.cache_cleared) == (2, 1, 1)
    with session_factory() as session:
        raw_ids = session.scalars(select(RawEvent.id).order_by(RawEvent.id)).all()
        severities = sorted(session.scalars(select(NormalizedRecord.severity)).all())
        cache_keys = session.scalars(select(FacetCacheEntry.cache_key)).all()

    assert raw_ids == [2, 3]
    assert severities == ["error", "info"]
    assert cache_keys == ["fresh"]


def test_retention_job_returns_stats(session_factory) -> None:
    result = retention_job(RetentionService(session_factory), 30, 90)

    assert (result.records_deleted, result.raw_deleted, result.cache_cleared) == (0, 0, 0)


def test_classify_health_thresholds() -> None:
    assert classify_health(60.0, 0) == "critical"
    assert classify_health(30.0, 0) == "warning"
    assert classify_health(10.0, 150) == "degraded"
    assert classify_health(0.0, 0) == "healthy"


def test_pipeline_status_reports_backlog(store, registry) -> None:
    store.append([{"payload": "{}"} for _ in range(4)])
    store.claim(1)
    registry.track("user_id", 1)

    status = pipeline_status(store, hot_threshold=1)

    assert status.total_raw == 4
    assert status.unclaimed == 3
    assert status.parse_backlog_percentage == 75.0
    assert status.health_status == "critical"
    assert status.total_fields == 1
    assert status.hot_fields == 1
    assert status.promoted_fields == 0
    assert status.last_received_at is not None


def test_pipeline_status_empty_store_is_healthy(store) -> None:
    status = pipeline_status(store)

    assert status.total_raw == 0
    assert status.parse_backlog_percentage == 0.0
    assert status.health_status == "healthy"


def test_field_analysis_job_auto_promotes_only_when_enabled(registry) -> None:
    with registry.session_factory() as session:
        with session.begin():
            registry.record_usage(session, {"tenant": FieldUsage("string", 5000)})

    assert field_analysis_job(registry, auto_promote=False, threshold=100) == 0
    assert registry.promoted_names() == []

    assert field_analysis_job(registry, auto_promote=True, threshold=100) == 1
    assert registry.promoted_names() == ["tenant"]
