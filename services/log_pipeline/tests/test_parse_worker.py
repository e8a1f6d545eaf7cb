import json

from sqlalchemy import select

from log_pipeline import parse_worker as parse_worker_module
from log_pipeline.models import NormalizedRecord
from log_pipeline.writer import BufferedIngestWriter


def _records(session_factory):
    with session_factory() as session:
        return session.scalars(select(NormalizedRecord).order_by(NormalizedRecord.id)).all()


def test_end_to_end_single_event(store, registry, worker, session_factory) -> None:
    store.append([{"payload": json.dumps({"level": "info", "user_id": 42, "message": "hi"})}])

    result = worker.run_once()

    assert (result.processed, result.created, result.skipped) == (1, 1, 0)
    records = _records(session_factory)
    assert len(records) == 1
    assert records[0].severity == "info"
    assert records[0].free_text == "hi"
    assert records[0].dynamic_fields == {"user_id": 42}

    field = registry.get("user_id")
    assert field.usage_count == 1
    assert field.inferred_type == "number"
    assert store.count_unclaimed() == 0


def test_usage_counted_per_occurrence_within_batch(store, registry, worker) -> None:
    store.append(
        [{"payload": json.dumps({"message": f"m{i}", "user_id": i})} for i in range(3)]
    )

    worker.run_once()

    assert registry.get("user_id").usage_count == 3
    assert registry.get("message") is None


def test_malformed_payload_is_skipped_and_stays_claimed(store, worker, session_factory) -> None:
    store.append(
        [
            {"payload": '{"level": "info", "message": '},
            {"payload": json.dumps({"level": "warn", "message": "ok"})},
        ]
    )

    result = worker.run_once()

    assert (result.processed, result.created, result.skipped) == (2, 1, 1)
    assert len(result.details) == 1
    assert store.count_unclaimed() == 0
    assert worker.run_once().processed == 0
    assert [record.free_text for record in _records(session_factory)] == ["ok"]


def test_oversized_status_does_not_break_batch(store, worker, session_factory) -> None:
    store.append(
        [
            {"payload": json.dumps({"message": "first", "status": 200})},
            {"payload": json.dumps({"message": "second", "status": 10**20})},
            {"payload": json.dumps({"message": "third", "status": 500})},
        ]
    )

    result = worker.run_once()

    assert (result.processed, result.created, result.skipped) == (3, 3, 0)
    records = _records(session_factory)
    assert [record.status_code for record in records] == [200, None, 500]


def test_unstorable_record_is_isolated_from_batch(
    store, registry, worker, session_factory, monkeypatch
) -> None:
    original_normalize = parse_worker_module.normalize

    def normalize_with_oversized_status(raw):
        record = original_normalize(raw)
        if record is not None and record.free_text == "second":
            return record.model_copy(update={"status_code": 10**20})
        return record

    monkeypatch.setattr(parse_worker_module, "normalize", normalize_with_oversized_status)
    store.append(
        [
            {"payload": json.dumps({"message": name, "user_id": i})}
            for i, name in enumerate(["first", "second", "third"])
        ]
    )

    result = worker.run_once()

    assert (result.processed, result.created, result.skipped) == (3, 2, 1)
    assert len(result.details) == 1
    assert [record.free_text for record in _records(session_factory)] == ["first", "third"]
    assert registry.get("user_id").usage_count == 2
    assert store.count_unclaimed() == 0


def test_empty_store_is_a_noop(worker) -> None:
    result = worker.run_once()

    assert (result.processed, result.created, result.skipped) == (0, 0, 0)
    assert result.details is None


def test_writer_to_records_pipeline(store, worker, session_factory) -> None:
    writer = BufferedIngestWriter(
        store,
        batch_size=100,
        flush_interval=60,
        eager_flush_levels=("error", "fatal"),
        start_timer=False,
    )
    for i in range(3):
        writer.write({"level": "info", "message": f"step {i}", "order_id": i})
    writer.write({"level": "error", "message": "payment failed", "order_id": 99})

    assert store.count_total() == 4

    result = worker.run_once(limit=10)
    writer.close()

    assert result.created == 4
    records = _records(session_factory)
    assert [record.severity for record in records] == ["info", "info", "info", "error"]
    assert records[-1].dynamic_fields == {"order_id": 99}
