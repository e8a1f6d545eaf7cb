from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[3]
SERVICES_DIR = ROOT / "services"
if str(SERVICES_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICES_DIR))

import pytest
from sqlalchemy.orm import sessionmaker

from log_pipeline import models  # noqa: F401
from log_pipeline.database import Base, build_engine
from log_pipeline.parse_worker import ParseWorker
from log_pipeline.raw_store import RawStore
from log_pipeline.registry import SchemaRegistry


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def store(session_factory) -> RawStore:
    return RawStore(session_factory)


@pytest.fixture
def registry(session_factory, store) -> SchemaRegistry:
    return SchemaRegistry(session_factory, adapter=store.adapter, recency_window_days=30)


@pytest.fixture
def worker(store, registry) -> ParseWorker:
    return ParseWorker(store=store, registry=registry, batch_size=50)
