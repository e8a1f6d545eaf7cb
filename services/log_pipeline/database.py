# services/log_pipeline/database.py

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .config import settings

# Отдельная схема для логов (реально создаётся только в PostgreSQL)
PIPELINE_SCHEMA = "logs"


def _configure_sqlite(engine: Engine) -> None:
    """
    SQLite не умеет SKIP LOCKED, поэтому каждая транзакция открывается
    через BEGIN IMMEDIATE: захват пачки сериализуется с другими писателями.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # отключаем собственный BEGIN драйвера pysqlite
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str) -> Engine:
    """Создаёт движок SQLAlchemy с настройками под конкретный бэкенд."""
    url = make_url(database_url)
    backend = url.get_backend_name()

    options = {}
    connect_args = {}
    if backend != "postgresql":
        # схемы есть только в PostgreSQL, на остальных движках таблицы без префикса
        options["schema_translate_map"] = {PIPELINE_SCHEMA: None}
    if backend == "sqlite":
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
        execution_options=options,
    )
    if backend == "sqlite":
        _configure_sqlite(engine)
    return engine


# Движок SQLAlchemy
engine = build_engine(settings.DATABASE_URL)

# Фабрика сессий
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Базовый класс моделей SQLAlchemy для log_pipeline."""
    pass


def ensure_schema(bind: Engine = engine) -> None:
    """Создаёт схему logs, если она ещё не существует (только PostgreSQL)."""
    if bind.dialect.name != "postgresql":
        return
    with bind.begin() as conn:
        conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{PIPELINE_SCHEMA}"'))


def get_db():
    """Зависимость FastAPI для получения сессии БД."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
