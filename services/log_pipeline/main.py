# services/log_pipeline/main.py

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .utils.logging import setup_logging
from .database import engine, ensure_schema, Base
from .config import settings
from .routers import pipeline as pipeline_router
from .scheduler import Scheduler
from . import models  # noqa: F401  регистрирует таблицы в Base.metadata


# --- Логирование ---
logger = setup_logging()

# --- Приложение FastAPI ---
app = FastAPI(
    title=settings.SERVICE_NAME,
    version=settings.VERSION,
    description=(
        "Log Pipeline — буферизованный приём сырых логов, разбор в "
        "нормализованные записи и адаптивный реестр динамических полей."
    ),
)

# --- Метрики Prometheus ---
Instrumentator().instrument(app).expose(app, include_in_schema=False)


# --- События приложения ---
@app.on_event("startup")
def startup_event():
    """
    Создаёт схему и таблицы при запуске.
    В режиме JOB_MODE=scheduler запускает встроенный планировщик.
    """
    ensure_schema()
    Base.metadata.create_all(bind=engine)

    app.state.scheduler = None
    if settings.JOB_MODE == "scheduler":
        scheduler = Scheduler.from_settings(worker=pipeline_router.get_parse_worker())
        scheduler.start()
        app.state.scheduler = scheduler

    logger.info(f"📜 log_pipeline started (job mode: {settings.JOB_MODE}) and schema ensured.")


@app.on_event("shutdown")
def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()
    logger.info("👋 log_pipeline stopped.")


# --- Health & readiness ---
@app.get("/health", tags=["system"])
async def health():
    return {"status": "ok", "service": "log_pipeline"}


@app.get("/ready", tags=["system"])
async def ready():
    return {"status": "ready"}


@app.get("/", include_in_schema=False)
async def root():
    return {"message": "Log Pipeline is operational"}


# --- Маршруты пайплайна ---
app.include_router(pipeline_router.router)
