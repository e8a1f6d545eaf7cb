"""
log_pipeline — сервис приёма и разбора логов.
Содержит буферизованный writer, хранилище сырых событий с захватом,
нормализатор, реестр динамических полей и планировщик фоновых задач.
"""

from .config import settings
from .database import engine, Base, get_db, ensure_schema

__all__ = [
    "settings",
    "engine",
    "Base",
    "get_db",
    "ensure_schema",
]
