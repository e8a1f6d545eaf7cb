import sys
from loguru import logger
from ..config import settings

# Маркер внутренних записей пайплайна: такие логи никогда не уходят
# обратно в writer, иначе запись в хранилище порождала бы новые записи.
INTERNAL_MARKER = "pipeline_internal"

internal_logger = logger.bind(**{INTERNAL_MARKER: True})


def setup_logging():
    """
    Настраивает loguru-логгер для log_pipeline.

    Логи идут в stdout (Docker-friendly),
    уровень берём из settings.LOG_LEVEL.
    """
    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        colorize=True,
        format=log_format,
        level=settings.LOG_LEVEL.upper(),
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )

    logger.info(
        f"📜 Logging initialized for log_pipeline (level={settings.LOG_LEVEL.upper()})"
    )
    return logger


def is_external_record(record) -> bool:
    """Фильтр для sink'а writer'а: пропускаем только логи приложения."""
    return not record["extra"].get(INTERNAL_MARKER, False)


def attach_writer(writer, level: str = "DEBUG") -> int:
    """
    Подключает BufferedIngestWriter как sink loguru.
    Возвращает id обработчика (для logger.remove).
    """
    return logger.add(
        writer.sink,
        level=level,
        filter=is_external_record,
        enqueue=False,
        catch=True,
    )
