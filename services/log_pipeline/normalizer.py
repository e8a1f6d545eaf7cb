# services/log_pipeline/normalizer.py
"""
Нормализация сырого payload в ParsedRecord.

Чистая функция: никакого I/O, никакой БД. Фиксированные поля достаются
по любому из псевдонимов, всё остальное верхнего уровня уходит в
dynamic_fields. Непарсящийся payload даёт None, а не исключение.
"""

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from .utils.timeutils import utcnow
from .schemas import ParsedRecord

# Псевдонимы фиксированных полей в порядке приоритета
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "occurred_at": ("timestamp", "created_at", "occurred_at", "time"),
    "severity": ("level", "severity"),
    "free_text": ("message", "msg", "text"),
    "app": ("app", "application"),
    "environment": ("env", "environment"),
    "correlation_id": ("request_id", "correlation_id"),
    "job_correlation_id": ("job_id",),
    "duration": ("duration", "duration_ms"),
    "status_code": ("status", "status_code"),
    "route_controller": ("controller",),
    "route_action": ("action",),
    "route_path": ("path",),
    "http_method": ("method", "http_method"),
}

# Все ключи payload, которые никогда не попадают в dynamic_fields
STANDARD_KEYS = frozenset(alias for aliases in FIELD_ALIASES.values() for alias in aliases)

VALID_SEVERITIES = ("debug", "info", "warn", "error", "fatal", "unknown")
DEFAULT_SEVERITY = "info"

# Больше этого — миллисекунды, меньше — секунды
EPOCH_MILLIS_THRESHOLD = 10_000_000_000

# Всё вне диапазона не похоже на HTTP-статус и в колонку не пишется
STATUS_CODE_RANGE = (0, 999)

_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

Payload = Union[str, bytes, bytearray, Dict[str, Any]]


# ---------- Вспомогательные функции ----------


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _first_present(payload: Dict[str, Any], aliases: Tuple[str, ...]) -> Any:
    for key in aliases:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(value: str) -> Optional[datetime]:
    """ISO-8601-подобная строка → naive UTC datetime (или None)."""
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return _to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_epoch(value: Union[int, float]) -> Optional[datetime]:
    """Unix-время в секундах или миллисекундах → naive UTC datetime."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    seconds = value / 1000.0 if value > EPOCH_MILLIS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_timestamp_candidate(value: Any) -> Optional[datetime]:
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, (int, float)):
        return parse_epoch(value)
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is not None:
            return parsed
        text = value.strip()
        if _NUMERIC_RE.match(text):
            return parse_epoch(float(text) if "." in text else int(text))
    return None


def extract_timestamp(payload: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    """
    Перебирает ключи времени в фиксированном порядке; первый успешно
    разобранный выигрывает. Если ни один не подошёл — текущее время.
    """
    for key in FIELD_ALIASES["occurred_at"]:
        value = payload.get(key)
        if _is_blank(value):
            continue
        parsed = _parse_timestamp_candidate(value)
        if parsed is not None:
            return parsed
    return now if now is not None else utcnow()


def normalize_severity(value: Any) -> str:
    """Приводит уровень к debug/info/warn/error/fatal/unknown; всё прочее → info."""
    if _is_blank(value):
        return DEFAULT_SEVERITY
    level = str(value).strip().lower()
    return level if level in VALID_SEVERITIES else DEFAULT_SEVERITY


def _extract_duration(payload: Dict[str, Any]) -> Optional[float]:
    value = _first_present(payload, FIELD_ALIASES["duration"])
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return None
    return duration if math.isfinite(duration) else None


def _extract_status_code(payload: Dict[str, Any]) -> Optional[int]:
    value = _first_present(payload, FIELD_ALIASES["status_code"])
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        code = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return code if STATUS_CODE_RANGE[0] <= code <= STATUS_CODE_RANGE[1] else None


def decode_payload(raw: Payload) -> Optional[Dict[str, Any]]:
    """Десериализует payload; всё, что не является непустым JSON-объектом, → None."""
    if isinstance(raw, dict):
        data = raw
    else:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                return None
        if not isinstance(raw, str) or not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError):
            return None
    if not isinstance(data, dict) or not data:
        return None
    return data


# ---------- Основная функция ----------


def normalize(raw: Payload, now: Optional[datetime] = None) -> Optional[ParsedRecord]:
    """
    Нормализует один payload.

    Возвращает None, если payload нельзя разобрать как JSON-объект
    (обрезанный JSON, массив, пустая строка): решение о повторе принимает
    вызывающий код.
    """
    payload = decode_payload(raw)
    if payload is None:
        return None

    dynamic_fields = {
        key: value for key, value in payload.items() if key not in STANDARD_KEYS
    }

    return ParsedRecord(
        occurred_at=extract_timestamp(payload, now=now),
        severity=normalize_severity(_first_present(payload, FIELD_ALIASES["severity"])),
        free_text=_to_text(_first_present(payload, FIELD_ALIASES["free_text"])),
        app=_to_text(_first_present(payload, FIELD_ALIASES["app"])),
        environment=_to_text(_first_present(payload, FIELD_ALIASES["environment"])),
        correlation_id=_to_text(_first_present(payload, FIELD_ALIASES["correlation_id"])),
        job_correlation_id=_to_text(_first_present(payload, FIELD_ALIASES["job_correlation_id"])),
        duration=_extract_duration(payload),
        status_code=_extract_status_code(payload),
        route_controller=_to_text(_first_present(payload, FIELD_ALIASES["route_controller"])),
        route_action=_to_text(_first_present(payload, FIELD_ALIASES["route_action"])),
        route_path=_to_text(_first_present(payload, FIELD_ALIASES["route_path"])),
        http_method=_to_text(_first_present(payload, FIELD_ALIASES["http_method"])),
        dynamic_fields=dynamic_fields,
    )
