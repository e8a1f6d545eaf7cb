# services/log_pipeline/writer.py
"""
Буферизованная запись сырых событий в RawStore.

Продюсер вызывает write() и никогда не получает исключение. Сброс в
хранилище — по размеру пачки, по таймеру или сразу (eager flush), если
пришло событие критического уровня (error/fatal): тогда уходит весь
буфер вместе с накопленными до него записями.
"""

import atexit
import json
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from .config import settings
from .utils.logging import INTERNAL_MARKER, internal_logger as logger
from .utils.timeutils import utcnow

# Уровни loguru → уровни пайплайна
LOGURU_LEVELS = {
    "TRACE": "debug",
    "DEBUG": "debug",
    "INFO": "info",
    "SUCCESS": "info",
    "WARNING": "warn",
    "ERROR": "error",
    "CRITICAL": "fatal",
}


class BufferedIngestWriter:
    """
    Потокобезопасный буфер перед RawStore.

    Один мьютекс защищает буфер: добавление, проверка размера и решение
    об eager flush атомарны. Мьютекс никогда не удерживается во время
    записи в хранилище.
    """

    def __init__(
        self,
        store,
        batch_size: int = settings.WRITER_BATCH_SIZE,
        flush_interval: float = settings.WRITER_FLUSH_INTERVAL_SEC,
        max_queue_size: int = settings.WRITER_MAX_QUEUE_SIZE,
        eager_flush_levels: Iterable[str] = tuple(settings.EAGER_FLUSH_LEVELS),
        source_token: Optional[str] = settings.SOURCE_TOKEN,
        start_timer: bool = True,
    ):
        if batch_size <= 0 or max_queue_size <= 0 or flush_interval <= 0:
            raise ValueError("batch_size, max_queue_size and flush_interval must be positive")

        self.store = store
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_queue_size = max_queue_size
        self.eager_flush_levels = frozenset(level.lower() for level in eager_flush_levels)
        self.source_token = source_token

        self._buffer: Deque[Dict[str, Any]] = deque()
        self._mutex = threading.Lock()
        # сериализует обращения к хранилищу, чтобы пачки уходили по порядку
        self._flush_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._closed = False
        self._last_flush = time.monotonic()

        self.evicted_count = 0
        self.persisted_count = 0

        self._flush_thread: Optional[threading.Thread] = None
        if start_timer:
            self._flush_thread = threading.Thread(
                target=self._flush_loop, name="log-pipeline-writer", daemon=True
            )
            self._flush_thread.start()

        atexit.register(self.close)

    # ---------- Публичный API ----------

    def write(self, event: Any) -> None:
        """
        Принимает событие (JSON-строка, bytes или dict). Никогда не бросает.
        При переполнении выбрасывается самое старое несброшенное событие.
        """
        try:
            entry, level = self._build_entry(event)
        except Exception as e:
            # несериализуемое событие сохраняем как текст, уровень по возможности
            logger.warning(f"⚠️ Event is not JSON-serializable, stored as text: {e}")
            try:
                entry, level = self._build_fallback_entry(event)
            except Exception as e:
                logger.error(f"❌ Failed to build raw event: {e}")
                return

        eager = level in self.eager_flush_levels
        size_reached = False

        with self._mutex:
            if self._closed:
                return
            self._append_locked(entry)
            size_reached = len(self._buffer) >= self.batch_size

        if eager or (size_reached and self._flush_thread is None):
            self.flush()
        elif size_reached:
            self._wakeup.set()

    def flush(self) -> int:
        """
        Забирает всё содержимое буфера и одной пачкой пишет в хранилище.
        При ошибке пачка возвращается в начало буфера для повтора.
        Возвращает число сохранённых событий.
        """
        with self._flush_lock:
            with self._mutex:
                if not self._buffer:
                    return 0
                batch = list(self._buffer)
                self._buffer.clear()
                self._last_flush = time.monotonic()

            try:
                self.store.append(batch)
            except Exception as e:
                logger.error(f"❌ Flush of {len(batch)} raw events failed, re-queued: {e}")
                self._requeue(batch)
                return 0

            self.persisted_count += len(batch)
            return len(batch)

    def close(self) -> None:
        """Останавливает таймер и делает финальный сброс. Идемпотентен."""
        with self._mutex:
            if self._closed:
                return
            self._closed = True

        self._stopping.set()
        self._wakeup.set()
        if self._flush_thread is not None:
            self._flush_thread.join(timeout=self.flush_interval + 1)
        self.flush()
        atexit.unregister(self.close)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._mutex:
            return len(self._buffer)

    def sink(self, message) -> None:
        """
        Sink для loguru (см. utils.logging.attach_writer): запись лога
        превращается в сырое событие. Внутренние логи пайплайна отбрасываются.
        """
        record = message.record
        if record["extra"].get(INTERNAL_MARKER):
            return

        payload = {
            key: value for key, value in record["extra"].items() if key != INTERNAL_MARKER
        }
        payload.update(
            {
                "timestamp": record["time"].isoformat(),
                "level": LOGURU_LEVELS.get(record["level"].name, "info"),
                "message": record["message"],
                "logger": record["name"],
            }
        )
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)
        self.write(payload)

    # ---------- Внутреннее ----------

    def _build_entry(self, event: Any):
        """Событие → (строка для raw_events, нормализованный уровень или None)."""
        if isinstance(event, (bytes, bytearray)):
            event = bytes(event).decode("utf-8", errors="replace")

        if isinstance(event, str):
            try:
                data = json.loads(event)
            except ValueError:
                data = None
            if isinstance(data, dict):
                payload, level = event, data.get("level", data.get("severity"))
            else:
                # простой текст / не-объект заворачиваем в JSON
                payload, level = self._wrap_text(event), "info"
        elif isinstance(event, dict):
            payload = json.dumps(event, default=str)
            level = event.get("level", event.get("severity"))
        else:
            payload, level = self._wrap_text(str(event)), "info"

        entry = {
            "payload": payload,
            "source_token": self.source_token,
            "received_at": utcnow(),
        }
        return entry, (str(level).lower() if level is not None else None)

    def _build_fallback_entry(self, event: Any):
        level = None
        if isinstance(event, dict):
            raw_level = event.get("level", event.get("severity"))
            if isinstance(raw_level, str):
                level = raw_level.lower()

        entry = {
            "payload": self._wrap_text(repr(event), level or "info"),
            "source_token": self.source_token,
            "received_at": utcnow(),
        }
        return entry, level

    @staticmethod
    def _wrap_text(text: str, level: str = "info") -> str:
        return json.dumps(
            {
                "message": text.strip(),
                "timestamp": utcnow().isoformat() + "Z",
                "level": level,
            }
        )

    def _append_locked(self, entry: Dict[str, Any]) -> None:
        if len(self._buffer) >= self.max_queue_size:
            self._buffer.popleft()
            self.evicted_count += 1
        self._buffer.append(entry)

    def _requeue(self, batch: List[Dict[str, Any]]) -> None:
        with self._mutex:
            self._buffer.extendleft(reversed(batch))
            overflow = len(self._buffer) - self.max_queue_size
            for _ in range(max(overflow, 0)):
                self._buffer.popleft()
                self.evicted_count += 1
            if overflow > 0:
                logger.warning(f"⚠️ Writer queue over capacity, dropped {overflow} oldest events")

    def _flush_loop(self) -> None:
        """Фоновый поток: сброс по таймеру или по сигналу о заполнении пачки."""
        while not self._stopping.is_set():
            woken = self._wakeup.wait(timeout=self.flush_interval)
            self._wakeup.clear()
            if self._stopping.is_set():
                break

            with self._mutex:
                elapsed = time.monotonic() - self._last_flush
                due = bool(self._buffer) and (woken or elapsed >= self.flush_interval)
            if not due:
                continue

            try:
                self.flush()
            except Exception as e:
                logger.error(f"❌ Writer auto-flush error: {e}")
