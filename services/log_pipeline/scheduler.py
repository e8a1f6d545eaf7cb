# services/log_pipeline/scheduler.py
"""
Встроенный планировщик: по одному фоновому потоку на цикл
(разбор, очистка кэша, ежедневные задачи).

Остановка кооперативная: флаг проверяется до и после каждой задачи,
а все ожидания прерываются событием остановки. stop() ограничен
grace-периодом: поток, не успевший выйти, остаётся daemon-потоком
и не держит процесс.
"""

import threading
import time
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, List, Optional

from .config import settings
from .jobs import cache_cleanup_job, field_analysis_job, parse_job, retention_job
from .parse_worker import ParseWorker
from .registry import SchemaRegistry
from .retention import RetentionService
from .utils.logging import internal_logger as logger

Task = Callable[[], object]


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Scheduler:
    def __init__(
        self,
        parse_task: Task,
        cache_cleanup_task: Task,
        retention_task: Task,
        field_analysis_task: Task,
        parse_interval: float = settings.PARSE_INTERVAL_SEC,
        cache_cleanup_interval: float = settings.CACHE_CLEANUP_INTERVAL_SEC,
        retention_hour: int = settings.RETENTION_HOUR,
        field_analysis_hour: int = settings.FIELD_ANALYSIS_HOUR,
        daily_poll_interval: float = settings.DAILY_POLL_INTERVAL_SEC,
        daily_cooldown: float = settings.DAILY_COOLDOWN_SEC,
        stop_grace: float = settings.STOP_GRACE_SEC,
        clock: Callable[[], datetime] = datetime.now,
    ):
        for name, value in (
            ("parse_interval", parse_interval),
            ("cache_cleanup_interval", cache_cleanup_interval),
            ("daily_poll_interval", daily_poll_interval),
            ("daily_cooldown", daily_cooldown),
            ("stop_grace", stop_grace),
        ):
            if value is None or value <= 0:
                raise ValueError(f"{name} must be positive, got {value!r}")
        for name, hour in (
            ("retention_hour", retention_hour),
            ("field_analysis_hour", field_analysis_hour),
        ):
            if not 0 <= hour <= 23:
                raise ValueError(f"{name} must be within 0..23, got {hour!r}")

        self.parse_task = parse_task
        self.cache_cleanup_task = cache_cleanup_task
        self.retention_task = retention_task
        self.field_analysis_task = field_analysis_task
        self.parse_interval = parse_interval
        self.cache_cleanup_interval = cache_cleanup_interval
        self.retention_hour = retention_hour
        self.field_analysis_hour = field_analysis_hour
        self.daily_poll_interval = daily_poll_interval
        self.daily_cooldown = daily_cooldown
        self.stop_grace = stop_grace
        self.clock = clock

        self._lock = threading.Lock()
        self._state = SchedulerState.STOPPED
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_settings(
        cls,
        worker: Optional[ParseWorker] = None,
        registry: Optional[SchemaRegistry] = None,
        retention: Optional[RetentionService] = None,
    ) -> "Scheduler":
        """Собирает планировщик со штатными задачами и настройками из settings."""
        worker = worker or ParseWorker()
        registry = registry or worker.registry
        retention = retention or RetentionService(worker.store.session_factory)
        return cls(
            parse_task=partial(parse_job, worker),
            cache_cleanup_task=partial(cache_cleanup_job, retention),
            retention_task=partial(retention_job, retention),
            field_analysis_task=partial(field_analysis_job, registry),
        )

    # ---------- Жизненный цикл ----------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def start(self) -> None:
        with self._lock:
            if self._state != SchedulerState.STOPPED:
                return
            self._state = SchedulerState.STARTING
            # новое событие на каждый запуск: брошенные потоки прошлого
            # запуска продолжают видеть своё, уже выставленное
            self._stop_event = threading.Event()
            stop_event = self._stop_event

            loops = (
                ("parse", partial(self._interval_loop, "parse", self.parse_task, self.parse_interval)),
                (
                    "cache-cleanup",
                    partial(
                        self._interval_loop,
                        "cache cleanup",
                        self.cache_cleanup_task,
                        self.cache_cleanup_interval,
                    ),
                ),
                ("daily", self._daily_loop),
            )
            self._threads = [
                threading.Thread(
                    target=target,
                    args=(stop_event,),
                    name=f"log-pipeline-{name}",
                    daemon=True,
                )
                for name, target in loops
            ]
            for thread in self._threads:
                thread.start()
            self._state = SchedulerState.RUNNING

        logger.info(f"⏱️ Scheduler started with {len(self._threads)} threads")

    def stop(self) -> None:
        """
        Выставляет флаг остановки и ждёт потоки не дольше stop_grace
        суммарно. Не успевшие потоки логируются и бросаются.
        """
        with self._lock:
            if self._state != SchedulerState.RUNNING:
                return
            self._state = SchedulerState.STOPPING
            self._stop_event.set()
            threads = self._threads
            self._threads = []

        logger.info("⏱️ Scheduler stopping...")
        deadline = time.monotonic() + self.stop_grace
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        stuck = [thread.name for thread in threads if thread.is_alive()]
        if stuck:
            logger.warning(f"⚠️ Scheduler abandoned threads still running after grace period: {stuck}")

        with self._lock:
            self._state = SchedulerState.STOPPED
        logger.info("⏱️ Scheduler stopped")

    # ---------- Циклы ----------

    def _run_task(self, name: str, task: Task) -> None:
        try:
            task()
        except Exception:
            logger.exception(f"❌ Scheduler: {name} task failed")

    def _interval_loop(
        self, name: str, task: Task, interval: float, stop_event: threading.Event
    ) -> None:
        while not stop_event.is_set():
            self._run_task(name, task)
            if stop_event.is_set():
                break
            stop_event.wait(interval)

    def _daily_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            current_hour = self.clock().hour

            if current_hour == self.retention_hour:
                self._run_task("retention", self.retention_task)
                # пауза, чтобы не сработать дважды за один час
                if stop_event.wait(self.daily_cooldown):
                    break

            if current_hour == self.field_analysis_hour:
                self._run_task("field analysis", self.field_analysis_task)
                if stop_event.wait(self.daily_cooldown):
                    break

            stop_event.wait(self.daily_poll_interval)
