"""
Background task queue for secondary work (stats updates).

Tasks are delivered at least once: each enqueue becomes a one-shot APScheduler
job and a failing task is rescheduled up to TASK_MAX_RETRIES times before it
is logged and dropped. Handlers must therefore be idempotent.

Jobs go to the periodic scheduler when it runs in this process, otherwise to
a task-only BackgroundScheduler the queue starts on first use, so callers
never wait on a task. With TASKS_EAGER (tests, CLI commands) tasks run inline
in the caller's session after the caller has committed its own work.
Failures are logged and never propagate to the caller.
"""

import atexit
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from speculate import db

logger = logging.getLogger(__name__)


class TaskQueue:
    """Named task registry with at-least-once delivery"""

    def __init__(self, app=None):
        self.app = None
        self.handlers = {}
        self.own_scheduler = None
        self._lock = threading.Lock()
        self.task_stats = {
            "enqueued": 0,
            "succeeded": 0,
            "retried": 0,
            "failed": 0,
            "last_error": None,
        }

        if app:
            self.init_app(app)

    def init_app(self, app):
        self.app = app

        # Handlers register themselves on import
        from speculate.services import stats_aggregator  # noqa: F401

    def register(self, name):
        """Decorator registering a task handler under a name"""

        def decorator(func):
            self.handlers[name] = func
            return func

        return decorator

    def _scheduler(self):
        from speculate.services.scheduler_service import scheduler_service

        if scheduler_service.is_running and scheduler_service.scheduler:
            return scheduler_service.scheduler
        return self._own_scheduler()

    def _own_scheduler(self):
        """Task-only scheduler for processes where the periodic jobs are off"""
        with self._lock:
            if self.own_scheduler is None:
                self.own_scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
                self.own_scheduler.start()
                atexit.register(self.shutdown)
                logger.info("Task queue started its own scheduler")
        return self.own_scheduler

    def shutdown(self):
        with self._lock:
            if self.own_scheduler is not None and self.own_scheduler.running:
                self.own_scheduler.shutdown(wait=False)

    def _max_retries(self):
        return self.app.config.get("TASK_MAX_RETRIES", 5) if self.app else 5

    def _retry_delay(self):
        return self.app.config.get("TASK_RETRY_DELAY", 10) if self.app else 10

    def enqueue(self, name, **kwargs):
        """Queue a task; never raises for handler failures"""
        if name not in self.handlers:
            raise KeyError(f"Unknown task: {name}")

        self.task_stats["enqueued"] += 1

        if self.app is None or self.app.config.get("TASKS_EAGER"):
            self._run_inline(name, kwargs)
            return

        self._schedule(self._scheduler(), name, kwargs, attempt=1, delay=0)

    def _schedule(self, scheduler, name, kwargs, attempt, delay):
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        scheduler.add_job(
            func=self._run,
            trigger=DateTrigger(run_date=run_date),
            args=[name, kwargs, attempt],
            id=f"task:{name}:{uuid.uuid4().hex}",
            name=f"Task {name}",
            misfire_grace_time=None,
        )

    def _run(self, name, kwargs, attempt):
        """Scheduler entry point: run one attempt inside an app context"""
        with self.app.app_context():
            try:
                self.handlers[name](**kwargs)
                db.session.commit()
                self.task_stats["succeeded"] += 1
            except Exception as e:
                db.session.rollback()
                self.task_stats["last_error"] = str(e)

                if attempt < self._max_retries():
                    self.task_stats["retried"] += 1
                    logger.warning(
                        f"Task {name} failed (attempt {attempt}), retrying: {e}"
                    )
                    self._schedule(
                        self._scheduler(), name, kwargs, attempt + 1, self._retry_delay()
                    )
                    return

                self.task_stats["failed"] += 1
                logger.error(
                    f"Task {name} failed after {attempt} attempts: {kwargs}",
                    exc_info=True,
                )

    def _run_inline(self, name, kwargs):
        max_retries = self._max_retries()
        last_error = None

        for attempt in range(1, max_retries + 1):
            try:
                self.handlers[name](**kwargs)
                db.session.commit()
                self.task_stats["succeeded"] += 1
                return
            except Exception as e:
                db.session.rollback()
                last_error = e
                self.task_stats["last_error"] = str(e)
                if attempt < max_retries:
                    self.task_stats["retried"] += 1
                    logger.warning(f"Task {name} failed (attempt {attempt}), retrying: {e}")

        self.task_stats["failed"] += 1
        logger.error(
            f"Task {name} failed after {max_retries} attempts: {kwargs}",
            exc_info=last_error,
        )

    def get_status(self):
        return {
            "handlers": sorted(self.handlers),
            "stats": dict(self.task_stats),
            "own_scheduler_running": bool(
                self.own_scheduler is not None and self.own_scheduler.running
            ),
        }


# Global task queue instance
task_queue = TaskQueue()
