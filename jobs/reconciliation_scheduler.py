"""
Reconciliation Scheduler - autonomous deposit sweeps

Built-in jobs:
1. Expired sweep - every minute, expires deposits past their time limit and
   refunds held funds
2. Expiring-soon sweep - every 15 minutes, alerts creators of deposits expiring
   within the hour (suppressed for 2 hours after a send)
3. Notification cleanup - daily at 02:00 UTC, archives old notification records

Operators can register further named tasks with a 5-field crontab expression.
Sweeps run as shielded tasks so stop() can let them finish before the
scheduler shuts down.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.deposit_expiry_service import DepositExpiryService
from utils.exceptions import InvalidInput, TaskExists, TaskNotFound

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Union[Any, Awaitable[Any]]]

EXPIRED_SWEEP = "expired_deposits"
EXPIRING_SOON_SWEEP = "expiring_soon"
CLEANUP_SWEEP = "cleanup_notifications"


class _Task:
    __slots__ = ("name", "schedule", "trigger", "callback", "run_at_start")

    def __init__(self, name: str, schedule: str, trigger: BaseTrigger, callback: TaskCallback, run_at_start: bool = False):
        self.name = name
        self.schedule = schedule
        self.trigger = trigger
        self.callback = callback
        self.run_at_start = run_at_start


class ReconciliationScheduler:
    """
    Periodic reconciliation of deposits against wall-clock time

    Scheduling Strategy:
    - Expired sweep: every EXPIRED_SWEEP_INTERVAL_MINUTES, also at start
    - Expiring-soon sweep: every EXPIRING_SOON_SWEEP_INTERVAL_MINUTES, also at start
    - Cleanup: daily cron at CLEANUP_CRON_HOUR:00 UTC
    """

    def __init__(
        self,
        expiry: DepositExpiryService,
        expired_interval_minutes: Optional[int] = None,
        expiring_soon_interval_minutes: Optional[int] = None,
        cleanup_hour: Optional[int] = None,
        misfire_grace_seconds: Optional[int] = None,
    ):
        self.expiry = expiry
        self.misfire_grace_seconds = (
            misfire_grace_seconds if misfire_grace_seconds is not None else Config.SCHEDULER_MISFIRE_GRACE_SECONDS
        )
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._in_flight: Set[asyncio.Task] = set()
        self._tasks: Dict[str, _Task] = {}

        expired_minutes = expired_interval_minutes or Config.EXPIRED_SWEEP_INTERVAL_MINUTES
        expiring_minutes = expiring_soon_interval_minutes or Config.EXPIRING_SOON_SWEEP_INTERVAL_MINUTES
        hour = cleanup_hour if cleanup_hour is not None else Config.CLEANUP_CRON_HOUR

        self._register(_Task(
            EXPIRED_SWEEP,
            f"every {expired_minutes} minute(s)",
            IntervalTrigger(minutes=expired_minutes, timezone="UTC"),
            self.expiry.process_expired_deposits,
            run_at_start=True,
        ))
        self._register(_Task(
            EXPIRING_SOON_SWEEP,
            f"every {expiring_minutes} minute(s)",
            IntervalTrigger(minutes=expiring_minutes, timezone="UTC"),
            self.expiry.process_expiring_soon_deposits,
            run_at_start=True,
        ))
        self._register(_Task(
            CLEANUP_SWEEP,
            f"0 {hour} * * *",
            CronTrigger(hour=hour, minute=0, timezone="UTC"),
            self.expiry.cleanup_old_notifications,
        ))

    @property
    def is_running(self) -> bool:
        return self._running

    def _build_scheduler(self) -> AsyncIOScheduler:
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': self.misfire_grace_seconds
        }
        return AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def _register(self, task: _Task) -> None:
        self._tasks[task.name] = task

    def _schedule(self, task: _Task) -> None:
        async def run_task():
            return await self._run_tracked(task.name, task.callback)

        kwargs = {}
        if task.run_at_start:
            kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            run_task,
            trigger=task.trigger,
            id=task.name,
            name=task.name,
            replace_existing=True,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, name: str, callback: TaskCallback) -> Any:
        """Run one task; errors are logged and reported, never raised"""
        try:
            result = callback()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error(f"❌ SCHEDULER_TASK_ERROR: {name}: {e}", exc_info=True)
            return {"processed": 0, "errors": [str(e)]}

    async def _run_tracked(self, name: str, callback: TaskCallback) -> Any:
        task = asyncio.ensure_future(self._execute(name, callback))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        # Shielded so executor shutdown cannot cancel a sweep half way
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start all registered tasks; the two time-driven sweeps also fire now"""
        if self._running:
            logger.info("Reconciliation scheduler already running")
            return

        self.scheduler = self._build_scheduler()
        for task in self._tasks.values():
            self._schedule(task)
        self.scheduler.start()
        self._running = True

        logger.warning(f"✅ SCHEDULER ENABLED: {len(self._tasks)} reconciliation tasks scheduled")
        for task in self._tasks.values():
            logger.info(f"   - {task.name}: {task.schedule}")

    async def stop(self) -> None:
        """Stop new firings, wait for running sweeps, then shut down"""
        if not self._running:
            return
        self._running = False

        self.scheduler.pause()
        if self._in_flight:
            logger.info(f"⏳ SCHEDULER_STOPPING: waiting for {len(self._in_flight)} running tasks")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler.shutdown is dispatched onto the loop
        await asyncio.sleep(0)
        logger.info("📴 Reconciliation scheduler stopped")

    async def run_once(self) -> Dict[str, Any]:
        """Run the expired and expiring-soon sweeps now and return their summaries"""
        expired = await self._run_tracked(EXPIRED_SWEEP, self.expiry.process_expired_deposits)
        expiring_soon = await self._run_tracked(EXPIRING_SOON_SWEEP, self.expiry.process_expiring_soon_deposits)
        return {EXPIRED_SWEEP: expired, EXPIRING_SOON_SWEEP: expiring_soon}

    # ------------------------------------------------------------------
    # Operator tasks
    # ------------------------------------------------------------------

    def add_task(self, name: str, cron_expression: str, callback: TaskCallback) -> Dict[str, Any]:
        """
        Register a named task on a 5-field crontab expression (UTC)

        Raises:
            InvalidInput: empty name or malformed expression
            TaskExists: a task with this name is already registered
        """
        if not name or not str(name).strip():
            raise InvalidInput("Task name is required", field="name")
        if name in self._tasks:
            raise TaskExists(name)
        if not callable(callback):
            raise InvalidInput("Task callback must be callable", field="callback")

        try:
            trigger = CronTrigger.from_crontab(cron_expression, timezone="UTC")
        except (ValueError, TypeError, AttributeError) as e:
            raise InvalidInput(f"Invalid cron expression {cron_expression!r}: {e}", field="cron_expression")

        task = _Task(name, cron_expression, trigger, callback)
        self._register(task)
        if self._running:
            self._schedule(task)

        logger.info(f"✅ SCHEDULER_TASK_ADDED: {name} ({cron_expression})")
        return self._describe(task)

    def remove_task(self, name: str) -> None:
        """Raises TaskNotFound for an unknown name"""
        if name not in self._tasks:
            raise TaskNotFound(name)

        del self._tasks[name]
        if self._running and self.scheduler.get_job(name) is not None:
            self.scheduler.remove_job(name)
        logger.info(f"🧹 SCHEDULER_TASK_REMOVED: {name}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _describe(self, task: _Task) -> Dict[str, Any]:
        next_run_time = None
        job = self.scheduler.get_job(task.name) if self._running else None
        if job is not None:
            next_run_time = getattr(job, "next_run_time", None)
        else:
            next_run_time = task.trigger.get_next_fire_time(None, datetime.now(timezone.utc))
        return {
            "name": task.name,
            "schedule": task.schedule,
            "next_run_time": next_run_time.isoformat() if next_run_time else None,
        }

    def status(self) -> Dict[str, Any]:
        tasks = [self._describe(task) for task in self._tasks.values()]
        return {
            "is_running": self._running,
            "active_tasks": [task["name"] for task in tasks] if self._running else [],
            "task_count": len(tasks),
            "tasks": tasks,
        }
