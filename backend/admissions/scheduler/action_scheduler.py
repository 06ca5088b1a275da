"""Action Scheduler - Background jobs for the action outbox and automatic sweeps

Supports multi-server deployment: every server runs its own scheduler, and
outbox records and applications are leased in MongoDB before they are
processed, so each is handled by one server at a time.

Jobs:
- Deliver pending outbox actions (exponential backoff, dead-lettering)
- Re-evaluate automatic transitions of in-flight applications
- Clean up stale locks left by crashed processes
"""
import asyncio
import os
import socket
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.errors import DomainError
from ..engine.action_dispatcher import ActionDispatcher
from ..engine.engine import WorkflowEngine
from ..repositories.action_repo import ActionRepository
from ..repositories.application_state_repo import ApplicationStateRepository
from ..repositories.lock_repo import ApplicationLockRepository
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id, generate_id

logger = get_logger(__name__)


class ActionScheduler:
    """APScheduler wrapper owning the engine's background jobs"""

    def __init__(
        self,
        dispatcher: Optional[ActionDispatcher] = None,
        engine: Optional[WorkflowEngine] = None
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.dispatcher = dispatcher or ActionDispatcher()
        self.engine = engine or WorkflowEngine(dispatcher=self.dispatcher)
        self.action_repo = ActionRepository()
        self.lock_repo = ApplicationLockRepository()
        self.state_repo = ApplicationStateRepository()
        self._is_running = False

        # Unique server ID for distributed locking
        self._server_id = self._generate_server_id()

    def _generate_server_id(self) -> str:
        hostname = socket.gethostname()
        pid = os.getpid()
        unique = generate_id()[:8]
        return f"{hostname}-{pid}-{unique}"

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._process_actions,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id="process_actions",
            name="Deliver pending outbox actions",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.add_job(
            self._sweep_automatic_transitions,
            trigger=IntervalTrigger(minutes=settings.automatic_sweep_interval_minutes),
            id="sweep_automatic_transitions",
            name="Re-evaluate automatic transitions",
            replace_existing=True,
            max_instances=1
        )

        # Crash recovery
        self.scheduler.add_job(
            self._cleanup_stale_locks,
            trigger=IntervalTrigger(minutes=5),
            id="cleanup_stale_locks",
            name="Cleanup stale action and application locks",
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={"server_id": self._server_id}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Scheduler stopped", extra={"server_id": self._server_id})

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _process_actions(self) -> None:
        """Deliver one batch of due outbox actions"""
        set_correlation_id(generate_correlation_id())
        try:
            await self.dispatcher.process_pending(self._server_id)
        except Exception as e:
            logger.error(f"Error in action processing job: {e}", exc_info=True)

    async def _sweep_automatic_transitions(self) -> None:
        """Give every in-flight application a chance to move automatically"""
        set_correlation_id(generate_correlation_id())
        try:
            fired = await asyncio.to_thread(self.sweep_once)
            if fired:
                logger.info(f"Automatic sweep fired {fired} transition(s)", extra={"server_id": self._server_id})
        except Exception as e:
            logger.error(f"Error in automatic sweep job: {e}", exc_info=True)

    def sweep_once(self) -> int:
        """
        Evaluate automatic transitions for all in-flight applications.

        Busy applications are skipped and picked up on the next run.

        Returns:
            Number of transitions fired
        """
        fired = 0
        last_id = None
        batch_size = settings.automatic_sweep_batch_size

        while True:
            states = self.state_repo.list_in_flight(after_application_id=last_id, limit=batch_size)
            for state in states:
                try:
                    if self.engine.evaluate_automatic(state.application_id) is not None:
                        fired += 1
                except DomainError as e:
                    logger.warning(
                        f"Automatic sweep failed for application: {e.message}",
                        extra={"application_id": state.application_id}
                    )
            if len(states) < batch_size:
                return fired
            last_id = states[-1].application_id

    async def _cleanup_stale_locks(self) -> None:
        """Clear leases of crashed processes"""
        try:
            actions = self.action_repo.cleanup_stale_locks(settings.stale_lock_cleanup_minutes)
            applications = self.lock_repo.cleanup_stale_locks(settings.stale_lock_cleanup_minutes)
            if actions or applications:
                logger.info(
                    f"Cleaned up {actions} action and {applications} application stale locks",
                    extra={"server_id": self._server_id}
                )
        except Exception as e:
            logger.error(f"Error cleaning up stale locks: {e}")


# Global scheduler instance
_scheduler: Optional[ActionScheduler] = None


def get_scheduler() -> ActionScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = ActionScheduler()
    return _scheduler


def start_scheduler() -> None:
    """Start the global scheduler"""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None


def is_scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.is_running
