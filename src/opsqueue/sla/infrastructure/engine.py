"""
SLA Engine Context
===================

Process-level state of the SLA engine, created in the application lifespan
and kept on ``app.state.sla_engine``:

- policy cache and policy file (hot-reloaded)
- sweep lock serializing overlapping sweeps in this process
- notification dispatcher
- escalation scheduler

Request handlers build session-scoped services from it.
"""

import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config import Settings
from opsqueue.infrastructure.database import Database
from opsqueue.shared.infrastructure.logging import get_logger
from opsqueue.sla.application import (
    EscalationService,
    INotificationDispatcher,
    PolicyCache,
    PolicyResolver,
    SweepResult,
    TimerStore,
    WorkQueueService,
)
from opsqueue.sla.application.services import Clock
from opsqueue.sla.domain import utcnow
from opsqueue.sla.infrastructure.external import (
    LoggingNotificationDispatcher,
    PolicyConfigManager,
    SLAScheduler,
    WebhookNotificationDispatcher,
)
from opsqueue.sla.infrastructure.repositories import (
    SQLAlchemyEscalationEventRepository,
    SQLAlchemyPolicyRepository,
    SQLAlchemyTimerRepository,
)

logger = get_logger(__name__)


def build_dispatcher(settings: Settings) -> INotificationDispatcher:
    """Webhook dispatcher when a URL is configured, logging otherwise."""
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(settings)
    logger.info("No notification webhook configured; escalations will only be logged")
    return LoggingNotificationDispatcher()


class SLAEngine:
    """Owns the long-lived collaborators of the SLA services."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        dispatcher: Optional[INotificationDispatcher] = None,
        clock: Clock = utcnow
    ):
        self.settings = settings
        self.database = database
        self.clock = clock
        self.policy_cache = PolicyCache(settings.policy_cache_ttl_seconds, clock=clock)
        self.policy_file = PolicyConfigManager(on_reload=self.policy_cache.invalidate)
        self.sweep_lock = asyncio.Lock()
        self.dispatcher = dispatcher or build_dispatcher(settings)
        self.scheduler = SLAScheduler(interval_seconds=settings.sla_sweep_interval_seconds)

    # ========== Session-scoped services ==========

    def policy_resolver(self, session: AsyncSession) -> PolicyResolver:
        return PolicyResolver(
            self.settings,
            repository=SQLAlchemyPolicyRepository(session),
            file_source=self.policy_file,
            cache=self.policy_cache,
        )

    def timer_store(self, session: AsyncSession) -> TimerStore:
        return TimerStore(
            SQLAlchemyTimerRepository(session),
            self.policy_resolver(session),
            self.settings,
            clock=self.clock,
        )

    def escalation_service(self, session: AsyncSession) -> EscalationService:
        return EscalationService(
            SQLAlchemyTimerRepository(session),
            SQLAlchemyEscalationEventRepository(session),
            self.policy_resolver(session),
            self.dispatcher,
            sweep_lock=self.sweep_lock,
            savepoint=session.begin_nested,
            clock=self.clock,
        )

    def work_queue_service(self, session: AsyncSession) -> WorkQueueService:
        return WorkQueueService(
            SQLAlchemyTimerRepository(session),
            self.policy_resolver(session),
            clock=self.clock,
        )

    # ========== Sweeps ==========

    async def run_sweep(self, trigger: str = "scheduled") -> SweepResult:
        """
        One sweep in its own transaction, then notification dispatch.

        Notifications go out only after the commit.
        """
        if self.database is None:
            raise RuntimeError("Database not configured for the SLA engine")

        async with self.database.session() as session:
            service = self.escalation_service(session)
            result = await service.sweep(trigger=trigger)

        await service.dispatch(result.events)
        return result

    async def _scheduled_sweep(self) -> None:
        try:
            await self.run_sweep(trigger="scheduled")
        except Exception as e:
            logger.error("Scheduled escalation sweep failed", extra={"error": str(e)}, exc_info=True)

    # ========== Lifecycle ==========

    def load_policies(self) -> None:
        policies = self.policy_file.load(self.settings.sla_policy_path)
        logger.info(
            "SLA policy file loaded",
            extra={"path": str(self.settings.sla_policy_path), "policies": len(policies)}
        )

    async def start_scheduler(self) -> None:
        await self.scheduler.start(self._scheduled_sweep)

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()

    async def start(self) -> None:
        self.load_policies()
        self.policy_file.start_watching()
        await self.start_scheduler()

    async def stop(self) -> None:
        await self.stop_scheduler()
        self.policy_file.stop_watching()
        close = getattr(self.dispatcher, "close", None)
        if close is not None:
            await close()
