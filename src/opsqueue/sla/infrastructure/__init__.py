"""
SLA Infrastructure Layer
=========================

Infrastructure layer for the SLA engine.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Concrete repository implementations
- External: Policy file watcher, notification dispatchers, scheduler
- Engine: Process-level engine context
"""

from opsqueue.sla.infrastructure.models import (
    EscalationEventModel,
    SLAPolicyModel,
    SLATimerModel,
)
from opsqueue.sla.infrastructure.repositories import (
    SQLAlchemyEscalationEventRepository,
    SQLAlchemyPolicyRepository,
    SQLAlchemyTimerRepository,
)
from opsqueue.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    LoggingNotificationDispatcher,
    PolicyConfigManager,
    SLAScheduler,
    WebhookNotificationDispatcher,
)
from opsqueue.sla.infrastructure.engine import SLAEngine, build_dispatcher

__all__ = [
    "EscalationEventModel",
    "SLAPolicyModel",
    "SLATimerModel",
    "SQLAlchemyEscalationEventRepository",
    "SQLAlchemyPolicyRepository",
    "SQLAlchemyTimerRepository",
    "CircuitBreaker",
    "CircuitState",
    "LoggingNotificationDispatcher",
    "PolicyConfigManager",
    "SLAScheduler",
    "WebhookNotificationDispatcher",
    "SLAEngine",
    "build_dispatcher",
]
