"""
SLA Domain Layer
================

Domain layer for SLA tracking.

Contains:
- Entities: SLATimer, EscalationEvent, WorkItem, WorkQueueStats
- Value Objects: SLAPolicy, EscalationRule
- Domain Services: StatusEvaluator, EscalationLadder, WorkQueueAggregator

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from opsqueue.sla.domain.entities import (
    EscalationEvent,
    PauseRecord,
    SLAEvaluation,
    SLATimer,
    WorkItem,
    WorkQueueStats,
    utcnow,
)
from opsqueue.sla.domain.value_objects import (
    EscalationRule,
    SLAPolicy,
    build_default_policy,
    default_ladder,
)
from opsqueue.sla.domain.services import (
    EscalationLadder,
    StatusEvaluator,
    WorkQueueAggregator,
)

__all__ = [
    # Entities
    "EscalationEvent",
    "PauseRecord",
    "SLAEvaluation",
    "SLATimer",
    "WorkItem",
    "WorkQueueStats",
    "utcnow",
    # Value Objects
    "EscalationRule",
    "SLAPolicy",
    "build_default_policy",
    "default_ladder",
    # Domain Services
    "EscalationLadder",
    "StatusEvaluator",
    "WorkQueueAggregator",
]
