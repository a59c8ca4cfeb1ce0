"""
SLA Application Layer
======================

Application layer for the SLA engine.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from opsqueue.sla.application.dto import (
    AcknowledgeRequest,
    AssignTimerRequest,
    EngineStatusResponse,
    EscalationEventResponse,
    EscalationRuleDTO,
    ExtendTimerRequest,
    FlaggedItemResponse,
    OpenTimerRequest,
    OrderStatusRequest,
    PauseTimerRequest,
    PolicyResponse,
    PolicyUpsertRequest,
    ReopenRequest,
    SweepResponse,
    TimerResponse,
    TimerStatusResponse,
    WorkItemResponse,
    WorkQueueResponse,
    WorkQueueStatsResponse,
)
from opsqueue.sla.application.services import (
    EscalationService,
    IEscalationEventRepository,
    INotificationDispatcher,
    IPolicyRepository,
    IPolicySource,
    ITimerRepository,
    PolicyCache,
    PolicyResolver,
    SweepResult,
    TimerStore,
    WorkQueueService,
)

__all__ = [
    # DTOs
    "AcknowledgeRequest",
    "AssignTimerRequest",
    "EngineStatusResponse",
    "EscalationEventResponse",
    "EscalationRuleDTO",
    "ExtendTimerRequest",
    "FlaggedItemResponse",
    "OpenTimerRequest",
    "OrderStatusRequest",
    "PauseTimerRequest",
    "PolicyResponse",
    "PolicyUpsertRequest",
    "ReopenRequest",
    "SweepResponse",
    "TimerResponse",
    "TimerStatusResponse",
    "WorkItemResponse",
    "WorkQueueResponse",
    "WorkQueueStatsResponse",
    # Services
    "EscalationService",
    "PolicyCache",
    "PolicyResolver",
    "SweepResult",
    "TimerStore",
    "WorkQueueService",
    # Repository Interfaces
    "IEscalationEventRepository",
    "INotificationDispatcher",
    "IPolicyRepository",
    "IPolicySource",
    "ITimerRepository",
]
