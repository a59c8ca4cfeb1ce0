"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Request bodies reject unknown fields.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsqueue.config import Priority, Role, SLAStatus, TimerStatus, WorkItemType
from opsqueue.sla.domain import (
    EscalationEvent,
    EscalationRule,
    SLAEvaluation,
    SLAPolicy,
    SLATimer,
    WorkItem,
    WorkQueueStats,
)


class RequestModel(BaseModel):
    """Base for request bodies."""
    model_config = ConfigDict(extra="forbid")


# ========== Request DTOs ==========

class OpenTimerRequest(RequestModel):
    """Request model for opening a timer when an order becomes active."""
    service_order_id: str = Field(..., min_length=1, description="Service order ID")
    service_type: str = Field(..., min_length=1, description="Service type used to resolve the policy")
    task_id: Optional[str] = Field(None, min_length=1, description="Task ID when timing a single task")
    priority: Priority = Field(default=Priority.MEDIUM)
    assigned_to: Optional[str] = Field(None, description="Current assignee")
    order_status: Optional[str] = Field(None, description="Current order/task status")


class PauseTimerRequest(RequestModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Why the clock is frozen")


class ExtendTimerRequest(RequestModel):
    """SLA exception grant."""
    hours: int = Field(..., ge=1, le=24 * 90, description="Hours added to this timer's baseline")
    reason: str = Field(..., min_length=1, max_length=500)


class AssignTimerRequest(RequestModel):
    assigned_to: Optional[str] = Field(None, description="New assignee; null unassigns")


class OrderStatusRequest(RequestModel):
    """Order lifecycle notification."""
    status: str = Field(..., min_length=1, description="New order/task status")
    task_id: Optional[str] = Field(None, min_length=1)


class ReopenRequest(RequestModel):
    task_id: Optional[str] = Field(None, min_length=1)


class AcknowledgeRequest(RequestModel):
    acknowledged_by: Optional[str] = Field(None, description="Who acknowledged the escalation")


class EscalationRuleDTO(RequestModel):
    """One escalation ladder rung."""
    level: int = Field(..., ge=1)
    after_hours: float = Field(..., ge=0)
    notify: List[Role] = Field(default_factory=list)
    reassign_to_role: Optional[Role] = None

    def to_domain(self) -> EscalationRule:
        return EscalationRule(**self.model_dump())


class PolicyUpsertRequest(RequestModel):
    """Admin policy write. Threshold ordering is checked on conversion."""
    baseline_hours: int = Field(..., ge=1)
    warning_threshold_hours: int = Field(default=24, ge=0)
    critical_threshold_hours: int = Field(default=4, ge=0)
    escalation_rules: List[EscalationRuleDTO] = Field(default_factory=list)
    pause_conditions: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("pause_conditions")
    @classmethod
    def validate_pause_conditions(cls, v: List[str]) -> List[str]:
        if any(not status.strip() for status in v):
            raise ValueError("pause conditions cannot be blank")
        return v

    def to_domain(self, service_type: str) -> SLAPolicy:
        """Raises pydantic.ValidationError when the policy is inconsistent."""
        return SLAPolicy(
            service_type=service_type,
            baseline_hours=self.baseline_hours,
            warning_threshold_hours=self.warning_threshold_hours,
            critical_threshold_hours=self.critical_threshold_hours,
            escalation_rules=[rule.to_domain() for rule in self.escalation_rules],
            pause_conditions=self.pause_conditions,
            is_active=self.is_active,
        )


# ========== Response DTOs ==========

class PauseRecordResponse(BaseModel):
    reason: str
    at: datetime
    kind: str


class TimerResponse(BaseModel):
    """Response model for a timer record."""
    id: str
    service_order_id: str
    task_id: Optional[str] = None
    service_type: str
    baseline_hours: int
    started_at: datetime
    paused_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    total_paused_minutes: float
    pause_reasons: List[PauseRecordResponse] = Field(default_factory=list)
    current_status: TimerStatus
    order_status: Optional[str] = None
    priority: Priority
    assigned_to: Optional[str] = None
    escalation_level: int
    breach_notified: bool
    version: int

    @classmethod
    def from_domain(cls, timer: SLATimer) -> "TimerResponse":
        return cls(
            id=timer.id,
            service_order_id=timer.service_order_id,
            task_id=timer.task_id,
            service_type=timer.service_type,
            baseline_hours=timer.baseline_hours,
            started_at=timer.started_at,
            paused_at=timer.paused_at,
            stopped_at=timer.stopped_at,
            total_paused_minutes=round(timer.total_paused_minutes, 2),
            pause_reasons=[
                PauseRecordResponse(reason=r.reason, at=r.at, kind=r.kind)
                for r in timer.pause_reasons
            ],
            current_status=timer.current_status,
            order_status=timer.order_status,
            priority=timer.priority,
            assigned_to=timer.assigned_to,
            escalation_level=timer.escalation_level,
            breach_notified=timer.breach_notified,
            version=timer.version,
        )


class TimerStatusResponse(BaseModel):
    """Timer with its SLA status evaluated now."""
    timer: TimerResponse
    sla_status: SLAStatus
    elapsed_hours: float
    hours_remaining: float
    sla_hours_remaining: int = Field(..., description="Whole hours left; negative when overdue")
    sla_deadline: datetime
    age_hours: int
    evaluated_at: datetime
    policy_is_default: bool = Field(..., description="True when the system default policy applied")

    @classmethod
    def from_domain(
        cls,
        timer: SLATimer,
        evaluation: SLAEvaluation,
        policy: SLAPolicy
    ) -> "TimerStatusResponse":
        return cls(
            timer=TimerResponse.from_domain(timer),
            sla_status=evaluation.sla_status,
            elapsed_hours=round(evaluation.elapsed_hours, 2),
            hours_remaining=round(evaluation.hours_remaining, 2),
            sla_hours_remaining=evaluation.sla_hours_remaining,
            sla_deadline=evaluation.deadline,
            age_hours=evaluation.age_hours,
            evaluated_at=evaluation.evaluated_at,
            policy_is_default=policy.is_default,
        )


class WorkItemResponse(BaseModel):
    """Response model for one work-queue entry."""
    id: str
    work_item_type: WorkItemType
    reference_id: str
    service_order_id: str
    service_type: str
    current_status: Optional[str] = None
    timer_status: TimerStatus
    priority: Priority
    assigned_to: Optional[str] = None
    sla_deadline: datetime
    sla_status: SLAStatus
    sla_hours_remaining: int
    escalation_level: int
    age_hours: int

    @classmethod
    def from_domain(cls, item: WorkItem) -> "WorkItemResponse":
        return cls(
            id=item.id,
            work_item_type=item.work_item_type,
            reference_id=item.reference_id,
            service_order_id=item.service_order_id,
            service_type=item.service_type,
            current_status=item.current_status,
            timer_status=item.timer_status,
            priority=item.priority,
            assigned_to=item.assigned_to,
            sla_deadline=item.sla_deadline,
            sla_status=item.sla_status,
            sla_hours_remaining=item.sla_hours_remaining,
            escalation_level=item.escalation_level,
            age_hours=item.age_hours,
        )


class FlaggedItemResponse(BaseModel):
    """A timer left out of a queue view because it could not be evaluated."""
    timer_id: str
    error: str


class WorkQueueResponse(BaseModel):
    items: List[WorkItemResponse]
    total: int
    flagged: List[FlaggedItemResponse] = Field(default_factory=list)


def _group_items(groups: Dict[str, List[WorkItem]]) -> Dict[str, List[WorkItemResponse]]:
    return {key: [WorkItemResponse.from_domain(i) for i in items] for key, items in groups.items()}


class WorkQueueStatsResponse(BaseModel):
    """Counts partitioned by SLA status, priority and assignee."""
    total: int
    on_track: int
    at_risk: int
    warning: int
    breached: int
    unassigned: int
    by_priority: Dict[str, int]
    by_assignee: Dict[str, int]
    items_by_status: Dict[str, List[WorkItemResponse]]
    items_by_priority: Dict[str, List[WorkItemResponse]]
    items_by_assignee: Dict[str, List[WorkItemResponse]]
    unassigned_items: List[WorkItemResponse]
    flagged: List[FlaggedItemResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, stats: WorkQueueStats) -> "WorkQueueStatsResponse":
        return cls(
            total=stats.total,
            on_track=stats.on_track,
            at_risk=stats.at_risk,
            warning=stats.warning,
            breached=stats.breached,
            unassigned=stats.unassigned,
            by_priority=stats.by_priority,
            by_assignee=stats.by_assignee,
            items_by_status=_group_items(stats.items_by_status),
            items_by_priority=_group_items(stats.items_by_priority),
            items_by_assignee=_group_items(stats.items_by_assignee),
            unassigned_items=[WorkItemResponse.from_domain(i) for i in stats.unassigned_items],
            flagged=[FlaggedItemResponse(**f) for f in stats.flagged],
        )


class EscalationEventResponse(BaseModel):
    """Response model for an escalation event."""
    id: str
    timer_id: str
    service_order_id: str
    task_id: Optional[str] = None
    level: int
    triggered_at: datetime
    notified_roles: List[Role]
    reassign_to_role: Optional[Role] = None
    is_breach: bool
    acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    @classmethod
    def from_domain(cls, event: EscalationEvent) -> "EscalationEventResponse":
        return cls(
            id=event.id,
            timer_id=event.timer_id,
            service_order_id=event.service_order_id,
            task_id=event.task_id,
            level=event.level,
            triggered_at=event.triggered_at,
            notified_roles=list(event.notified_roles),
            reassign_to_role=event.reassign_to_role,
            is_breach=event.is_breach,
            acknowledged=event.acknowledged,
            acknowledged_at=event.acknowledged_at,
            acknowledged_by=event.acknowledged_by,
        )


class PolicyResponse(BaseModel):
    """Response model for an SLA policy, including its effective ladder."""
    service_type: str
    baseline_hours: int
    warning_threshold_hours: int
    critical_threshold_hours: int
    escalation_rules: List[EscalationRule]
    effective_ladder: List[EscalationRule]
    pause_conditions: List[str]
    is_active: bool
    is_default: bool

    @classmethod
    def from_domain(cls, policy: SLAPolicy) -> "PolicyResponse":
        return cls(
            **policy.model_dump(exclude={"escalation_rules"}),
            escalation_rules=list(policy.escalation_rules),
            effective_ladder=policy.ladder(),
        )


class SweepResponse(BaseModel):
    """Result of an escalation sweep."""
    checked: int
    escalated: int
    breached: int
    errors: int
    events: List[EscalationEventResponse] = Field(default_factory=list)


class EngineStatusResponse(BaseModel):
    """Scheduler state of the escalation engine."""
    running: bool
    interval_seconds: int
    next_run_at: Optional[datetime] = None
    cached_policies: int
