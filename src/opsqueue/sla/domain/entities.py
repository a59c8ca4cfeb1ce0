"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from opsqueue.config import Priority, Role, SLAStatus, TimerStatus, WorkItemType
from opsqueue.core import InvalidStateException


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PauseRecord:
    """One entry in a timer's pause history."""

    reason: str
    at: datetime
    kind: str = "pause"  # pause | extension

    def to_dict(self) -> dict:
        return {"reason": self.reason, "at": self.at.isoformat(), "kind": self.kind}

    @classmethod
    def from_dict(cls, data: dict) -> "PauseRecord":
        return cls(
            reason=data["reason"],
            at=datetime.fromisoformat(data["at"]),
            kind=data.get("kind", "pause"),
        )


@dataclass
class SLATimer:
    """
    SLA timer for one trackable unit (a service order, or one of its tasks).

    Tracks elapsed and paused time against a baseline copied from the
    policy at open time. A stopped timer is immutable history.
    """

    # Identity
    id: str
    service_order_id: str
    service_type: str
    baseline_hours: int
    started_at: datetime

    task_id: Optional[str] = None

    # Order metadata projected onto work items
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[str] = None
    order_status: Optional[str] = None

    # Clock state
    current_status: TimerStatus = TimerStatus.RUNNING
    paused_at: Optional[datetime] = None
    total_paused_minutes: float = 0.0
    pause_reasons: List[PauseRecord] = field(default_factory=list)
    stopped_at: Optional[datetime] = None

    # Escalation state
    escalation_level: int = 0
    breach_notified: bool = False

    # Optimistic concurrency
    version: int = 0

    def __post_init__(self):
        """Validate timer on initialization."""
        if self.baseline_hours <= 0:
            raise ValueError("baseline_hours must be positive")
        if self.total_paused_minutes < 0:
            raise ValueError("total_paused_minutes cannot be negative")
        if self.current_status == TimerStatus.PAUSED and self.paused_at is None:
            raise ValueError("paused timer requires paused_at")

    @property
    def unit_key(self) -> Tuple[str, Optional[str]]:
        """The (service order, task) pair this timer tracks."""
        return self.service_order_id, self.task_id

    @property
    def is_open(self) -> bool:
        return self.current_status != TimerStatus.STOPPED

    @property
    def is_paused(self) -> bool:
        return self.current_status == TimerStatus.PAUSED

    @property
    def work_item_type(self) -> WorkItemType:
        return WorkItemType.TASK if self.task_id else WorkItemType.SERVICE_ORDER

    def _require_open(self, operation: str) -> None:
        if not self.is_open:
            raise InvalidStateException(self.id, self.current_status.value, operation)

    def pause(self, reason: str, at: Optional[datetime] = None) -> bool:
        """
        Freeze the clock.

        Returns False when the timer was already paused (no-op).
        """
        self._require_open("pause")
        if self.is_paused:
            return False

        at = at or utcnow()
        self.paused_at = at
        self.current_status = TimerStatus.PAUSED
        self.pause_reasons.append(PauseRecord(reason=reason, at=at))
        return True

    def resume(self, at: Optional[datetime] = None) -> float:
        """
        Restart the clock, accumulating the paused duration.

        Returns the minutes added to ``total_paused_minutes``.
        """
        self._require_open("resume")
        if not self.is_paused:
            raise InvalidStateException(self.id, self.current_status.value, "resume")

        at = at or utcnow()
        paused_minutes = max(0.0, (at - self.paused_at).total_seconds() / 60)
        self.total_paused_minutes += paused_minutes
        self.paused_at = None
        self.current_status = TimerStatus.RUNNING
        return paused_minutes

    def stop(self, at: Optional[datetime] = None) -> None:
        """Close the timer; an open pause is folded into the paused total."""
        self._require_open("stop")

        at = at or utcnow()
        if self.is_paused:
            self.total_paused_minutes += max(0.0, (at - self.paused_at).total_seconds() / 60)
            self.paused_at = None
        self.stopped_at = at
        self.current_status = TimerStatus.STOPPED

    def extend(self, hours: int, reason: str, at: Optional[datetime] = None) -> None:
        """Grant an SLA exception by adding hours to this timer's baseline."""
        self._require_open("extend")
        if hours <= 0:
            raise ValueError("extension hours must be positive")

        at = at or utcnow()
        self.baseline_hours += hours
        self.pause_reasons.append(
            PauseRecord(reason=f"{reason} (+{hours}h)", at=at, kind="extension")
        )

    def assign(self, assignee: Optional[str]) -> None:
        self._require_open("assign")
        self.assigned_to = assignee

    def advance_escalation(self, level: int, is_breach: bool) -> bool:
        """
        Move the escalation level forward.

        Levels never decrease; returns False when ``level`` is not above the
        current one.
        """
        if level <= self.escalation_level:
            return False
        self.escalation_level = level
        if is_breach:
            self.breach_notified = True
        return True


@dataclass
class EscalationEvent:
    """
    Record of one escalation level firing for a timer.

    Append-only: only the acknowledgement fields change after creation.
    """

    id: str
    timer_id: str
    service_order_id: str
    level: int
    triggered_at: datetime
    notified_roles: List[Role] = field(default_factory=list)
    task_id: Optional[str] = None
    reassign_to_role: Optional[Role] = None
    is_breach: bool = False
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    def acknowledge(self, by: Optional[str] = None, at: Optional[datetime] = None) -> bool:
        """Mark the event acknowledged; returns False if it already was."""
        if self.acknowledged:
            return False
        self.acknowledged = True
        self.acknowledged_at = at or utcnow()
        self.acknowledged_by = by
        return True

    def to_notification(self) -> dict:
        """Payload handed to the notification system."""
        return {
            "event_id": self.id,
            "timer_id": self.timer_id,
            "service_order_id": self.service_order_id,
            "task_id": self.task_id,
            "level": self.level,
            "notify_roles": [role.value for role in self.notified_roles],
            "reassign_to_role": self.reassign_to_role.value if self.reassign_to_role else None,
            "is_breach": self.is_breach,
            "triggered_at": self.triggered_at.isoformat(),
        }


@dataclass(frozen=True)
class SLAEvaluation:
    """Result of evaluating one timer against its policy at an instant."""

    timer_id: str
    evaluated_at: datetime
    elapsed_hours: float
    hours_remaining: float
    sla_status: SLAStatus
    deadline: datetime
    age_hours: int

    @property
    def sla_hours_remaining(self) -> int:
        """Whole hours remaining; negative means overdue by that many hours."""
        return math.floor(self.hours_remaining)


@dataclass
class WorkItem:
    """
    Read projection of a timer for queue display.

    Derived on every read from Timer + Policy; never mutated independently.
    """

    id: str
    work_item_type: WorkItemType
    reference_id: str
    service_order_id: str
    service_type: str
    current_status: Optional[str]
    timer_status: TimerStatus
    priority: Priority
    assigned_to: Optional[str]
    sla_deadline: datetime
    sla_status: SLAStatus
    sla_hours_remaining: int
    hours_remaining: float
    elapsed_hours: float
    escalation_level: int
    age_hours: int

    @classmethod
    def project(cls, timer: SLATimer, evaluation: SLAEvaluation) -> "WorkItem":
        return cls(
            id=timer.id,
            work_item_type=timer.work_item_type,
            reference_id=timer.task_id or timer.service_order_id,
            service_order_id=timer.service_order_id,
            service_type=timer.service_type,
            current_status=timer.order_status,
            timer_status=timer.current_status,
            priority=timer.priority,
            assigned_to=timer.assigned_to,
            sla_deadline=evaluation.deadline,
            sla_status=evaluation.sla_status,
            sla_hours_remaining=evaluation.sla_hours_remaining,
            hours_remaining=evaluation.hours_remaining,
            elapsed_hours=evaluation.elapsed_hours,
            escalation_level=timer.escalation_level,
            age_hours=evaluation.age_hours,
        )


@dataclass
class WorkQueueStats:
    """Queue statistics partitioned by SLA status, priority and assignee."""

    total: int = 0
    on_track: int = 0
    at_risk: int = 0
    warning: int = 0
    breached: int = 0
    unassigned: int = 0
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_assignee: Dict[str, int] = field(default_factory=dict)
    items_by_status: Dict[str, List[WorkItem]] = field(default_factory=dict)
    items_by_priority: Dict[str, List[WorkItem]] = field(default_factory=dict)
    items_by_assignee: Dict[str, List[WorkItem]] = field(default_factory=dict)
    unassigned_items: List[WorkItem] = field(default_factory=list)
    flagged: List[Dict[str, str]] = field(default_factory=list)

    @property
    def by_sla_status(self) -> Dict[str, int]:
        return {
            SLAStatus.ON_TRACK.value: self.on_track,
            SLAStatus.AT_RISK.value: self.at_risk,
            SLAStatus.WARNING.value: self.warning,
            SLAStatus.BREACHED.value: self.breached,
        }
