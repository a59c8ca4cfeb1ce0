"""
SLA Domain Services
====================

Stateless business logic over timers and policies:

- StatusEvaluator: (timer, policy, now) -> SLAEvaluation
- EscalationLadder: forward-only escalation transitions
- WorkQueueAggregator: queue statistics over many timers

Nothing in this module touches storage or the network.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from opsqueue.config import SLAStatus, TimerStatus
from opsqueue.sla.domain.entities import (
    EscalationEvent, SLAEvaluation, SLATimer, WorkItem, WorkQueueStats,
)
from opsqueue.sla.domain.value_objects import EscalationRule, SLAPolicy

logger = logging.getLogger(__name__)


class StatusEvaluator:
    """
    Pure functions for SLA status.

    Deterministic: identical inputs always give identical output, so it is
    safe to re-evaluate on every queue read.
    """

    @staticmethod
    def reference_time(timer: SLATimer, now: datetime) -> datetime:
        """Stopped timers are frozen at their stop instant."""
        if timer.current_status == TimerStatus.STOPPED and timer.stopped_at is not None:
            return timer.stopped_at
        return now

    @staticmethod
    def elapsed_hours(timer: SLATimer, now: datetime) -> float:
        """
        Running time since start, excluding accumulated and in-progress pauses.

        Never negative.
        """
        reference = StatusEvaluator.reference_time(timer, now)
        paused_minutes = timer.total_paused_minutes
        if timer.current_status == TimerStatus.PAUSED and timer.paused_at is not None:
            paused_minutes += max(0.0, (reference - timer.paused_at).total_seconds() / 60)

        elapsed_seconds = (reference - timer.started_at).total_seconds() - paused_minutes * 60
        return max(0.0, elapsed_seconds / 3600)

    @staticmethod
    def classify(hours_remaining: float, policy: SLAPolicy) -> SLAStatus:
        """First match wins, most severe first."""
        if hours_remaining <= 0:
            return SLAStatus.BREACHED
        if hours_remaining <= policy.critical_threshold_hours:
            return SLAStatus.WARNING
        if hours_remaining <= policy.warning_threshold_hours:
            return SLAStatus.AT_RISK
        return SLAStatus.ON_TRACK

    @staticmethod
    def evaluate(timer: SLATimer, policy: SLAPolicy, now: datetime) -> SLAEvaluation:
        """
        Evaluate a timer at ``now``.

        The budget is the timer's own baseline (it includes any granted
        extensions); thresholds come from the policy.
        """
        reference = StatusEvaluator.reference_time(timer, now)
        elapsed = StatusEvaluator.elapsed_hours(timer, now)
        remaining = timer.baseline_hours - elapsed

        return SLAEvaluation(
            timer_id=timer.id,
            evaluated_at=reference,
            elapsed_hours=elapsed,
            hours_remaining=remaining,
            sla_status=StatusEvaluator.classify(remaining, policy),
            deadline=reference + timedelta(hours=remaining),
            age_hours=max(0, math.floor((reference - timer.started_at).total_seconds() / 3600)),
        )


class EscalationLadder:
    """
    Escalation state machine.

    The state is ``timer.escalation_level`` (0 = none). A rule fires when its
    ``after_hours`` has been reached and the timer sits below its level.
    Levels only move forward.
    """

    @staticmethod
    def crossed_rules(
        timer: SLATimer,
        policy: SLAPolicy,
        evaluation: SLAEvaluation
    ) -> List[EscalationRule]:
        """Rules newly crossed at this evaluation, in ladder order."""
        if not timer.is_open:
            return []
        return [
            rule for rule in policy.ladder(timer.baseline_hours)
            if evaluation.elapsed_hours >= rule.after_hours
            and timer.escalation_level < rule.level
        ]

    @staticmethod
    def transition(
        timer: SLATimer,
        policy: SLAPolicy,
        evaluation: SLAEvaluation,
        now: datetime,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> List[EscalationEvent]:
        """
        Advance the timer past every newly crossed rule.

        Mutates ``timer`` and returns one event per level fired. Calling it
        again with the same evaluation returns no events.
        """
        events: List[EscalationEvent] = []

        for rule in EscalationLadder.crossed_rules(timer, policy, evaluation):
            is_breach = rule.is_breach_for(timer.baseline_hours)
            if not timer.advance_escalation(rule.level, is_breach):
                continue
            events.append(EscalationEvent(
                id=id_factory(),
                timer_id=timer.id,
                service_order_id=timer.service_order_id,
                task_id=timer.task_id,
                level=rule.level,
                triggered_at=now,
                notified_roles=list(rule.notify),
                reassign_to_role=rule.reassign_to_role,
                is_breach=is_breach,
            ))

        return events


class WorkQueueAggregator:
    """
    Fan-in over timers producing queue statistics.

    A missing policy falls back to ``default_policy``; a timer that fails to
    evaluate is flagged and left out rather than failing the whole summary.
    """

    def __init__(self, default_policy: Callable[[str], SLAPolicy]):
        self._default_policy = default_policy

    def work_items(
        self,
        timers: Iterable[SLATimer],
        policies: Mapping[str, SLAPolicy],
        now: datetime,
        flagged: Optional[List[Dict[str, str]]] = None,
    ) -> List[WorkItem]:
        """Project timers to work items, most urgent first."""
        items: List[WorkItem] = []
        for timer in timers:
            try:
                policy = policies.get(timer.service_type)
                if policy is None:
                    logger.warning(
                        "SLA configuration gap: no policy for service type, using default",
                        extra={"service_type": timer.service_type, "timer_id": timer.id}
                    )
                    policy = self._default_policy(timer.service_type)
                evaluation = StatusEvaluator.evaluate(timer, policy, now)
                items.append(WorkItem.project(timer, evaluation))
            except Exception as e:
                if flagged is None:
                    raise
                flagged.append({"timer_id": str(getattr(timer, "id", "")), "error": str(e)})

        items.sort(key=lambda item: (item.hours_remaining, item.id))
        return items

    def summarize(
        self,
        timers: Iterable[SLATimer],
        policies: Mapping[str, SLAPolicy],
        now: datetime,
    ) -> WorkQueueStats:
        stats = WorkQueueStats()
        items = self.work_items(timers, policies, now, flagged=stats.flagged)

        for status in SLAStatus:
            stats.items_by_status[status.value] = []

        for item in items:
            stats.total += 1
            stats.items_by_status[item.sla_status.value].append(item)
            stats.items_by_priority.setdefault(item.priority.value, []).append(item)

            if item.assigned_to is None:
                stats.unassigned += 1
                stats.unassigned_items.append(item)
            else:
                stats.items_by_assignee.setdefault(item.assigned_to, []).append(item)

        stats.on_track = len(stats.items_by_status[SLAStatus.ON_TRACK.value])
        stats.at_risk = len(stats.items_by_status[SLAStatus.AT_RISK.value])
        stats.warning = len(stats.items_by_status[SLAStatus.WARNING.value])
        stats.breached = len(stats.items_by_status[SLAStatus.BREACHED.value])
        stats.by_priority = {k: len(v) for k, v in stats.items_by_priority.items()}
        stats.by_assignee = {k: len(v) for k, v in stats.items_by_assignee.items()}

        return stats
