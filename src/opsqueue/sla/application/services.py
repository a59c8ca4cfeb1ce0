"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

Services take an injectable ``clock`` so time-dependent behaviour can be
driven from tests.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncContextManager, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from opsqueue.config import Priority, SLAStatus, Settings
from opsqueue.core import (
    ConcurrencyConflictException,
    DuplicateActiveTimerException,
    InvalidStateException,
    NotificationDeliveryException,
    PolicyNotFoundException,
    ResourceNotFoundException,
    ValidationException,
)
from opsqueue.shared.infrastructure.logging import get_logger, log_latency
from opsqueue.sla.domain import (
    EscalationEvent,
    EscalationLadder,
    SLAEvaluation,
    SLAPolicy,
    SLATimer,
    StatusEvaluator,
    WorkItem,
    WorkQueueAggregator,
    WorkQueueStats,
    build_default_policy,
    utcnow,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]
IdFactory = Callable[[], str]


def new_id() -> str:
    return str(uuid4())


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITimerRepository(ABC):
    """Interface for SLA timer data access."""

    @abstractmethod
    async def get(self, timer_id: str) -> Optional[SLATimer]:
        """Get timer by ID."""

    @abstractmethod
    async def get_for_update(self, timer_id: str) -> Optional[SLATimer]:
        """Get timer by ID, locking it for the rest of the transaction."""

    @abstractmethod
    async def find_active(
        self,
        service_order_id: str,
        task_id: Optional[str] = None,
        for_update: bool = False
    ) -> Optional[SLATimer]:
        """Get the open (non-stopped) timer for a trackable unit."""

    @abstractmethod
    async def find_latest(
        self,
        service_order_id: str,
        task_id: Optional[str] = None
    ) -> Optional[SLATimer]:
        """Get the most recently started timer for a trackable unit."""

    @abstractmethod
    async def list_open(
        self,
        priority: Optional[Priority] = None,
        assigned_to: Optional[str] = None,
        unassigned_only: bool = False
    ) -> List[SLATimer]:
        """List open timers with optional filters."""

    @abstractmethod
    async def add(self, timer: SLATimer) -> SLATimer:
        """
        Persist a new timer.

        Raises DuplicateActiveTimerException when the unit already has an
        open timer.
        """

    @abstractmethod
    async def save(self, timer: SLATimer) -> SLATimer:
        """
        Write back a modified timer.

        Only succeeds when the stored version still equals ``timer.version``;
        the version is incremented on success. Raises
        ConcurrencyConflictException otherwise.
        """


class IEscalationEventRepository(ABC):
    """Interface for escalation event data access."""

    @abstractmethod
    async def add(self, event: EscalationEvent) -> bool:
        """
        Record a new event.

        Returns False when the level was already recorded for the timer.
        """

    @abstractmethod
    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        """Get event by ID."""

    @abstractmethod
    async def list(
        self,
        timer_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[EscalationEvent]:
        """List events, newest first."""

    @abstractmethod
    async def save_acknowledgement(self, event: EscalationEvent) -> EscalationEvent:
        """Persist the acknowledgement fields of an event."""


class IPolicyRepository(ABC):
    """Interface for admin-managed SLA policies."""

    @abstractmethod
    async def get_by_service_type(self, service_type: str) -> Optional[SLAPolicy]:
        """
        Get the stored policy for a service type.

        Raises ValidationException when the stored row is not a valid policy.
        """

    @abstractmethod
    async def list(self) -> List[SLAPolicy]:
        """List all valid stored policies."""

    @abstractmethod
    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        """Create or replace the policy for its service type."""


class IPolicySource(ABC):
    """Interface for file-based SLA policy configuration."""

    @abstractmethod
    def get_policy(self, service_type: str) -> Optional[SLAPolicy]:
        """Get the configured policy for a service type."""

    @abstractmethod
    def list_policies(self) -> List[SLAPolicy]:
        """All configured policies."""


class INotificationDispatcher(ABC):
    """Interface for handing escalation events to the notification system."""

    @abstractmethod
    async def dispatch(self, event: EscalationEvent) -> None:
        """
        Deliver one event.

        Raises NotificationDeliveryException when delivery fails.
        """


# ========== Policy Resolution ==========

class PolicyCache:
    """
    Resolved policies keyed by service type, expiring after ``ttl_seconds``.

    A TTL of 0 disables caching. The policy file watcher invalidates from
    its own thread, so entries are only touched under the lock.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Clock = utcnow):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[SLAPolicy, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, service_type: str) -> Optional[SLAPolicy]:
        with self._lock:
            entry = self._entries.get(service_type)
        if entry is None:
            return None
        policy, expires_at = entry
        if self._clock() >= expires_at:
            with self._lock:
                if self._entries.get(service_type) is entry:
                    del self._entries[service_type]
            return None
        return policy

    def put(self, policy: SLAPolicy) -> None:
        if self._ttl.total_seconds() <= 0:
            return
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._entries[policy.service_type] = (policy, expires_at)

    def invalidate(self, service_type: Optional[str] = None) -> None:
        """Drop one entry, or everything when no service type is given."""
        with self._lock:
            if service_type is None:
                self._entries.clear()
            else:
                self._entries.pop(service_type, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PolicyResolver:
    """
    Maps a service type to its SLA policy.

    Lookup order: stored (admin) policy, policy file, system default. A
    missing or unusable policy never fails a caller; it resolves to the
    conservative default and logs a configuration gap.
    """

    def __init__(
        self,
        settings: Settings,
        repository: Optional[IPolicyRepository] = None,
        file_source: Optional[IPolicySource] = None,
        cache: Optional[PolicyCache] = None
    ):
        self._settings = settings
        self._repo = repository
        self._file_source = file_source
        self._cache = cache if cache is not None else PolicyCache(settings.policy_cache_ttl_seconds)

    def default_policy(self, service_type: str) -> SLAPolicy:
        """The system-default policy for ``service_type``."""
        return build_default_policy(
            service_type,
            baseline_hours=self._settings.default_baseline_hours,
            warning_threshold_hours=self._settings.default_warning_threshold_hours,
            critical_threshold_hours=self._settings.default_critical_threshold_hours,
        )

    async def find(self, service_type: str) -> SLAPolicy:
        """
        Look up a configured policy without falling back.

        Raises:
            PolicyNotFoundException: no active, valid policy exists
        """
        if self._repo is not None:
            try:
                policy = await self._repo.get_by_service_type(service_type)
            except ValidationException as e:
                logger.warning(
                    "Invalid stored SLA policy ignored",
                    extra={"service_type": service_type, "error": e.message, **e.details}
                )
                policy = None
            if policy is not None:
                if policy.is_active:
                    return policy
                logger.warning(
                    "Inactive stored SLA policy ignored",
                    extra={"service_type": service_type}
                )

        if self._file_source is not None:
            policy = self._file_source.get_policy(service_type)
            if policy is not None and policy.is_active:
                return policy

        raise PolicyNotFoundException(service_type)

    async def resolve(self, service_type: str) -> SLAPolicy:
        """
        Resolve the policy for a service type; never raises for a missing one.

        Args:
            service_type: Service type of the order

        Returns:
            The configured policy, or the default with ``is_default=True``
        """
        cached = self._cache.get(service_type)
        if cached is not None:
            return cached

        try:
            policy = await self.find(service_type)
        except PolicyNotFoundException:
            logger.warning(
                "SLA configuration gap: no policy for service type, using default",
                extra={
                    "service_type": service_type,
                    "default_baseline_hours": self._settings.default_baseline_hours,
                }
            )
            policy = self.default_policy(service_type)

        self._cache.put(policy)
        return policy

    async def policies_for(self, service_types: Iterable[str]) -> Dict[str, SLAPolicy]:
        """Resolve each distinct service type once."""
        policies: Dict[str, SLAPolicy] = {}
        for service_type in service_types:
            if service_type not in policies:
                policies[service_type] = await self.resolve(service_type)
        return policies

    async def list_policies(self) -> List[SLAPolicy]:
        """Configured policies; stored ones override file entries."""
        merged: Dict[str, SLAPolicy] = {}
        if self._file_source is not None:
            for policy in self._file_source.list_policies():
                merged[policy.service_type] = policy
        if self._repo is not None:
            for policy in await self._repo.list():
                merged[policy.service_type] = policy
        return sorted(merged.values(), key=lambda p: p.service_type)

    async def save(self, policy: SLAPolicy) -> SLAPolicy:
        """Store an admin-written policy and drop its cached resolution."""
        if self._repo is None:
            raise RuntimeError("Policy repository not configured")
        saved = await self._repo.upsert(policy)
        self._cache.invalidate(policy.service_type)
        logger.info(
            "SLA policy saved",
            extra={
                "service_type": saved.service_type,
                "baseline_hours": saved.baseline_hours,
                "is_active": saved.is_active,
            }
        )
        return saved

    def invalidate(self, service_type: Optional[str] = None) -> None:
        self._cache.invalidate(service_type)


# ========== Timer Store ==========

class TimerStore:
    """
    Owns SLA timer records.

    Every mutation loads the timer with a row lock and writes it back with an
    optimistic version check. No notification logic lives here.
    """

    def __init__(
        self,
        timer_repository: ITimerRepository,
        policy_resolver: PolicyResolver,
        settings: Settings,
        clock: Clock = utcnow,
        id_factory: IdFactory = new_id
    ):
        self._timer_repo = timer_repository
        self._resolver = policy_resolver
        self._terminal_statuses = {s.lower() for s in settings.terminal_statuses}
        self._clock = clock
        self._id_factory = id_factory

    async def get(self, timer_id: str) -> SLATimer:
        timer = await self._timer_repo.get(timer_id)
        if timer is None:
            raise ResourceNotFoundException("SLA timer", timer_id)
        return timer

    async def _get_for_update(self, timer_id: str) -> SLATimer:
        timer = await self._timer_repo.get_for_update(timer_id)
        if timer is None:
            raise ResourceNotFoundException("SLA timer", timer_id)
        return timer

    async def evaluate(self, timer_id: str) -> Tuple[SLATimer, SLAPolicy, SLAEvaluation]:
        """Current SLA status of one timer."""
        timer = await self.get(timer_id)
        policy = await self._resolver.resolve(timer.service_type)
        return timer, policy, StatusEvaluator.evaluate(timer, policy, self._clock())

    async def open(
        self,
        service_order_id: str,
        service_type: str,
        task_id: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        assigned_to: Optional[str] = None,
        order_status: Optional[str] = None,
        policy: Optional[SLAPolicy] = None
    ) -> SLATimer:
        """
        Open a timer for a service order (or one of its tasks).

        The baseline is copied from the policy. If the unit already has an
        open timer the call is logged as a caller bug and the existing timer
        is returned.
        """
        try:
            existing = await self._timer_repo.find_active(service_order_id, task_id)
            if existing is not None:
                raise DuplicateActiveTimerException(existing)

            policy = policy or await self._resolver.resolve(service_type)
            now = self._clock()
            timer = SLATimer(
                id=self._id_factory(),
                service_order_id=service_order_id,
                task_id=task_id,
                service_type=service_type,
                baseline_hours=policy.baseline_hours,
                started_at=now,
                priority=priority,
                assigned_to=assigned_to,
                order_status=order_status,
            )
            if policy.pauses_on(order_status):
                timer.pause(order_status, at=now)

            timer = await self._timer_repo.add(timer)
        except DuplicateActiveTimerException as e:
            logger.error(
                "Duplicate open() for a unit with an active SLA timer; returning existing timer",
                extra=e.details
            )
            return e.existing

        logger.info(
            "SLA timer opened",
            extra={
                "timer_id": timer.id,
                "service_order_id": service_order_id,
                "task_id": task_id,
                "service_type": service_type,
                "baseline_hours": timer.baseline_hours,
                "policy_is_default": policy.is_default,
            }
        )
        return timer

    async def pause(self, timer_id: str, reason: str) -> SLATimer:
        """Freeze the clock; a no-op when already paused."""
        timer = await self._get_for_update(timer_id)
        if timer.pause(reason, at=self._clock()):
            timer = await self._timer_repo.save(timer)
            logger.info("SLA timer paused", extra={"timer_id": timer.id, "reason": reason})
        return timer

    async def resume(self, timer_id: str) -> SLATimer:
        timer = await self._get_for_update(timer_id)
        paused_minutes = timer.resume(at=self._clock())
        timer = await self._timer_repo.save(timer)
        logger.info(
            "SLA timer resumed",
            extra={"timer_id": timer.id, "paused_minutes": round(paused_minutes, 2)}
        )
        return timer

    async def stop(self, timer_id: str) -> SLATimer:
        timer = await self._get_for_update(timer_id)
        timer.stop(at=self._clock())
        timer = await self._timer_repo.save(timer)
        logger.info("SLA timer stopped", extra={"timer_id": timer.id})
        return timer

    async def extend(self, timer_id: str, hours: int, reason: str) -> SLATimer:
        """Grant an SLA exception of ``hours`` on this timer only."""
        timer = await self._get_for_update(timer_id)
        timer.extend(hours, reason, at=self._clock())
        timer = await self._timer_repo.save(timer)
        logger.info(
            "SLA timer extended",
            extra={
                "timer_id": timer.id,
                "hours": hours,
                "reason": reason,
                "baseline_hours": timer.baseline_hours,
            }
        )
        return timer

    async def assign(self, timer_id: str, assignee: Optional[str]) -> SLATimer:
        timer = await self._get_for_update(timer_id)
        timer.assign(assignee)
        return await self._timer_repo.save(timer)

    async def reopen(
        self,
        service_order_id: str,
        task_id: Optional[str] = None
    ) -> SLATimer:
        """
        Start a fresh timer instance for a unit whose timer was stopped.

        Escalation starts again from level 0; the old instance stays as
        history.
        """
        active = await self._timer_repo.find_active(service_order_id, task_id)
        if active is not None:
            raise InvalidStateException(active.id, active.current_status.value, "reopen")

        previous = await self._timer_repo.find_latest(service_order_id, task_id)
        if previous is None:
            raise ResourceNotFoundException(
                "SLA timer", service_order_id, {"task_id": task_id}
            )

        timer = await self.open(
            service_order_id=service_order_id,
            service_type=previous.service_type,
            task_id=task_id,
            priority=previous.priority,
            assigned_to=previous.assigned_to,
        )
        logger.info(
            "SLA timer reopened",
            extra={"timer_id": timer.id, "previous_timer_id": previous.id}
        )
        return timer

    async def apply_order_status(
        self,
        service_order_id: str,
        status: str,
        task_id: Optional[str] = None
    ) -> SLATimer:
        """
        Order lifecycle hook.

        A terminal status stops the timer, a pause-condition status pauses
        it, and leaving a pause-condition status resumes it. The status is
        recorded on the timer in every case.
        """
        timer = await self._timer_repo.find_active(service_order_id, task_id, for_update=True)
        if timer is None:
            raise ResourceNotFoundException(
                "SLA timer", service_order_id, {"task_id": task_id, "status": status}
            )

        policy = await self._resolver.resolve(timer.service_type)
        now = self._clock()
        normalized = status.strip().lower()
        timer.order_status = status

        if normalized in self._terminal_statuses:
            timer.stop(at=now)
            action = "stopped"
        elif policy.pauses_on(normalized):
            action = "paused" if timer.pause(status, at=now) else "unchanged"
        elif timer.is_paused:
            timer.resume(at=now)
            action = "resumed"
        else:
            action = "unchanged"

        timer = await self._timer_repo.save(timer)
        logger.info(
            "Order status applied to SLA timer",
            extra={"timer_id": timer.id, "status": status, "action": action}
        )
        return timer


# ========== Escalation ==========

@dataclass
class SweepResult:
    """Outcome of one escalation sweep."""

    checked: int = 0
    escalated: int = 0
    breached: int = 0
    errors: int = 0
    events: List[EscalationEvent] = field(default_factory=list)


class EscalationService:
    """
    Runs escalation sweeps and manages escalation history.

    Scheduled and manual sweeps share the same code path. A sweep records
    events inside the caller's transaction; notifications are sent by
    ``dispatch`` only after that transaction has committed.
    """

    def __init__(
        self,
        timer_repository: ITimerRepository,
        event_repository: IEscalationEventRepository,
        policy_resolver: PolicyResolver,
        dispatcher: INotificationDispatcher,
        sweep_lock: Optional[asyncio.Lock] = None,
        savepoint: Optional[Callable[[], AsyncContextManager]] = None,
        clock: Clock = utcnow,
        id_factory: IdFactory = new_id
    ):
        self._timer_repo = timer_repository
        self._event_repo = event_repository
        self._resolver = policy_resolver
        self._dispatcher = dispatcher
        self._sweep_lock = sweep_lock or asyncio.Lock()
        self._savepoint = savepoint or nullcontext
        self._clock = clock
        self._id_factory = id_factory

    async def sweep(self, trigger: str = "scheduled") -> SweepResult:
        """
        Evaluate every open timer and advance its escalation ladder.

        A failure on one timer is counted in ``errors`` and does not stop
        the sweep. A timer changed concurrently is skipped; the next sweep
        sees its new state.
        """
        result = SweepResult()

        async with self._sweep_lock:
            with log_latency(logger, "escalation_sweep", trigger=trigger):
                now = self._clock()
                timers = await self._timer_repo.list_open()
                policies = await self._resolver.policies_for(t.service_type for t in timers)

                for timer in timers:
                    result.checked += 1
                    try:
                        async with self._savepoint():
                            await self._escalate(timer, policies[timer.service_type], now, result)
                    except ConcurrencyConflictException as e:
                        logger.info(
                            "Timer changed during sweep; skipped",
                            extra={"timer_id": e.timer_id}
                        )
                    except Exception as e:
                        result.errors += 1
                        logger.error(
                            "Escalation failed for timer",
                            extra={"timer_id": timer.id, "error": str(e)},
                            exc_info=True
                        )

        logger.info(
            "Escalation sweep finished",
            extra={
                "trigger": trigger,
                "checked": result.checked,
                "escalated": result.escalated,
                "breached": result.breached,
                "errors": result.errors,
            }
        )
        return result

    async def _escalate(
        self,
        timer: SLATimer,
        policy: SLAPolicy,
        now: datetime,
        result: SweepResult
    ) -> None:
        evaluation = StatusEvaluator.evaluate(timer, policy, now)
        was_breach_notified = timer.breach_notified
        events = EscalationLadder.transition(
            timer, policy, evaluation, now, id_factory=self._id_factory
        )
        if not events:
            return

        await self._timer_repo.save(timer)

        recorded = []
        for event in events:
            if await self._event_repo.add(event):
                recorded.append(event)

        if recorded:
            result.escalated += 1
            result.events.extend(recorded)
        if timer.breach_notified and not was_breach_notified:
            result.breached += 1

        for event in recorded:
            logger.info(
                "Escalation fired",
                extra={
                    "timer_id": timer.id,
                    "service_order_id": timer.service_order_id,
                    "level": event.level,
                    "notify_roles": [r.value for r in event.notified_roles],
                    "is_breach": event.is_breach,
                    "sla_status": evaluation.sla_status.value,
                    "hours_remaining": round(evaluation.hours_remaining, 2),
                }
            )

    async def trigger_escalation_check(self) -> SweepResult:
        """On-demand sweep ("process now")."""
        return await self.sweep(trigger="manual")

    async def dispatch(self, events: Iterable[EscalationEvent]) -> int:
        """
        Hand committed events to the notification system.

        Delivery failures are logged; the escalation stays recorded.

        Returns:
            Number of events delivered
        """
        delivered = 0
        for event in events:
            try:
                await self._dispatcher.dispatch(event)
                delivered += 1
            except NotificationDeliveryException as e:
                logger.warning(
                    "Escalation notification delivery failed",
                    extra={"event_id": event.id, "timer_id": event.timer_id, "error": e.message}
                )
        return delivered

    async def list_events(
        self,
        timer_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[EscalationEvent]:
        return await self._event_repo.list(
            timer_id=timer_id, acknowledged=acknowledged, limit=limit, offset=offset
        )

    async def acknowledge(self, event_id: str, by: Optional[str] = None) -> EscalationEvent:
        """Acknowledge an event; repeating the call changes nothing."""
        event = await self._event_repo.get(event_id)
        if event is None:
            raise ResourceNotFoundException("Escalation event", event_id)

        if event.acknowledge(by=by, at=self._clock()):
            event = await self._event_repo.save_acknowledgement(event)
            logger.info(
                "Escalation acknowledged",
                extra={"event_id": event.id, "timer_id": event.timer_id, "by": by}
            )
        return event


# ========== Work Queue ==========

class WorkQueueService:
    """Work-queue views derived from open timers on every read."""

    def __init__(
        self,
        timer_repository: ITimerRepository,
        policy_resolver: PolicyResolver,
        clock: Clock = utcnow
    ):
        self._timer_repo = timer_repository
        self._resolver = policy_resolver
        self._aggregator = WorkQueueAggregator(policy_resolver.default_policy)
        self._clock = clock

    async def _snapshot(self, **filters) -> Tuple[List[SLATimer], Dict[str, SLAPolicy]]:
        timers = await self._timer_repo.list_open(**filters)
        policies = await self._resolver.policies_for(t.service_type for t in timers)
        return timers, policies

    async def items(
        self,
        sla_status: Optional[SLAStatus] = None,
        priority: Optional[Priority] = None,
        assigned_to: Optional[str] = None,
        unassigned_only: bool = False
    ) -> Tuple[List[WorkItem], List[Dict[str, str]]]:
        """
        Work items, most urgent first.

        Returns:
            Tuple of (items, flagged) where flagged lists timers that
            could not be evaluated
        """
        timers, policies = await self._snapshot(
            priority=priority, assigned_to=assigned_to, unassigned_only=unassigned_only
        )
        flagged: List[Dict[str, str]] = []
        items = self._aggregator.work_items(timers, policies, self._clock(), flagged=flagged)
        if sla_status is not None:
            items = [item for item in items if item.sla_status == sla_status]
        return items, flagged

    async def stats(self) -> WorkQueueStats:
        timers, policies = await self._snapshot()
        return self._aggregator.summarize(timers, policies, self._clock())

    async def at_risk(self) -> List[WorkItem]:
        """Items at risk or in warning, warning first."""
        items, _ = await self.items()
        severity = {SLAStatus.WARNING: 0, SLAStatus.AT_RISK: 1}
        flagged = [item for item in items if item.sla_status in severity]
        flagged.sort(key=lambda item: (severity[item.sla_status], item.hours_remaining))
        return flagged

    async def breached(self) -> List[WorkItem]:
        items, _ = await self.items(sla_status=SLAStatus.BREACHED)
        return items

    async def unassigned(self) -> List[WorkItem]:
        items, _ = await self.items(unassigned_only=True)
        return items
