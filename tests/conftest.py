"""
OpsQueue SLA - Test Configuration

Pytest fixtures, in-memory repositories and a controllable clock.
"""

from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional, Set

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from opsqueue.config import Settings
from opsqueue.core import (
    ConcurrencyConflictException,
    DuplicateActiveTimerException,
    NotificationDeliveryException,
    ValidationException,
)
from opsqueue.infrastructure.database import get_session
from opsqueue.sla.application import (
    EscalationService,
    IEscalationEventRepository,
    INotificationDispatcher,
    IPolicyRepository,
    IPolicySource,
    ITimerRepository,
    PolicyCache,
    PolicyResolver,
    TimerStore,
    WorkQueueService,
)
from opsqueue.sla.domain import EscalationEvent, SLAPolicy, SLATimer


T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


# ========== Clock ==========

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, hours_after_start: float) -> datetime:
        self.now = T0 + timedelta(hours=hours_after_start)
        return self.now


# ========== In-memory repositories ==========

class InMemoryTimerRepository(ITimerRepository):
    """Stores copies so callers only see changes they save."""

    def __init__(self):
        self.rows: Dict[str, SLATimer] = {}

    async def get(self, timer_id: str) -> Optional[SLATimer]:
        timer = self.rows.get(timer_id)
        return deepcopy(timer) if timer else None

    async def get_for_update(self, timer_id: str) -> Optional[SLATimer]:
        return await self.get(timer_id)

    async def find_active(self, service_order_id, task_id=None, for_update=False):
        for timer in self.rows.values():
            if timer.unit_key == (service_order_id, task_id) and timer.is_open:
                return deepcopy(timer)
        return None

    async def find_latest(self, service_order_id, task_id=None):
        matches = [t for t in self.rows.values() if t.unit_key == (service_order_id, task_id)]
        if not matches:
            return None
        return deepcopy(max(matches, key=lambda t: t.started_at))

    async def list_open(self, priority=None, assigned_to=None, unassigned_only=False):
        timers = [t for t in self.rows.values() if t.is_open]
        if priority is not None:
            timers = [t for t in timers if t.priority == priority]
        if unassigned_only:
            timers = [t for t in timers if t.assigned_to is None]
        elif assigned_to is not None:
            timers = [t for t in timers if t.assigned_to == assigned_to]
        return [deepcopy(t) for t in sorted(timers, key=lambda t: t.started_at)]

    async def add(self, timer: SLATimer) -> SLATimer:
        existing = await self.find_active(timer.service_order_id, timer.task_id)
        if existing is not None:
            raise DuplicateActiveTimerException(existing)
        self.rows[timer.id] = deepcopy(timer)
        return timer

    async def save(self, timer: SLATimer) -> SLATimer:
        stored = self.rows.get(timer.id)
        if stored is None or stored.version != timer.version:
            raise ConcurrencyConflictException(timer.id, timer.version)
        timer.version += 1
        self.rows[timer.id] = deepcopy(timer)
        return timer

    def put(self, timer: SLATimer) -> SLATimer:
        """Seed a timer directly."""
        self.rows[timer.id] = deepcopy(timer)
        return timer


class InMemoryEscalationEventRepository(IEscalationEventRepository):
    def __init__(self):
        self.rows: Dict[str, EscalationEvent] = {}

    async def add(self, event: EscalationEvent) -> bool:
        if any(e.timer_id == event.timer_id and e.level == event.level for e in self.rows.values()):
            return False
        self.rows[event.id] = deepcopy(event)
        return True

    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        event = self.rows.get(event_id)
        return deepcopy(event) if event else None

    async def list(self, timer_id=None, acknowledged=None, limit=100, offset=0):
        events = list(self.rows.values())
        if timer_id is not None:
            events = [e for e in events if e.timer_id == timer_id]
        if acknowledged is not None:
            events = [e for e in events if e.acknowledged == acknowledged]
        events.sort(key=lambda e: (e.triggered_at, e.level), reverse=True)
        return [deepcopy(e) for e in events[offset:offset + limit]]

    async def save_acknowledgement(self, event: EscalationEvent) -> EscalationEvent:
        self.rows[event.id] = deepcopy(event)
        return event


class InMemoryPolicyRepository(IPolicyRepository):
    def __init__(self, policies: Optional[List[SLAPolicy]] = None):
        self.policies: Dict[str, SLAPolicy] = {p.service_type: p for p in policies or []}
        self.invalid: Set[str] = set()
        self.reads = 0

    async def get_by_service_type(self, service_type: str) -> Optional[SLAPolicy]:
        self.reads += 1
        if service_type in self.invalid:
            raise ValidationException(
                f"Stored SLA policy for '{service_type}' is invalid",
                {"service_type": service_type}
            )
        return self.policies.get(service_type)

    async def list(self) -> List[SLAPolicy]:
        return [p for s, p in self.policies.items() if s not in self.invalid]

    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        self.policies[policy.service_type] = policy
        self.invalid.discard(policy.service_type)
        return policy


class StaticPolicySource(IPolicySource):
    def __init__(self, policies: Optional[List[SLAPolicy]] = None):
        self.policies = {p.service_type: p for p in policies or []}

    def get_policy(self, service_type: str) -> Optional[SLAPolicy]:
        return self.policies.get(service_type)

    def list_policies(self) -> List[SLAPolicy]:
        return list(self.policies.values())


class RecordingDispatcher(INotificationDispatcher):
    """Collects dispatched events; fails every call when ``fail`` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: List[EscalationEvent] = []

    async def dispatch(self, event: EscalationEvent) -> None:
        if self.fail:
            raise NotificationDeliveryException("webhook down", {"event_id": event.id})
        self.events.append(event)


class FakeSession:
    """Stands in for AsyncSession where a controller commits explicitly."""

    def __init__(self):
        self.commits = 0

    async def commit(self) -> None:
        self.commits += 1


# ========== Factories ==========

def make_policy(
    service_type: str = "gst_registration",
    baseline_hours: int = 48,
    warning_threshold_hours: int = 24,
    critical_threshold_hours: int = 4,
    **kwargs
) -> SLAPolicy:
    return SLAPolicy(
        service_type=service_type,
        baseline_hours=baseline_hours,
        warning_threshold_hours=warning_threshold_hours,
        critical_threshold_hours=critical_threshold_hours,
        **kwargs
    )


def make_timer(
    started_hours_ago: float = 0,
    now: datetime = T0,
    timer_id: Optional[str] = None,
    service_order_id: Optional[str] = None,
    service_type: str = "gst_registration",
    baseline_hours: int = 48,
    **kwargs
) -> SLATimer:
    started_at = now - timedelta(hours=started_hours_ago)
    timer_id = timer_id or f"timer-{started_hours_ago:g}"
    return SLATimer(
        id=timer_id,
        service_order_id=service_order_id or f"SO-{timer_id}",
        service_type=service_type,
        baseline_hours=baseline_hours,
        started_at=started_at,
        **kwargs
    )


# ========== Fixtures ==========

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        sla_sweep_interval_seconds=0,
        notification_webhook_url=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gst_policy() -> SLAPolicy:
    return make_policy(pause_conditions=["waiting_client", "documents_pending"])


@pytest.fixture
def timer_repo() -> InMemoryTimerRepository:
    return InMemoryTimerRepository()


@pytest.fixture
def event_repo() -> InMemoryEscalationEventRepository:
    return InMemoryEscalationEventRepository()


@pytest.fixture
def policy_repo() -> InMemoryPolicyRepository:
    return InMemoryPolicyRepository()


@pytest.fixture
def policy_source(gst_policy) -> StaticPolicySource:
    return StaticPolicySource([gst_policy])


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def resolver(settings, policy_repo, policy_source, clock) -> PolicyResolver:
    return PolicyResolver(
        settings,
        repository=policy_repo,
        file_source=policy_source,
        cache=PolicyCache(settings.policy_cache_ttl_seconds, clock=clock),
    )


@pytest.fixture
def timer_store(timer_repo, resolver, settings, clock) -> TimerStore:
    counter = iter(range(1, 10_000))
    return TimerStore(
        timer_repo, resolver, settings, clock=clock,
        id_factory=lambda: f"timer-{next(counter)}"
    )


@pytest.fixture
def escalation_service(timer_repo, event_repo, resolver, dispatcher, clock) -> EscalationService:
    counter = iter(range(1, 10_000))
    return EscalationService(
        timer_repo, event_repo, resolver, dispatcher,
        clock=clock, id_factory=lambda: f"event-{next(counter)}"
    )


@pytest.fixture
def work_queue_service(timer_repo, resolver, clock) -> WorkQueueService:
    return WorkQueueService(timer_repo, resolver, clock=clock)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest_asyncio.fixture
async def client(
    settings, clock, dispatcher, session, resolver, timer_store, escalation_service, work_queue_service
) -> AsyncGenerator[AsyncClient, None]:
    """API client whose routes run against the in-memory services."""
    from opsqueue.main import create_app
    from opsqueue.sla.infrastructure import SLAEngine
    from opsqueue.sla.interfaces import controllers

    app = create_app(settings)
    app.state.sla_engine = SLAEngine(settings, dispatcher=dispatcher, clock=clock)

    async def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[controllers.get_policy_resolver] = lambda: resolver
    app.dependency_overrides[controllers.get_timer_store] = lambda: timer_store
    app.dependency_overrides[controllers.get_escalation_service] = lambda: escalation_service
    app.dependency_overrides[controllers.get_work_queue_service] = lambda: work_queue_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
