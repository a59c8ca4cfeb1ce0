"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config import Priority, Role, TimerStatus
from opsqueue.core import (
    ConcurrencyConflictException,
    DuplicateActiveTimerException,
    RepositoryException,
    ValidationException,
)
from opsqueue.shared.infrastructure.logging import get_logger
from opsqueue.sla.application import (
    IEscalationEventRepository,
    IPolicyRepository,
    ITimerRepository,
)
from opsqueue.sla.domain import EscalationEvent, PauseRecord, SLAPolicy, SLATimer
from opsqueue.sla.infrastructure.models import (
    EscalationEventModel,
    SLAPolicyModel,
    SLATimerModel,
    unit_key,
)

logger = get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops the offset on timezone-aware columns; stored values are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAlchemyTimerRepository(ITimerRepository):
    """
    SQLAlchemy implementation of the timer repository.

    Writes are version-checked ``UPDATE ... WHERE id = :id AND version = :v``
    statements; a zero row count means another writer got there first.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_domain(model: SLATimerModel) -> SLATimer:
        return SLATimer(
            id=model.id,
            service_order_id=model.service_order_id,
            task_id=model.task_id,
            service_type=model.service_type,
            baseline_hours=model.baseline_hours,
            started_at=_as_utc(model.started_at),
            priority=Priority(model.priority),
            assigned_to=model.assigned_to,
            order_status=model.order_status,
            current_status=TimerStatus(model.current_status),
            paused_at=_as_utc(model.paused_at),
            total_paused_minutes=model.total_paused_minutes,
            pause_reasons=[PauseRecord.from_dict(r) for r in model.pause_reasons or []],
            stopped_at=_as_utc(model.stopped_at),
            escalation_level=model.escalation_level,
            breach_notified=model.breach_notified,
            version=model.version,
        )

    @staticmethod
    def _mutable_columns(timer: SLATimer) -> dict:
        return {
            "baseline_hours": timer.baseline_hours,
            "priority": timer.priority.value,
            "assigned_to": timer.assigned_to,
            "order_status": timer.order_status,
            "current_status": timer.current_status.value,
            "paused_at": timer.paused_at,
            "stopped_at": timer.stopped_at,
            "total_paused_minutes": timer.total_paused_minutes,
            "pause_reasons": [r.to_dict() for r in timer.pause_reasons],
            "escalation_level": timer.escalation_level,
            "breach_notified": timer.breach_notified,
        }

    async def get(self, timer_id: str) -> Optional[SLATimer]:
        # Version-checked updates bypass the identity map
        model = await self._session.get(SLATimerModel, timer_id, populate_existing=True)
        return self._to_domain(model) if model else None

    async def get_for_update(self, timer_id: str) -> Optional[SLATimer]:
        stmt = (
            select(SLATimerModel)
            .where(SLATimerModel.id == timer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def find_active(
        self,
        service_order_id: str,
        task_id: Optional[str] = None,
        for_update: bool = False
    ) -> Optional[SLATimer]:
        stmt = select(SLATimerModel).where(
            SLATimerModel.unit_key == unit_key(service_order_id, task_id),
            SLATimerModel.current_status != TimerStatus.STOPPED.value,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def find_latest(
        self,
        service_order_id: str,
        task_id: Optional[str] = None
    ) -> Optional[SLATimer]:
        stmt = (
            select(SLATimerModel)
            .where(SLATimerModel.unit_key == unit_key(service_order_id, task_id))
            .order_by(SLATimerModel.started_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def list_open(
        self,
        priority: Optional[Priority] = None,
        assigned_to: Optional[str] = None,
        unassigned_only: bool = False
    ) -> List[SLATimer]:
        stmt = select(SLATimerModel).where(
            SLATimerModel.current_status != TimerStatus.STOPPED.value
        )
        if priority is not None:
            stmt = stmt.where(SLATimerModel.priority == priority.value)
        if unassigned_only:
            stmt = stmt.where(SLATimerModel.assigned_to.is_(None))
        elif assigned_to is not None:
            stmt = stmt.where(SLATimerModel.assigned_to == assigned_to)

        stmt = stmt.order_by(SLATimerModel.started_at.asc())
        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def add(self, timer: SLATimer) -> SLATimer:
        model = SLATimerModel(
            id=timer.id,
            service_order_id=timer.service_order_id,
            task_id=timer.task_id,
            unit_key=unit_key(timer.service_order_id, timer.task_id),
            service_type=timer.service_type,
            started_at=timer.started_at,
            version=timer.version,
            **self._mutable_columns(timer),
        )

        try:
            async with self._session.begin_nested():
                self._session.add(model)
                await self._session.flush()
        except IntegrityError as e:
            existing = await self.find_active(timer.service_order_id, timer.task_id)
            if existing is None:
                raise RepositoryException(
                    f"Failed to insert timer {timer.id}", {"error": str(e.orig)}
                ) from e
            raise DuplicateActiveTimerException(existing) from e

        return timer

    async def save(self, timer: SLATimer) -> SLATimer:
        stmt = (
            update(SLATimerModel)
            .where(
                SLATimerModel.id == timer.id,
                SLATimerModel.version == timer.version,
            )
            .values(version=timer.version + 1, **self._mutable_columns(timer))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrencyConflictException(timer.id, timer.version)

        timer.version += 1
        return timer


class SQLAlchemyEscalationEventRepository(IEscalationEventRepository):
    """
    SQLAlchemy implementation of the escalation event repository.

    The (timer_id, level) unique constraint turns a duplicate insert from an
    overlapping sweep into a no-op.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_domain(model: EscalationEventModel) -> EscalationEvent:
        return EscalationEvent(
            id=model.id,
            timer_id=model.timer_id,
            service_order_id=model.service_order_id,
            task_id=model.task_id,
            level=model.level,
            triggered_at=_as_utc(model.triggered_at),
            notified_roles=[Role(r) for r in model.notified_roles or []],
            reassign_to_role=Role(model.reassign_to_role) if model.reassign_to_role else None,
            is_breach=model.is_breach,
            acknowledged=model.acknowledged,
            acknowledged_at=_as_utc(model.acknowledged_at),
            acknowledged_by=model.acknowledged_by,
        )

    async def add(self, event: EscalationEvent) -> bool:
        model = EscalationEventModel(
            id=event.id,
            timer_id=event.timer_id,
            service_order_id=event.service_order_id,
            task_id=event.task_id,
            level=event.level,
            triggered_at=event.triggered_at,
            notified_roles=[r.value for r in event.notified_roles],
            reassign_to_role=event.reassign_to_role.value if event.reassign_to_role else None,
            is_breach=event.is_breach,
        )

        try:
            async with self._session.begin_nested():
                self._session.add(model)
                await self._session.flush()
        except IntegrityError:
            logger.info(
                "Escalation level already recorded",
                extra={"timer_id": event.timer_id, "level": event.level}
            )
            return False
        return True

    async def get(self, event_id: str) -> Optional[EscalationEvent]:
        model = await self._session.get(EscalationEventModel, event_id)
        return self._to_domain(model) if model else None

    async def list(
        self,
        timer_id: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[EscalationEvent]:
        stmt = select(EscalationEventModel)
        if timer_id is not None:
            stmt = stmt.where(EscalationEventModel.timer_id == timer_id)
        if acknowledged is not None:
            stmt = stmt.where(EscalationEventModel.acknowledged == acknowledged)

        stmt = stmt.order_by(
            EscalationEventModel.triggered_at.desc(),
            EscalationEventModel.level.desc(),
        ).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [self._to_domain(m) for m in result.scalars().all()]

    async def save_acknowledgement(self, event: EscalationEvent) -> EscalationEvent:
        model = await self._session.get(EscalationEventModel, event.id)
        if model is None:
            raise RepositoryException(f"Escalation event {event.id} not found")

        model.acknowledged = event.acknowledged
        model.acknowledged_at = event.acknowledged_at
        model.acknowledged_by = event.acknowledged_by
        await self._session.flush()
        return event


class SQLAlchemyPolicyRepository(IPolicyRepository):
    """SQLAlchemy implementation of the admin policy repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_domain(model: SLAPolicyModel) -> SLAPolicy:
        try:
            return SLAPolicy(
                service_type=model.service_type,
                baseline_hours=model.baseline_hours,
                warning_threshold_hours=model.warning_threshold_hours,
                critical_threshold_hours=model.critical_threshold_hours,
                escalation_rules=model.escalation_rules or [],
                pause_conditions=model.pause_conditions or [],
                is_active=model.is_active,
            )
        except ValidationError as e:
            raise ValidationException(
                f"Stored SLA policy for '{model.service_type}' is invalid",
                {"service_type": model.service_type, "errors": e.errors(include_url=False)}
            ) from e

    async def _get_model(self, service_type: str) -> Optional[SLAPolicyModel]:
        stmt = select(SLAPolicyModel).where(SLAPolicyModel.service_type == service_type)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_service_type(self, service_type: str) -> Optional[SLAPolicy]:
        model = await self._get_model(service_type)
        return self._to_domain(model) if model else None

    async def list(self) -> List[SLAPolicy]:
        result = await self._session.execute(
            select(SLAPolicyModel).order_by(SLAPolicyModel.service_type)
        )
        policies = []
        for model in result.scalars().all():
            try:
                policies.append(self._to_domain(model))
            except ValidationException as e:
                logger.warning("Invalid stored SLA policy skipped", extra={"error": e.message})
        return policies

    async def upsert(self, policy: SLAPolicy) -> SLAPolicy:
        model = await self._get_model(policy.service_type)
        if model is None:
            model = SLAPolicyModel(service_type=policy.service_type)
            self._session.add(model)

        model.baseline_hours = policy.baseline_hours
        model.warning_threshold_hours = policy.warning_threshold_hours
        model.critical_threshold_hours = policy.critical_threshold_hours
        model.escalation_rules = [r.model_dump(mode="json") for r in policy.escalation_rules]
        model.pause_conditions = list(policy.pause_conditions)
        model.is_active = policy.is_active
        model.updated_at = datetime.now(timezone.utc)

        await self._session.flush()
        return policy
