"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA engine.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from opsqueue.config import Priority, TimerStatus
from opsqueue.infrastructure.database import Base


def unit_key(service_order_id: str, task_id: Optional[str]) -> str:
    """Single-column key for a (service order, task) pair."""
    return f"{service_order_id}:{task_id or ''}"


class SLAPolicyModel(Base):
    """
    Database model for admin-managed SLA policies.

    Maps to the 'sla_settings' table.
    """
    __tablename__ = "sla_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_type: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)

    baseline_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    warning_threshold_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    critical_threshold_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=4)

    # [{"level": 1, "after_hours": 24, "notify": ["ops_manager"], "reassign_to_role": null}]
    escalation_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    pause_conditions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class SLATimerModel(Base):
    """
    Database model for SLATimer entity.

    Maps to the 'sla_timers' table. ``version`` backs the optimistic
    concurrency check on every update.
    """
    __tablename__ = "sla_timers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Trackable unit
    service_order_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unit_key: Mapped[str] = mapped_column(String(201), nullable=False, index=True)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Order metadata
    priority: Mapped[Priority] = mapped_column(String(20), nullable=False, default=Priority.MEDIUM)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    order_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Clock
    baseline_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_paused_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    pause_reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    current_status: Mapped[TimerStatus] = mapped_column(String(20), nullable=False, default=TimerStatus.RUNNING, index=True)

    # Escalation
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    breach_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        # At most one open timer per unit
        Index(
            "uq_sla_timers_open_unit",
            "unit_key",
            unique=True,
            postgresql_where=text("current_status <> 'stopped'"),
            sqlite_where=text("current_status <> 'stopped'"),
        ),
    )


class EscalationEventModel(Base):
    """
    Database model for EscalationEvent entity.

    Maps to the 'sla_escalation_events' table. Each level is recorded at
    most once per timer.
    """
    __tablename__ = "sla_escalation_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    service_order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    task_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    level: Mapped[int] = mapped_column(Integer, nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notified_roles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    reassign_to_role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_breach: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("timer_id", "level", name="uq_sla_escalation_events_timer_level"),
    )
