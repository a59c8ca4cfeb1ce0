"""
Configuration Module
====================

Application settings and domain constants.

Settings are loaded from environment variables with Pydantic. Callers obtain
them through ``get_settings()`` and pass them on explicitly.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="opsqueue-sla", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/opsqueue",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Engine ==========
    sla_policy_path: Path = Field(
        default=Path("sla_policies.yaml"),
        description="Path to the SLA policy YAML file"
    )
    sla_sweep_interval_seconds: int = Field(
        default=300,
        description="Seconds between escalation sweeps (0 disables the scheduler)",
        ge=0
    )
    policy_cache_ttl_seconds: int = Field(
        default=300,
        description="How long a resolved policy stays cached",
        ge=0
    )
    default_baseline_hours: int = Field(
        default=72,
        description="Baseline of the system-default policy",
        ge=1
    )
    default_warning_threshold_hours: int = Field(
        default=24,
        description="Warning threshold of the system-default policy",
        ge=0
    )
    default_critical_threshold_hours: int = Field(
        default=4,
        description="Critical threshold of the system-default policy",
        ge=0
    )
    terminal_statuses: List[str] = Field(
        default=["completed", "cancelled", "delivered"],
        description="Order statuses that stop the SLA clock"
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving escalation events"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notification webhook calls",
        ge=0.1,
        le=30
    )
    notification_max_retries: int = Field(
        default=3,
        description="Delivery attempts per escalation event",
        ge=1,
        le=10
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("default_critical_threshold_hours")
    @classmethod
    def validate_default_thresholds(cls, v: int, info) -> int:
        """The fallback policy must itself satisfy the threshold ordering."""
        warning = info.data.get("default_warning_threshold_hours")
        baseline = info.data.get("default_baseline_hours")
        if warning is not None and baseline is not None:
            if not (v < warning <= baseline):
                raise ValueError(
                    "default thresholds must satisfy critical < warning <= baseline"
                )
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class Priority(str, Enum):
    """Work item priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TimerStatus(str, Enum):
    """Lifecycle state of an SLA timer."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class SLAStatus(str, Enum):
    """SLA status states, least to most severe."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    WARNING = "warning"
    BREACHED = "breached"


class WorkItemType(str, Enum):
    """Kind of trackable unit behind a work item."""
    SERVICE_ORDER = "service_order"
    TASK = "task"


class Role(str, Enum):
    """Platform roles that can be named in an escalation ladder."""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    SALES_MANAGER = "sales_manager"
    SALES_EXECUTIVE = "sales_executive"
    OPS_MANAGER = "ops_manager"
    OPS_LEAD = "ops_lead"
    OPS_EXECUTIVE = "ops_executive"
    CUSTOMER_SERVICE = "customer_service"
    QC_EXECUTIVE = "qc_executive"
    ACCOUNTANT = "accountant"
    COMPLIANCE_OFFICER = "compliance_officer"
    HR_MANAGER = "hr_manager"
    AGENT = "agent"
    CLIENT = "client"


# Notification channels per role. Every Role must appear here.
ROLE_NOTIFICATION_CHANNELS: Dict[Role, Tuple[str, ...]] = {
    Role.SUPER_ADMIN: ("email", "sms", "in_app"),
    Role.ADMIN: ("email", "sms", "in_app"),
    Role.SALES_MANAGER: ("email", "in_app"),
    Role.SALES_EXECUTIVE: ("in_app",),
    Role.OPS_MANAGER: ("email", "sms", "in_app"),
    Role.OPS_LEAD: ("email", "in_app"),
    Role.OPS_EXECUTIVE: ("email", "in_app"),
    Role.CUSTOMER_SERVICE: ("in_app",),
    Role.QC_EXECUTIVE: ("in_app",),
    Role.ACCOUNTANT: ("email",),
    Role.COMPLIANCE_OFFICER: ("email", "in_app"),
    Role.HR_MANAGER: ("email",),
    Role.AGENT: ("email",),
    Role.CLIENT: ("email",),
}

_unmapped_roles = set(Role) - set(ROLE_NOTIFICATION_CHANNELS)
if _unmapped_roles:
    raise RuntimeError(f"Roles without notification channels: {sorted(r.value for r in _unmapped_roles)}")


def channels_for_roles(roles) -> List[str]:
    """Union of channels for the given roles, in first-seen order."""
    channels: List[str] = []
    for role in roles:
        for channel in ROLE_NOTIFICATION_CHANNELS[Role(role)]:
            if channel not in channels:
                channels.append(channel)
    return channels


# ========== Severity order ==========

SLA_SEVERITY_ORDER = [
    SLAStatus.ON_TRACK, SLAStatus.AT_RISK,
    SLAStatus.WARNING, SLAStatus.BREACHED
]
