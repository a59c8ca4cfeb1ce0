"""
SLA Value Objects
==================

Immutable value objects for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from opsqueue.config import Role

# Fractions of the baseline at which the generated ladder escalates.
DEFAULT_LADDER = (
    (1, 0.50, (Role.OPS_EXECUTIVE,)),
    (2, 0.75, (Role.OPS_MANAGER,)),
    (3, 0.90, (Role.OPS_MANAGER, Role.ADMIN)),
    (4, 1.00, (Role.ADMIN, Role.SUPER_ADMIN)),
)


class EscalationRule(BaseModel):
    """One rung of an escalation ladder."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    level: int = Field(ge=1, description="Escalation level (1-based)")
    after_hours: float = Field(ge=0, description="Elapsed SLA hours that trigger this level")
    notify: List[Role] = Field(default_factory=list, description="Roles to notify")
    reassign_to_role: Optional[Role] = Field(
        default=None,
        description="Role the item should be reassigned to, if any"
    )

    def is_breach_for(self, baseline_hours: float) -> bool:
        """A rule at or beyond the baseline marks full breach."""
        return self.after_hours >= baseline_hours


class SLAPolicy(BaseModel):
    """
    SLA policy for one service type.

    Thresholds are remaining-time windows: the smaller the window, the more
    severe the status, so ``critical < warning <= baseline`` must hold.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_type: str = Field(min_length=1)
    baseline_hours: int = Field(ge=1, description="Total time budget before breach")
    warning_threshold_hours: int = Field(default=24, ge=0)
    critical_threshold_hours: int = Field(default=4, ge=0)
    escalation_rules: List[EscalationRule] = Field(default_factory=list)
    pause_conditions: List[str] = Field(
        default_factory=list,
        description="Order/task statuses that freeze the clock"
    )
    is_active: bool = True
    is_default: bool = Field(
        default=False,
        description="True when this is the system fallback policy"
    )

    @field_validator("pause_conditions")
    @classmethod
    def normalize_pause_conditions(cls, v: List[str]) -> List[str]:
        """Lower-case and de-duplicate, keeping order."""
        seen: List[str] = []
        for status in v:
            status = status.strip().lower()
            if status and status not in seen:
                seen.append(status)
        return seen

    @model_validator(mode="after")
    def validate_ordering(self) -> "SLAPolicy":
        if not (self.critical_threshold_hours < self.warning_threshold_hours <= self.baseline_hours):
            raise ValueError(
                "thresholds must satisfy critical_threshold_hours < "
                "warning_threshold_hours <= baseline_hours "
                f"(got {self.critical_threshold_hours} / "
                f"{self.warning_threshold_hours} / {self.baseline_hours})"
            )

        previous: Optional[EscalationRule] = None
        for rule in self.escalation_rules:
            if previous is not None:
                if rule.level <= previous.level:
                    raise ValueError("escalation rule levels must be strictly increasing")
                if rule.after_hours < previous.after_hours:
                    raise ValueError("escalation rule after_hours must not decrease with level")
            previous = rule
        return self

    def pauses_on(self, status: Optional[str]) -> bool:
        return status is not None and status.strip().lower() in self.pause_conditions

    def ladder(self, baseline_hours: Optional[float] = None) -> List[EscalationRule]:
        """
        The configured ladder, or one derived from the baseline.

        ``baseline_hours`` overrides the policy baseline for the derived
        ladder (a timer with a granted extension).
        """
        if self.escalation_rules:
            return list(self.escalation_rules)
        return default_ladder(baseline_hours or self.baseline_hours)


def default_ladder(baseline_hours: float) -> List[EscalationRule]:
    """Ladder at 50/75/90% of the baseline plus a breach rung at 100%."""
    return [
        EscalationRule(
            level=level,
            after_hours=round(baseline_hours * fraction, 2),
            notify=list(roles),
        )
        for level, fraction, roles in DEFAULT_LADDER
    ]


def build_default_policy(
    service_type: str,
    baseline_hours: int = 72,
    warning_threshold_hours: int = 24,
    critical_threshold_hours: int = 4,
) -> SLAPolicy:
    """Conservative fallback for service types without a usable policy."""
    return SLAPolicy(
        service_type=service_type,
        baseline_hours=baseline_hours,
        warning_threshold_hours=warning_threshold_hours,
        critical_threshold_hours=critical_threshold_hours,
        is_default=True,
    )
