"""
SLA Controllers (API Routes)
=============================

FastAPI routes for the SLA timer and escalation engine.

Controllers are thin - they delegate to application services.
"""

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config import Priority, SLAStatus
from opsqueue.core import ValidationException
from opsqueue.infrastructure.database import get_session
from opsqueue.shared.infrastructure.logging import get_logger
from opsqueue.sla.application import (
    AcknowledgeRequest,
    AssignTimerRequest,
    EngineStatusResponse,
    EscalationEventResponse,
    EscalationService,
    ExtendTimerRequest,
    FlaggedItemResponse,
    OpenTimerRequest,
    OrderStatusRequest,
    PauseTimerRequest,
    PolicyResolver,
    PolicyResponse,
    PolicyUpsertRequest,
    ReopenRequest,
    SweepResponse,
    TimerResponse,
    TimerStatusResponse,
    TimerStore,
    WorkItemResponse,
    WorkQueueResponse,
    WorkQueueService,
    WorkQueueStatsResponse,
)
from opsqueue.sla.infrastructure import SLAEngine

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Engine"])


# ========== Example payloads for Swagger ==========

OPEN_TIMER_EXAMPLE = {
    "service_order_id": "SO-2024-0042",
    "service_type": "gst_registration",
    "priority": "high",
    "assigned_to": "ops.priya",
    "order_status": "in_progress"
}

TIMER_STATUS_EXAMPLE = {
    "timer": {
        "id": "5f0c1c1e-8a51-4a53-9d8e-0a2f3c7b9e11",
        "service_order_id": "SO-2024-0042",
        "task_id": None,
        "service_type": "gst_registration",
        "baseline_hours": 48,
        "started_at": "2024-01-15T10:00:00Z",
        "paused_at": None,
        "stopped_at": None,
        "total_paused_minutes": 300.0,
        "pause_reasons": [
            {"reason": "waiting_client", "at": "2024-01-15T20:00:00Z", "kind": "pause"}
        ],
        "current_status": "running",
        "order_status": "in_progress",
        "priority": "high",
        "assigned_to": "ops.priya",
        "escalation_level": 0,
        "breach_notified": False,
        "version": 3
    },
    "sla_status": "at_risk",
    "elapsed_hours": 25.0,
    "hours_remaining": 23.0,
    "sla_hours_remaining": 23,
    "sla_deadline": "2024-01-17T15:00:00Z",
    "age_hours": 30,
    "evaluated_at": "2024-01-16T16:00:00Z",
    "policy_is_default": False
}

SWEEP_RESPONSE_EXAMPLE = {
    "checked": 12,
    "escalated": 1,
    "breached": 0,
    "errors": 0,
    "events": [
        {
            "id": "a2f9e0a4-3f43-4a0e-9a51-77c2b0a8e7d2",
            "timer_id": "5f0c1c1e-8a51-4a53-9d8e-0a2f3c7b9e11",
            "service_order_id": "SO-2024-0042",
            "task_id": None,
            "level": 1,
            "triggered_at": "2024-01-16T10:00:00Z",
            "notified_roles": ["ops_executive"],
            "reassign_to_role": None,
            "is_breach": False,
            "acknowledged": False,
            "acknowledged_at": None,
            "acknowledged_by": None
        }
    ]
}

STATS_EXAMPLE = {
    "total": 5,
    "on_track": 1,
    "at_risk": 1,
    "warning": 1,
    "breached": 2,
    "unassigned": 1,
    "by_priority": {"high": 3, "medium": 2},
    "by_assignee": {"ops.priya": 4},
    "unassigned_items": [],
    "flagged": []
}


# ========== Dependencies ==========

def get_engine(request: Request) -> SLAEngine:
    """SLA engine context created at startup."""
    return request.app.state.sla_engine


async def get_policy_resolver(
    session: AsyncSession = Depends(get_session),
    engine: SLAEngine = Depends(get_engine)
) -> PolicyResolver:
    return engine.policy_resolver(session)


async def get_timer_store(
    session: AsyncSession = Depends(get_session),
    engine: SLAEngine = Depends(get_engine)
) -> TimerStore:
    return engine.timer_store(session)


async def get_escalation_service(
    session: AsyncSession = Depends(get_session),
    engine: SLAEngine = Depends(get_engine)
) -> EscalationService:
    return engine.escalation_service(session)


async def get_work_queue_service(
    session: AsyncSession = Depends(get_session),
    engine: SLAEngine = Depends(get_engine)
) -> WorkQueueService:
    return engine.work_queue_service(session)


# ========== Timers ==========

@router.post(
    "/timers",
    response_model=TimerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an SLA timer",
    description="""
    Open a timer when a service order (or one of its tasks) becomes active.

    The baseline is taken from the service type's policy; unknown service
    types get the system default policy. Opening a timer for a unit that
    already has an open one returns the existing timer.
    """,
    responses={201: {"content": {"application/json": {"example": OPEN_TIMER_EXAMPLE}}}}
)
async def open_timer(
    body: OpenTimerRequest,
    store: TimerStore = Depends(get_timer_store)
):
    timer = await store.open(
        service_order_id=body.service_order_id,
        service_type=body.service_type,
        task_id=body.task_id,
        priority=body.priority,
        assigned_to=body.assigned_to,
        order_status=body.order_status,
    )
    return TimerResponse.from_domain(timer)


@router.get(
    "/timers/{timer_id}",
    response_model=TimerStatusResponse,
    summary="Get timer SLA status",
    responses={
        200: {"content": {"application/json": {"example": TIMER_STATUS_EXAMPLE}}},
        404: {"description": "Timer not found"}
    }
)
async def get_timer_status(
    timer_id: str,
    store: TimerStore = Depends(get_timer_store)
):
    timer, policy, evaluation = await store.evaluate(timer_id)
    return TimerStatusResponse.from_domain(timer, evaluation, policy)


@router.post(
    "/timers/{timer_id}/pause",
    response_model=TimerResponse,
    summary="Pause a timer",
    description="Freeze the SLA clock. Pausing an already paused timer changes nothing."
)
async def pause_timer(
    timer_id: str,
    body: PauseTimerRequest,
    store: TimerStore = Depends(get_timer_store)
):
    return TimerResponse.from_domain(await store.pause(timer_id, body.reason))


@router.post(
    "/timers/{timer_id}/resume",
    response_model=TimerResponse,
    summary="Resume a paused timer",
    responses={409: {"description": "Timer is not paused"}}
)
async def resume_timer(
    timer_id: str,
    store: TimerStore = Depends(get_timer_store)
):
    return TimerResponse.from_domain(await store.resume(timer_id))


@router.post(
    "/timers/{timer_id}/stop",
    response_model=TimerResponse,
    summary="Stop a timer",
    responses={409: {"description": "Timer already stopped"}}
)
async def stop_timer(
    timer_id: str,
    store: TimerStore = Depends(get_timer_store)
):
    return TimerResponse.from_domain(await store.stop(timer_id))


@router.post(
    "/timers/{timer_id}/extend",
    response_model=TimerResponse,
    summary="Grant an SLA extension",
    description="Add hours to this timer's baseline. The service type's policy is unchanged."
)
async def extend_timer(
    timer_id: str,
    body: ExtendTimerRequest,
    store: TimerStore = Depends(get_timer_store)
):
    return TimerResponse.from_domain(await store.extend(timer_id, body.hours, body.reason))


@router.patch(
    "/timers/{timer_id}/assign",
    response_model=TimerResponse,
    summary="Assign or unassign a work item"
)
async def assign_timer(
    timer_id: str,
    body: AssignTimerRequest,
    store: TimerStore = Depends(get_timer_store)
):
    return TimerResponse.from_domain(await store.assign(timer_id, body.assigned_to))


# ========== Order lifecycle ==========

@router.post(
    "/orders/{service_order_id}/status",
    response_model=TimerResponse,
    summary="Apply an order status change",
    description="""
    Order lifecycle hook.

    - terminal status (`completed`, `cancelled`, `delivered`): stop the timer
    - status listed in the policy's pause conditions: pause
    - leaving a pause status: resume
    """
)
async def apply_order_status(
    service_order_id: str,
    body: OrderStatusRequest,
    store: TimerStore = Depends(get_timer_store)
):
    timer = await store.apply_order_status(service_order_id, body.status, task_id=body.task_id)
    return TimerResponse.from_domain(timer)


@router.post(
    "/orders/{service_order_id}/reopen",
    response_model=TimerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reopen a closed order (admin)",
    description="Starts a new timer instance; escalation starts again from level 0."
)
async def reopen_order(
    service_order_id: str,
    body: Optional[ReopenRequest] = None,
    store: TimerStore = Depends(get_timer_store)
):
    task_id = body.task_id if body else None
    return TimerResponse.from_domain(await store.reopen(service_order_id, task_id))


# ========== Work queue ==========

def _queue_response(items, flagged=()) -> WorkQueueResponse:
    return WorkQueueResponse(
        items=[WorkItemResponse.from_domain(i) for i in items],
        total=len(items),
        flagged=[FlaggedItemResponse(**f) for f in flagged],
    )


@router.get(
    "/work-queue",
    response_model=WorkQueueResponse,
    summary="List work items",
    description="Open work items ordered by hours remaining, most urgent first."
)
async def list_work_items(
    sla_status: Optional[SLAStatus] = Query(None, description="Filter by SLA status"),
    priority: Optional[Priority] = Query(None, description="Filter by priority"),
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
    unassigned: bool = Query(False, description="Only unassigned items"),
    service: WorkQueueService = Depends(get_work_queue_service)
):
    items, flagged = await service.items(
        sla_status=sla_status,
        priority=priority,
        assigned_to=assigned_to,
        unassigned_only=unassigned,
    )
    return _queue_response(items, flagged)


@router.get(
    "/work-queue/stats",
    response_model=WorkQueueStatsResponse,
    summary="Work queue statistics",
    responses={200: {"content": {"application/json": {"example": STATS_EXAMPLE}}}}
)
async def work_queue_stats(service: WorkQueueService = Depends(get_work_queue_service)):
    return WorkQueueStatsResponse.from_domain(await service.stats())


@router.get("/work-queue/at-risk", response_model=WorkQueueResponse, summary="At-risk and warning items")
async def at_risk_items(service: WorkQueueService = Depends(get_work_queue_service)):
    return _queue_response(await service.at_risk())


@router.get("/work-queue/breached", response_model=WorkQueueResponse, summary="Breached items")
async def breached_items(service: WorkQueueService = Depends(get_work_queue_service)):
    return _queue_response(await service.breached())


@router.get("/work-queue/unassigned", response_model=WorkQueueResponse, summary="Unassigned items")
async def unassigned_items(service: WorkQueueService = Depends(get_work_queue_service)):
    return _queue_response(await service.unassigned())


# ========== Escalations ==========

@router.post(
    "/escalations/check",
    response_model=SweepResponse,
    summary="Run an escalation check now",
    description="""
    Runs the same sweep as the scheduler over every open timer.

    Escalations are committed before notifications are sent; notification
    delivery happens after the response and never undoes an escalation.
    Calling this twice in a row fires nothing the second time.
    """,
    responses={200: {"content": {"application/json": {"example": SWEEP_RESPONSE_EXAMPLE}}}}
)
async def trigger_escalation_check(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    service: EscalationService = Depends(get_escalation_service)
):
    result = await service.trigger_escalation_check()
    await session.commit()
    background_tasks.add_task(service.dispatch, list(result.events))

    return SweepResponse(
        checked=result.checked,
        escalated=result.escalated,
        breached=result.breached,
        errors=result.errors,
        events=[EscalationEventResponse.from_domain(e) for e in result.events],
    )


@router.get(
    "/escalations",
    response_model=List[EscalationEventResponse],
    summary="Escalation history"
)
async def list_escalations(
    timer_id: Optional[str] = Query(None),
    acknowledged: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: EscalationService = Depends(get_escalation_service)
):
    events = await service.list_events(
        timer_id=timer_id, acknowledged=acknowledged, limit=limit, offset=offset
    )
    return [EscalationEventResponse.from_domain(e) for e in events]


@router.post(
    "/escalations/{event_id}/acknowledge",
    response_model=EscalationEventResponse,
    summary="Acknowledge an escalation"
)
async def acknowledge_escalation(
    event_id: str,
    body: Optional[AcknowledgeRequest] = None,
    service: EscalationService = Depends(get_escalation_service)
):
    event = await service.acknowledge(event_id, by=body.acknowledged_by if body else None)
    return EscalationEventResponse.from_domain(event)


# ========== Policies ==========

@router.get("/policies", response_model=List[PolicyResponse], summary="Configured SLA policies")
async def list_policies(resolver: PolicyResolver = Depends(get_policy_resolver)):
    return [PolicyResponse.from_domain(p) for p in await resolver.list_policies()]


@router.get(
    "/policies/{service_type}",
    response_model=PolicyResponse,
    summary="Resolve the policy for a service type",
    description="Returns the system default (``is_default: true``) when none is configured."
)
async def get_policy(
    service_type: str,
    resolver: PolicyResolver = Depends(get_policy_resolver)
):
    return PolicyResponse.from_domain(await resolver.resolve(service_type))


@router.put(
    "/policies/{service_type}",
    response_model=PolicyResponse,
    summary="Create or replace an SLA policy",
    responses={422: {"description": "Thresholds or escalation ladder are inconsistent"}}
)
async def upsert_policy(
    service_type: str,
    body: PolicyUpsertRequest,
    resolver: PolicyResolver = Depends(get_policy_resolver)
):
    try:
        policy = body.to_domain(service_type)
    except ValidationError as e:
        logger.warning(
            "Rejected SLA policy update",
            extra={"service_type": service_type, "error_count": e.error_count()}
        )
        raise ValidationException(
            f"Invalid SLA policy for '{service_type}'",
            {"errors": e.errors(include_url=False, include_context=False)}
        ) from e

    return PolicyResponse.from_domain(await resolver.save(policy))


# ========== Engine ==========

def _engine_status(engine: SLAEngine) -> EngineStatusResponse:
    return EngineStatusResponse(
        running=engine.scheduler.is_running,
        interval_seconds=engine.scheduler.interval_seconds,
        next_run_at=engine.scheduler.next_run_at,
        cached_policies=len(engine.policy_cache),
    )


@router.get("/engine/status", response_model=EngineStatusResponse, summary="Escalation scheduler status")
async def engine_status(engine: SLAEngine = Depends(get_engine)):
    return _engine_status(engine)


@router.post("/engine/start", response_model=EngineStatusResponse, summary="Start the escalation scheduler")
async def start_engine(engine: SLAEngine = Depends(get_engine)):
    await engine.start_scheduler()
    return _engine_status(engine)


@router.post("/engine/stop", response_model=EngineStatusResponse, summary="Stop the escalation scheduler")
async def stop_engine(engine: SLAEngine = Depends(get_engine)):
    await engine.stop_scheduler()
    return _engine_status(engine)


# Export router for inclusion in main app
sla_router = router
