"""
Tests for escalation notification delivery and the sweep scheduler.
"""

import httpx
import pytest

from opsqueue.config import Role, Settings
from opsqueue.core import ConfigurationException, NotificationDeliveryException
from opsqueue.sla.domain import EscalationEvent
from opsqueue.sla.infrastructure import (
    CircuitBreaker,
    CircuitState,
    LoggingNotificationDispatcher,
    SLAEngine,
    SLAScheduler,
    WebhookNotificationDispatcher,
)

from tests.conftest import T0

WEBHOOK_URL = "http://notify.test/escalations"


@pytest.fixture
def webhook_settings() -> Settings:
    return Settings(
        _env_file=None,
        notification_webhook_url=WEBHOOK_URL,
        notification_max_retries=3,
    )


@pytest.fixture
def event() -> EscalationEvent:
    return EscalationEvent(
        id="event-1",
        timer_id="timer-1",
        service_order_id="SO-100",
        level=3,
        triggered_at=T0,
        notified_roles=[Role.OPS_MANAGER, Role.ADMIN],
    )


def make_dispatcher(settings, handler, breaker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher(
        settings, http_client=client, circuit_breaker=breaker, backoff_base=0
    )


class TestWebhookDispatcher:
    """Webhook delivery with retry and circuit breaker."""

    async def test_payload_posted(self, webhook_settings, event):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        dispatcher = make_dispatcher(webhook_settings, handler)
        await dispatcher.dispatch(event)
        await dispatcher.close()

        assert len(received) == 1
        assert str(received[0].url) == WEBHOOK_URL
        payload = WebhookNotificationDispatcher.build_payload(event)
        assert payload["notify_roles"] == ["ops_manager", "admin"]
        assert payload["channels"] == ["email", "sms", "in_app"]
        assert payload["level"] == 3

    async def test_retries_then_succeeds(self, webhook_settings, event):
        statuses = iter([503, 502, 200])

        dispatcher = make_dispatcher(webhook_settings, lambda request: httpx.Response(next(statuses)))
        await dispatcher.dispatch(event)

        with pytest.raises(StopIteration):
            next(statuses)

    async def test_gives_up_after_max_retries(self, webhook_settings, event):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = make_dispatcher(webhook_settings, handler)

        with pytest.raises(NotificationDeliveryException):
            await dispatcher.dispatch(event)
        assert len(calls) == 3

    async def test_open_circuit_rejects_without_calling(self, webhook_settings, event):
        calls = []
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        dispatcher = make_dispatcher(webhook_settings, handler, breaker=breaker)

        with pytest.raises(NotificationDeliveryException):
            await dispatcher.dispatch(event)
        assert calls == []

    def test_requires_url(self, settings):
        with pytest.raises(ConfigurationException):
            WebhookNotificationDispatcher(settings)


class TestCircuitBreaker:
    """Breaker state transitions."""

    def test_opens_then_half_opens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=lambda: now[0])

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

        now[0] = 31.0
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_admits_one_trial(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])
        breaker.record_failure()
        now[0] = 31.0

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

        breaker.record_success()
        assert breaker.allow_request() is True
        assert breaker.allow_request() is True

    def test_failed_trial_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=lambda: now[0])
        for _ in range(3):
            breaker.record_failure()
        now[0] = 31.0
        assert breaker.allow_request() is True

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False
        now[0] = 62.0
        assert breaker.allow_request() is True

    def test_unfinished_trial_expires(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])
        breaker.record_failure()
        now[0] = 31.0
        assert breaker.allow_request() is True

        now[0] = 45.0
        assert breaker.allow_request() is False
        now[0] = 61.0
        assert breaker.allow_request() is True


class TestEngineWiring:
    """Engine picks its dispatcher and scheduler from settings."""

    def test_logging_dispatcher_without_webhook(self, settings):
        engine = SLAEngine(settings)

        assert isinstance(engine.dispatcher, LoggingNotificationDispatcher)

    def test_webhook_dispatcher_with_url(self, webhook_settings):
        engine = SLAEngine(webhook_settings)

        assert isinstance(engine.dispatcher, WebhookNotificationDispatcher)

    async def test_zero_interval_disables_scheduler(self):
        scheduler = SLAScheduler(interval_seconds=0)

        async def job():
            return None

        await scheduler.start(job)

        assert scheduler.is_running is False
        assert scheduler.next_run_at is None

    async def test_scheduler_start_stop(self):
        scheduler = SLAScheduler(interval_seconds=60)

        async def job():
            return None

        await scheduler.start(job)
        try:
            assert scheduler.is_running is True
            assert scheduler.next_run_at is not None
        finally:
            await scheduler.stop()
        assert scheduler.is_running is False
