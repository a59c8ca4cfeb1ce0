"""
SLA External Service Integrations
==================================

External services for the SLA engine:
- YAML policy file with hot reload
- Webhook notification dispatcher
- APScheduler for background escalation sweeps
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from opsqueue.config import Settings, channels_for_roles
from opsqueue.core import ConfigurationException, NotificationDeliveryException
from opsqueue.shared.infrastructure.logging import get_logger
from opsqueue.sla.application import INotificationDispatcher, IPolicySource
from opsqueue.sla.domain import EscalationEvent, SLAPolicy

logger = get_logger(__name__)


class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA policy file changes."""

    def __init__(self, config_manager: "PolicyConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("SLA policy file changed", extra={"path": event.src_path})
            self.config_manager.reload()


class PolicyConfigManager(IPolicySource):
    """
    Thread-safe SLA policy file with hot-reload support.

    File format::

        policies:
          - service_type: gst_registration
            baseline_hours: 48
            warning_threshold_hours: 24
            critical_threshold_hours: 4
            pause_conditions: [waiting_client]
            escalation_rules:
              - {level: 1, after_hours: 24, notify: [ops_executive]}

    Entries that fail validation are skipped with a warning. A reload that
    fails keeps the previous policies.
    """

    def __init__(self, on_reload: Optional[Callable[[], None]] = None):
        self._policies: Dict[str, SLAPolicy] = {}
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._on_reload = on_reload

    def load(self, path: Path) -> List[SLAPolicy]:
        """Initial policy load."""
        self._path = path
        policies = self._load_from_file(path)
        with self._lock:
            self._policies = policies
        return list(policies.values())

    def _load_from_file(self, path: Path) -> Dict[str, SLAPolicy]:
        if not path.exists():
            logger.warning("SLA policy file not found, using stored and default policies", extra={"path": str(path)})
            return {}

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationException(f"SLA policy file {path} must contain a mapping")

        policies: Dict[str, SLAPolicy] = {}
        for index, entry in enumerate(data.get("policies") or []):
            try:
                policy = SLAPolicy.model_validate(entry)
            except ValidationError as e:
                logger.warning(
                    "Invalid SLA policy in file skipped",
                    extra={
                        "path": str(path),
                        "index": index,
                        "service_type": entry.get("service_type") if isinstance(entry, dict) else None,
                        "errors": e.errors(include_url=False),
                    }
                )
                continue
            if policy.service_type in policies:
                logger.warning(
                    "Duplicate SLA policy in file; later entry wins",
                    extra={"service_type": policy.service_type}
                )
            policies[policy.service_type] = policy

        return policies

    def reload(self) -> bool:
        """Reload policies from file."""
        if self._path is None:
            return False

        try:
            policies = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ConfigurationException) as e:
            logger.error("Failed to reload SLA policy file", extra={"error": str(e)})
            return False

        with self._lock:
            self._policies = policies
        if self._on_reload is not None:
            self._on_reload()
        logger.info("SLA policy file reloaded", extra={"policies": len(policies)})
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching when the file doesn't exist or inotify is unavailable
        (some containers).
        """
        if self._path is None:
            raise RuntimeError("Policies not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("SLA policy file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            handler = PolicyFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching SLA policy file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static policies", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policy(self, service_type: str) -> Optional[SLAPolicy]:
        with self._lock:
            return self._policies.get(service_type)

    def list_policies(self) -> List[SLAPolicy]:
        with self._lock:
            return list(self._policies.values())


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the notification webhook.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request; others are
      rejected until it records a result or another timeout passes
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_started_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False

        now = self._clock()
        if self._trial_started_at is not None and now - self._trial_started_at < self.recovery_timeout:
            return False
        self._trial_started_at = now
        return True

    def record_success(self) -> None:
        self._failure_count = 0
        self._trial_started_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()
        self._trial_started_at = None

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Posts escalation events to the notification system's webhook.

    Handles:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff_base: float = 1.0
    ):
        if not settings.notification_webhook_url:
            raise ConfigurationException("notification_webhook_url is not configured")
        self._url = settings.notification_webhook_url
        self._timeout = settings.notification_timeout_seconds
        self._max_retries = settings.notification_max_retries
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http_client = http_client
        self._backoff_base = backoff_base

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @staticmethod
    def build_payload(event: EscalationEvent) -> Dict[str, Any]:
        """Event payload plus the channels its roles are reached on."""
        payload = event.to_notification()
        payload["channels"] = channels_for_roles(event.notified_roles)
        return payload

    async def dispatch(self, event: EscalationEvent) -> None:
        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryException(
                "Circuit breaker open, notification not sent",
                {"event_id": event.id}
            )

        payload = self.build_payload(event)
        last_error = "no attempt made"

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._url, json=payload)
                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Escalation notification sent",
                        extra={"event_id": event.id, "level": event.level}
                    )
                    return
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Notification webhook returned an error status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Notification webhook request failed",
                    extra={"error": last_error, "attempt": attempt + 1, "event_id": event.id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        raise NotificationDeliveryException(
            f"Delivery failed after {self._max_retries} attempts: {last_error}",
            {"event_id": event.id, "timer_id": event.timer_id}
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LoggingNotificationDispatcher(INotificationDispatcher):
    """Used when no webhook is configured: events are only logged."""

    async def dispatch(self, event: EscalationEvent) -> None:
        logger.info(
            "Escalation notification (no webhook configured)",
            extra=WebhookNotificationDispatcher.build_payload(event)
        )

    async def close(self) -> None:
        return None


class SLAScheduler:
    """
    Wrapper for APScheduler running the periodic escalation sweep.

    Manages the lifecycle of the scheduler and its single job.
    """

    JOB_ID = "sla_escalation_sweep"

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return
        if self.interval_seconds <= 0:
            logger.info("SLA scheduler disabled (interval is 0)")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="SLA Escalation Sweep",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("SLA scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def next_run_at(self):
        if not self._running or self._scheduler is None:
            return None
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None
