"""LB Console – operator control surface for an external FluxLB load balancer.

The console keeps an authenticated operator session against the load
balancer's control API, polls backend metrics on a fixed cadence and mediates
backend registration/removal.  The load balancer itself (routing, health
checks, metric computation) is an external collaborator reached only through
its REST surface:

- ``GET  /api/metrics``          backend metrics (also used as session probe)
- ``POST /api/login``            credential exchange, sets ``session_token``
- ``POST /api/logout``           drop the session
- ``POST /api/backends/add``     register a backend ``{"url": ...}``
- ``POST /api/backends/remove``  remove a backend ``{"url": ...}``
- ``GET  /api/backends``         registered backend URLs
- ``GET  /health``               liveness (unauthenticated)

Components, leaves first:

- ``BackendRegistryClient``  stateless typed wrapper, uniform ``ApiResult``
- ``PollingScheduler``       fixed cadence, start/stop/trigger_now, no overlap
- ``SessionController``      Checking / Authenticated / Unauthenticated
- ``DashboardStateStore``    owns the metrics snapshot and pending mutations

``create_app`` wires one instance of each into a FastAPI app that serves the
consolidated dashboard view to the presentation layer.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import sys
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

# ── Logging ───────────────────────────────────────────────────────────────────────────

LOG = logging.getLogger("lb-console")

# ── Version ───────────────────────────────────────────────────────────────────────────

__version__ = "1.0.0"

# ── Constants ─────────────────────────────────────────────────────────────────────────

POLL_INTERVAL_SECONDS = 5.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
FETCH_FAILED_MESSAGE = "Failed to fetch metrics"


# ── Settings ──────────────────────────────────────────────────────────────────────────


@dataclass
class ConsoleSettings:
    server_url: str
    port: int
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    verify_tls: bool = True
    log_level: str = "INFO"
    username: str = ""
    password: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS


# ── Custom Exceptions ───────────────────────────────────────────────────────────────


class ConsoleError(Exception):
    """Base exception for console errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_type: str = "internal_error",
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type


class ValidationError(ConsoleError):
    """Input rejected locally, before any network call."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=400, error_type="validation_error")


# ── Helpers ───────────────────────────────────────────────────────────────────────────


def now_iso() -> str:
    """Return current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def normalize_base_url(value: str) -> str:
    """Normalize and validate the load balancer base URL."""
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ValueError("server_url is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("server_url must start with http:// or https://")
    return url


def validate_backend_url(value: str) -> str:
    """Return the trimmed backend URL or raise ``ValidationError``."""
    url = (value or "").strip()
    if not url:
        raise ValidationError("URL is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValidationError("URL must start with http:// or https://")
    return url


def parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def problem_detail(
    status: int,
    detail: str,
    error_type: str = "about:blank",
    request_id: str = "",
    **extra: Any,
) -> JSONResponse:
    """Return an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": error_type,
        "status": status,
        "detail": detail,
    }
    if request_id:
        body["request_id"] = request_id
    body.update(extra)
    return JSONResponse(body, status_code=status)


# ── Audit Logger ─────────────────────────────────────────────────────────────────


class AuditLogger:
    """Structured audit logging for operator actions."""

    def __init__(self) -> None:
        self._log = logging.getLogger("lb-console.audit")

    def log(
        self,
        action: str,
        request_id: str = "",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        entry = {
            "timestamp": now_iso(),
            "action": action,
            "request_id": request_id,
        }
        if details:
            entry["details"] = details
        self._log.info(json.dumps(entry))


# ── Domain Types ──────────────────────────────────────────────────────────────────


class SessionState(str, Enum):
    CHECKING = "checking"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class FailureKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NETWORK = "network"
    SERVER = "server"


class MutationKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class BackendMetric(BaseModel):
    """One registered backend as last observed by the load balancer."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    url: str = Field(min_length=1)
    alive: bool = False
    request_count: int = Field(default=0, ge=0)
    avg_latency_ns: int = Field(default=0, ge=0)
    time_quanta_ns: int = Field(default=0, ge=0)
    active_connections: int = Field(default=0, ge=0)
    requests_per_sec: float = Field(default=0.0, ge=0)
    uptime_ns: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Server-ordered metrics keyed by URL.

    Always replaced as a whole, never mutated in place.
    """

    metrics: tuple[BackendMetric, ...] = ()
    fetched_at: Optional[float] = None
    error: Optional[str] = None

    def __len__(self) -> int:
        return len(self.metrics)

    def __iter__(self) -> Iterator[BackendMetric]:
        return iter(self.metrics)

    def __contains__(self, url: object) -> bool:
        return any(m.url == url for m in self.metrics)

    @property
    def urls(self) -> list[str]:
        return [m.url for m in self.metrics]

    def get(self, url: str) -> Optional[BackendMetric]:
        return next((m for m in self.metrics if m.url == url), None)


@dataclass(frozen=True)
class PendingMutation:
    url: str
    kind: MutationKind
    started_at: float


@dataclass
class ApiResult:
    """Uniform reply of every ``BackendRegistryClient`` call."""

    success: bool
    status_code: Optional[int] = None
    payload: Any = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None

    @classmethod
    def unauthorized(cls, payload: Any = None) -> "ApiResult":
        return cls(False, 401, payload, "unauthorized", FailureKind.UNAUTHORIZED)

    @classmethod
    def network_error(cls, error: str) -> "ApiResult":
        return cls(False, None, None, error, FailureKind.NETWORK)

    @classmethod
    def server_error(
        cls, status_code: int, error: str, payload: Any = None
    ) -> "ApiResult":
        return cls(False, status_code, payload, error, FailureKind.SERVER)

    @property
    def message(self) -> Optional[str]:
        """Server-supplied ``message`` field, if the payload carried one."""
        if isinstance(self.payload, dict):
            msg = self.payload.get("message")
            if isinstance(msg, str) and msg:
                return msg
        return None


@dataclass
class OperationOutcome:
    """What an operator action produced, ready to show as-is."""

    success: bool
    message: Optional[str] = None
    cancelled: bool = False


def parse_metrics(data: Any) -> list[BackendMetric]:
    """Validate a ``/api/metrics`` body, keeping server order.

    A URL listed twice keeps its first occurrence.
    """
    if not isinstance(data, list):
        raise ValueError("metrics payload must be a JSON array")
    seen: set[str] = set()
    out: list[BackendMetric] = []
    for item in data:
        metric = BackendMetric.model_validate(item)
        if metric.url in seen:
            LOG.warning("Duplicate backend %s in metrics payload ignored", metric.url)
            continue
        seen.add(metric.url)
        out.append(metric)
    return out


# ── Aggregates ───────────────────────────────────────────────────────────────────


def total_backends(snapshot: MetricsSnapshot) -> int:
    return len(snapshot.metrics)


def healthy_backends(snapshot: MetricsSnapshot) -> int:
    return sum(1 for m in snapshot.metrics if m.alive)


def total_requests(snapshot: MetricsSnapshot) -> int:
    return sum(m.request_count for m in snapshot.metrics)


def total_active_connections(snapshot: MetricsSnapshot) -> int:
    return sum(m.active_connections for m in snapshot.metrics)


class DashboardSummary(BaseModel):
    total_backends: int
    healthy_backends: int
    total_requests: int
    active_connections: int


def summarize(snapshot: MetricsSnapshot) -> DashboardSummary:
    return DashboardSummary(
        total_backends=total_backends(snapshot),
        healthy_backends=healthy_backends(snapshot),
        total_requests=total_requests(snapshot),
        active_connections=total_active_connections(snapshot),
    )


class DashboardView(BaseModel):
    """Everything the presentation layer renders, derived on read."""

    session: SessionState
    loading: bool
    error: Optional[str] = None
    message: Optional[str] = None
    fetched_at: Optional[float] = None
    summary: DashboardSummary
    metrics: list[BackendMetric]
    pending: list[PendingMutation]


# ── Pydantic Models ───────────────────────────────────────────────────────────────


class BackendRequest(BaseModel):
    url: str = Field(default="", max_length=2000)


class RemoveBackendRequest(BackendRequest):
    confirm: bool = False


class LoginRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=200)
    password: str = Field(default="", max_length=1000)


# ── Registry Client ──────────────────────────────────────────────────────────────


class BackendRegistryClient:
    """Async client for the load balancer's control API.

    Holds no state besides the HTTP session (cookie jar).  Every call returns
    an ``ApiResult``; transport failures are classified, never raised, and
    nothing is retried.
    """

    def __init__(
        self,
        settings: ConsoleSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.server_url,
            verify=self.settings.verify_tls,
            timeout=httpx.Timeout(self.settings.request_timeout_seconds),
            transport=self._transport,
            headers={"User-Agent": f"lb-console/{__version__}"},
        )

    async def startup(self) -> None:
        self._client = self._make_client()
        LOG.info(
            "Registry client started: server=%s, timeout=%.1fs",
            self.settings.server_url,
            self.settings.request_timeout_seconds,
        )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Registry client is not started")
        return self._client

    async def _send(
        self, method: str, path: str, **kwargs: Any
    ) -> Union[httpx.Response, ApiResult]:
        """Issue one request; transport failures and 401s come back as results."""
        try:
            resp = await self._require_client().request(method, path, **kwargs)
        except httpx.RequestError as e:
            LOG.warning("%s %s failed: %s", method, path, e)
            return ApiResult.network_error(str(e) or type(e).__name__)
        if resp.status_code == 401:
            return ApiResult.unauthorized(_json_or_none(resp))
        return resp

    async def fetch_metrics(self) -> ApiResult:
        resp = await self._send("GET", "/api/metrics")
        if isinstance(resp, ApiResult):
            return resp
        if not resp.is_success:
            return ApiResult.server_error(resp.status_code, f"HTTP {resp.status_code}")
        try:
            metrics = parse_metrics(resp.json())
        except (ValueError, PydanticValidationError) as e:
            LOG.warning("Invalid metrics payload: %s", e)
            return ApiResult.server_error(resp.status_code, "invalid metrics payload")
        return ApiResult(True, resp.status_code, metrics)

    async def logout(self) -> ApiResult:
        resp = await self._send("POST", "/api/logout")
        if isinstance(resp, ApiResult):
            return resp
        if not resp.is_success:
            return ApiResult.server_error(
                resp.status_code, f"HTTP {resp.status_code}", _json_or_none(resp)
            )
        return ApiResult(True, resp.status_code, _json_or_none(resp))

    async def login(self, username: str, password: str) -> ApiResult:
        resp = await self._send(
            "POST", "/api/login", json={"username": username, "password": password}
        )
        if isinstance(resp, ApiResult):
            return resp
        return _success_envelope(resp)

    async def add_backend(self, url: str) -> ApiResult:
        return await self._mutate("/api/backends/add", url)

    async def remove_backend(self, url: str) -> ApiResult:
        return await self._mutate("/api/backends/remove", url)

    async def _mutate(self, path: str, url: str) -> ApiResult:
        resp = await self._send("POST", path, json={"url": url})
        if isinstance(resp, ApiResult):
            return resp
        return _success_envelope(resp)

    async def list_backends(self) -> ApiResult:
        resp = await self._send("GET", "/api/backends")
        if isinstance(resp, ApiResult):
            return resp
        if not resp.is_success:
            return ApiResult.server_error(resp.status_code, f"HTTP {resp.status_code}")
        data = _json_or_none(resp)
        if not isinstance(data, list) or not all(isinstance(u, str) for u in data):
            return ApiResult.server_error(resp.status_code, "invalid backends payload")
        return ApiResult(True, resp.status_code, data)

    async def health(self) -> ApiResult:
        resp = await self._send("GET", "/health")
        if isinstance(resp, ApiResult):
            return resp
        if not resp.is_success:
            return ApiResult.server_error(resp.status_code, f"HTTP {resp.status_code}")
        return ApiResult(True, resp.status_code, resp.text.strip())


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _success_envelope(resp: httpx.Response) -> ApiResult:
    """Map a ``{"success": bool, "message": str}`` reply onto ``ApiResult``."""
    body = _json_or_none(resp)
    if not isinstance(body, dict):
        return ApiResult.server_error(resp.status_code, f"HTTP {resp.status_code}")
    if resp.is_success and body.get("success") is True:
        return ApiResult(True, resp.status_code, body)
    return ApiResult.server_error(
        resp.status_code, str(body.get("message") or f"HTTP {resp.status_code}"), body
    )


# ── Polling Scheduler ────────────────────────────────────────────────────────────


PollCallback = Callable[[], Awaitable[None]]


class PollingScheduler:
    """Fires an async callback on a fixed cadence, never two at once.

    Ticks follow the baseline ``t0 + k * interval``.  A tick that finds the
    previous fetch unresolved is skipped; ``trigger_now`` during a fetch
    queues exactly one follow-up run instead.
    """

    def __init__(self, interval: float = POLL_INTERVAL_SECONDS) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._callback: Optional[PollCallback] = None
        self._running = False
        self._epoch = 0
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._rerun = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self, callback: PollCallback) -> None:
        if self._running:
            LOG.debug("Poll scheduler already running")
            return
        self._callback = callback
        self._running = True
        self._epoch += 1
        self._timer = asyncio.get_running_loop().create_task(
            self._tick_loop(self._epoch)
        )
        LOG.info("Polling every %.1fs", self._interval)

    def stop(self) -> None:
        """Cancel pending and future fires. Safe to repeat and to call from the callback."""
        was_running = self._running
        self._running = False
        self._rerun = False
        self._epoch += 1
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
        if not self.in_flight:
            self._idle.set()
        if was_running:
            LOG.info("Polling stopped")

    def trigger_now(self) -> bool:
        """Fire out of band; returns False when the scheduler is stopped."""
        if not self._running or self._callback is None:
            return False
        if self.in_flight:
            self._rerun = True
            return True
        self._launch()
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no fetch is in flight or queued."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_once(self, callback: PollCallback) -> None:
        """Run ``callback`` in the in-flight slot once any unresolved fetch is done.

        Works whether or not the scheduler is running; ticks and
        ``trigger_now`` calls meanwhile see the slot taken.
        """
        while self._in_flight is not None and not self._in_flight.done():
            await asyncio.wait({self._in_flight})
        self._idle.clear()
        task = asyncio.get_running_loop().create_task(self._run(callback))
        self._in_flight = task
        await asyncio.wait({task})

    async def drain(self) -> None:
        """Stop and cancel the in-flight fetch, if any."""
        self.stop()
        task = self._in_flight
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                LOG.debug("In-flight poll cancelled")

    async def _tick_loop(self, epoch: int) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self._interval
        while self._running and epoch == self._epoch:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if not self._running or epoch != self._epoch:
                return
            now = loop.time()
            while next_at <= now:
                next_at += self._interval
            if self.in_flight:
                LOG.debug("Poll tick skipped: previous fetch still in flight")
                continue
            self._launch()

    def _launch(self) -> None:
        callback = self._callback
        if callback is None:
            return
        self._idle.clear()
        self._in_flight = asyncio.get_running_loop().create_task(self._run(callback))

    async def _run(self, callback: PollCallback) -> None:
        try:
            await callback()
        except Exception:
            LOG.exception("Poll callback failed")
        finally:
            self._in_flight = None
            if self._rerun and self._running:
                self._rerun = False
                self._launch()
            else:
                self._rerun = False
                self._idle.set()


# ── Session Controller ───────────────────────────────────────────────────────────


SessionListener = Callable[[SessionState, SessionState], None]


class SessionController:
    """Single source of truth for whether the operator is logged in."""

    def __init__(self, client: BackendRegistryClient) -> None:
        self._client = client
        self._state = SessionState.CHECKING
        self._listeners: list[SessionListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a ``(old, new)`` transition listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def probe(self) -> ApiResult:
        """Test the session against ``/api/metrics``; the result is returned for reuse."""
        result = await self._client.fetch_metrics()
        if result.success:
            self._transition(SessionState.AUTHENTICATED, "probe succeeded")
        else:
            self._transition(
                SessionState.UNAUTHENTICATED,
                f"probe failed: {result.failure.value if result.failure else 'unknown'}",
            )
        return result

    def notify_unauthorized(self) -> None:
        self._transition(SessionState.UNAUTHENTICATED, "unauthorized")

    def login(self) -> None:
        if self._state is SessionState.AUTHENTICATED:
            return
        self._transition(SessionState.AUTHENTICATED, "login")

    async def logout(self) -> None:
        """Best-effort server logout; the local transition always happens."""
        try:
            result = await self._client.logout()
            if not result.success:
                LOG.warning("Logout call failed: %s", result.error)
        except Exception as e:
            LOG.warning("Logout call failed: %s", e)
        finally:
            self._transition(SessionState.UNAUTHENTICATED, "logout")

    def _transition(self, new: SessionState, reason: str) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        LOG.info("Session %s -> %s (%s)", old.value, new.value, reason)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                LOG.exception("Session listener failed")


# ── Dashboard State Store ────────────────────────────────────────────────────────


ConfirmGate = Callable[[str], Union[bool, Awaitable[bool]]]


def confirm_always(url: str) -> bool:
    return True


class DashboardStateStore:
    """Owns the metrics snapshot and pending mutations.

    The server is the only source of truth for backend membership: add and
    remove never touch the snapshot locally, they trigger a resync poll.
    """

    def __init__(
        self,
        client: BackendRegistryClient,
        session: SessionController,
        scheduler: Optional[PollingScheduler] = None,
        confirm: Optional[ConfirmGate] = None,
    ) -> None:
        self.client = client
        self.session = session
        self.scheduler = scheduler or PollingScheduler()
        self._confirm = confirm or confirm_always
        self._snapshot = MetricsSnapshot()
        self._pending: dict[str, PendingMutation] = {}
        self._generation = 0
        self._loading = True
        self._message: Optional[str] = None

    @property
    def snapshot(self) -> MetricsSnapshot:
        return self._snapshot

    @property
    def pending(self) -> dict[str, PendingMutation]:
        return dict(self._pending)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def last_message(self) -> Optional[str]:
        return self._message

    @property
    def generation(self) -> int:
        return self._generation

    def is_pending(self, url: str) -> bool:
        return url in self._pending

    # Lifecycle

    async def bootstrap(self) -> SessionState:
        """Probe the session at application start; reuse its metrics if authenticated."""
        result = await self.session.probe()
        if self.session.is_authenticated:
            self._generation += 1
            self.handle_poll_result(result)
            self.scheduler.start(self._poll)
        else:
            self._loading = False
        return self.session.state

    async def mount(self) -> None:
        self._generation += 1
        self._loading = True
        await self.scheduler.run_once(self._poll)
        if self.session.is_authenticated:
            self.scheduler.start(self._poll)

    def unmount(self) -> None:
        self.scheduler.stop()
        self._generation += 1
        self._loading = True

    async def login(
        self, username: Optional[str] = None, password: str = ""
    ) -> OperationOutcome:
        """Record a successful login, exchanging credentials first when given."""
        if username is not None:
            result = await self.client.login(username, password)
            if not result.success:
                if result.failure is FailureKind.UNAUTHORIZED:
                    self.session.notify_unauthorized()
                return OperationOutcome(False, result.message or "Login failed")
        if self.session.is_authenticated and self.scheduler.running:
            return OperationOutcome(True, "Already logged in")
        self.session.login()
        await self.mount()
        if not self.session.is_authenticated:
            return OperationOutcome(False, "Session rejected by server")
        return OperationOutcome(True, "Login successful")

    async def logout(self) -> None:
        self.unmount()
        await self.session.logout()

    async def shutdown(self) -> None:
        self.unmount()
        await self.scheduler.drain()

    def refresh(self) -> bool:
        return self.scheduler.trigger_now()

    # Polling

    async def _poll(self) -> None:
        generation = self._generation
        result = await self.client.fetch_metrics()
        if generation != self._generation:
            LOG.debug(
                "Discarding stale poll result (generation %d, now %d)",
                generation,
                self._generation,
            )
            return
        self.handle_poll_result(result)

    def handle_poll_result(self, result: ApiResult) -> None:
        self._loading = False
        if result.success:
            self._snapshot = MetricsSnapshot(
                metrics=tuple(result.payload), fetched_at=time.time()
            )
            return
        if result.failure is FailureKind.UNAUTHORIZED:
            self._handle_unauthorized()
            return
        LOG.warning("Metrics fetch failed: %s", result.error)
        self._snapshot = replace(self._snapshot, error=FETCH_FAILED_MESSAGE)

    def _handle_unauthorized(self) -> None:
        self.session.notify_unauthorized()
        self.scheduler.stop()

    # Mutations

    async def add_backend(self, url: str) -> OperationOutcome:
        url = validate_backend_url(url)
        return await self._mutate(MutationKind.ADD, url, self.client.add_backend)

    async def remove_backend(
        self, url: str, confirm: Optional[ConfirmGate] = None
    ) -> OperationOutcome:
        url = (url or "").strip()
        if url in self._pending:
            return self._busy(url)
        decision = (confirm or self._confirm)(url)
        if inspect.isawaitable(decision):
            decision = await decision
        if not decision:
            LOG.info("Removal of %s not confirmed", url)
            return OperationOutcome(False, cancelled=True)
        return await self._mutate(MutationKind.REMOVE, url, self.client.remove_backend)

    def _busy(self, url: str) -> OperationOutcome:
        kind = self._pending[url].kind.value
        return OperationOutcome(False, f"{kind.capitalize()} request for {url} is already in progress")

    async def _mutate(
        self,
        kind: MutationKind,
        url: str,
        call: Callable[[str], Awaitable[ApiResult]],
    ) -> OperationOutcome:
        if url in self._pending:
            return self._busy(url)
        self._pending[url] = PendingMutation(url, kind, time.time())
        try:
            result = await call(url)
        finally:
            self._pending.pop(url, None)

        if result.success:
            self._message = None
            LOG.info("Backend %s succeeded for %s, resyncing", kind.value, url)
            self.scheduler.trigger_now()
            return OperationOutcome(True, result.message)

        generic = f"Failed to {kind.value} backend"
        if result.failure is FailureKind.UNAUTHORIZED:
            self._handle_unauthorized()
            message = generic
        elif result.failure is FailureKind.SERVER:
            message = result.message or generic
        else:
            message = generic
        LOG.warning("Backend %s failed for %s: %s", kind.value, url, result.error)
        self._message = message
        return OperationOutcome(False, message)

    # View

    def view(self) -> DashboardView:
        snapshot = self._snapshot
        return DashboardView(
            session=self.session.state,
            loading=self._loading,
            error=snapshot.error,
            message=self._message,
            fetched_at=snapshot.fetched_at,
            summary=summarize(snapshot),
            metrics=list(snapshot.metrics),
            pending=list(self._pending.values()),
        )


# ── App Factory ─────────────────────────────────────────────────────────────────


def load_settings() -> ConsoleSettings:
    """Load settings from environment variables with validation."""
    cors_raw = os.getenv("LBC_CORS_ORIGINS", "*")
    cors = [o.strip() for o in cors_raw.split(",") if o.strip()]

    settings = ConsoleSettings(
        server_url=normalize_base_url(os.getenv("LBC_SERVER_URL", "http://localhost:8080")),
        port=int(os.getenv("LBC_PORT", "8095")),
        request_timeout_seconds=max(
            1.0,
            float(os.getenv("LBC_REQUEST_TIMEOUT_SECONDS", str(DEFAULT_REQUEST_TIMEOUT_SECONDS))),
        ),
        verify_tls=parse_bool(os.getenv("LBC_VERIFY_TLS", "true")),
        log_level=os.getenv("LBC_LOG_LEVEL", "INFO").upper(),
        username=os.getenv("LBC_USERNAME", "").strip(),
        password=os.getenv("LBC_PASSWORD", ""),
        cors_origins=cors,
    )

    if not settings.verify_tls:
        LOG.warning("LBC_VERIFY_TLS is off - server certificates are not checked")
    if settings.username and not settings.password:
        LOG.warning("LBC_USERNAME set without LBC_PASSWORD")

    return settings


def create_app(
    settings: Optional[ConsoleSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    client = BackendRegistryClient(cfg, transport=transport)
    session = SessionController(client)
    store = DashboardStateStore(
        client, session, PollingScheduler(cfg.poll_interval_seconds)
    )
    audit = AuditLogger()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await client.startup()
        state = await store.bootstrap()
        if state is not SessionState.AUTHENTICATED and cfg.username:
            outcome = await store.login(cfg.username, cfg.password)
            if not outcome.success:
                LOG.warning("Auto-login as %s failed: %s", cfg.username, outcome.message)
        LOG.info(
            "LB Console v%s ready on port %s (server=%s, session=%s)",
            __version__, cfg.port, cfg.server_url, session.state.value,
        )
        try:
            yield
        finally:
            await store.shutdown()
            await client.shutdown()

    app = FastAPI(
        title="LB Console",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = cfg
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Console-Version", "X-Request-ID"],
    )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Request-ID"] = req_id
        response.headers["X-Console-Version"] = __version__
        return response

    @app.exception_handler(ConsoleError)
    async def console_error_handler(request: Request, exc: ConsoleError):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, exc.detail, exc.error_type, req_id)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return problem_detail(exc.status_code, str(exc.detail), request_id=req_id)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        return problem_detail(500, "internal server error", "internal_error", req_id)

    def require_session() -> None:
        if not session.is_authenticated:
            raise HTTPException(401, "not authenticated")

    def failed(request: Request, outcome: OperationOutcome, error_type: str) -> JSONResponse:
        req_id = getattr(request.state, "request_id", "")
        status = 400 if session.is_authenticated else 401
        return problem_detail(status, outcome.message or "operation failed", error_type, req_id)

    # Routes: public

    @app.get("/health")
    async def health():
        return JSONResponse({
            "status": "ok",
            "session": session.state.value,
            "version": __version__,
        })

    @app.get("/api/session")
    async def get_session():
        return JSONResponse({"state": session.state.value})

    @app.post("/api/session/login")
    async def login(request: Request, payload: LoginRequest):
        outcome = await store.login(payload.username, payload.password)
        if not outcome.success:
            req_id = getattr(request.state, "request_id", "")
            return problem_detail(401, outcome.message or "Login failed", "login_failed", req_id)
        audit.log("login", getattr(request.state, "request_id", ""), {"username": payload.username})
        return JSONResponse({"success": True, "session": session.state.value})

    @app.post("/api/session/logout")
    async def logout(request: Request):
        await store.logout()
        audit.log("logout", getattr(request.state, "request_id", ""))
        return JSONResponse({"success": True, "session": session.state.value})

    # Routes: dashboard

    @app.get("/api/dashboard", dependencies=[Depends(require_session)])
    async def get_dashboard():
        return JSONResponse(store.view().model_dump(mode="json"))

    @app.post("/api/dashboard/refresh", dependencies=[Depends(require_session)])
    async def refresh():
        return JSONResponse({"triggered": store.refresh()})

    @app.post("/api/dashboard/backends", dependencies=[Depends(require_session)])
    async def add_backend(request: Request, payload: BackendRequest):
        outcome = await store.add_backend(payload.url)
        if not outcome.success:
            return failed(request, outcome, "backend_add_failed")
        audit.log("backend_added", getattr(request.state, "request_id", ""), {"url": payload.url.strip()})
        await store.scheduler.wait_idle(cfg.request_timeout_seconds)
        return JSONResponse({
            "success": True,
            "message": outcome.message,
            "dashboard": store.view().model_dump(mode="json"),
        })

    @app.post("/api/dashboard/backends/remove", dependencies=[Depends(require_session)])
    async def remove_backend(request: Request, payload: RemoveBackendRequest):
        outcome = await store.remove_backend(payload.url, confirm=lambda _url: payload.confirm)
        if outcome.cancelled:
            req_id = getattr(request.state, "request_id", "")
            return problem_detail(409, f"Removal of {payload.url} not confirmed", "confirmation_required", req_id)
        if not outcome.success:
            return failed(request, outcome, "backend_remove_failed")
        audit.log("backend_removed", getattr(request.state, "request_id", ""), {"url": payload.url.strip()})
        await store.scheduler.wait_idle(cfg.request_timeout_seconds)
        return JSONResponse({
            "success": True,
            "message": outcome.message,
            "dashboard": store.view().model_dump(mode="json"),
        })

    return app


app = create_app()

if __name__ == "__main__":
    s = load_settings()
    uvicorn.run(
        "lb_console:app",
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )
