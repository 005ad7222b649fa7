"""Access coordinator — the single entry-point for rate-limited provider calls.

Composes ProviderRegistry, ProviderSelector, QuotaTracker, CircuitBreaker
and RetryPolicy behind one per-source request scheduler.  Callers hand in
an operation and a priority; the coordinator queues it, spaces and caps
dispatches per source, binds it to the best provider, and retries or
surfaces failures.

Usage::

    coordinator = AccessCoordinator(build_sources(settings))

    async with coordinator:
        block = await coordinator.execute(
            KnownSource.CHAIN_RPC,
            json_rpc_operation(client, "eth_blockNumber"),
            priority=Priority.HIGH,
        )

One instance is meant to be shared by every worker in the process.  All
state is owned by the event loop the coordinator runs on; there is no
cross-process coordination.
"""

from __future__ import annotations

import asyncio
import enum
import time
from collections import deque
from typing import Any, Callable, Sequence

import structlog

from ratekeeper.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    CoordinatorClosedError,
    CoordinatorError,
    NoActiveProviderError,
    QueueFullError,
    RetryExhaustedError,
)
from ratekeeper.observability.metrics import (
    ACTIVE_REQUESTS,
    CIRCUIT_STATE,
    DISPATCHES_TOTAL,
    OPERATION_DURATION,
    QUEUE_DEPTH,
    REJECTIONS_TOTAL,
    RETRIES_TOTAL,
)
from ratekeeper.providers.circuit_breaker import CircuitBreaker, CircuitState
from ratekeeper.providers.health import ProviderHealthTracker
from ratekeeper.providers.quota import QuotaTracker
from ratekeeper.providers.registry import ProviderRegistry
from ratekeeper.providers.retry import FailureKind, RetryPolicy
from ratekeeper.providers.selector import ProviderSelector
from ratekeeper.providers.types import (
    Operation,
    Priority,
    ProviderState,
    ProviderUtilization,
    QueuedRequest,
    SourceConfig,
    SourceStatus,
    WorkerIdentity,
)

logger = structlog.get_logger(__name__)


def _source_name(source: str) -> str:
    return source.value if isinstance(source, enum.Enum) else source


class _SourceLane:
    """Scheduler state for one source: priority queue, slots, spacing."""

    def __init__(self, config: SourceConfig, breaker: CircuitBreaker, retry: RetryPolicy) -> None:
        self.name = config.name
        self.limits = config.limits
        self.breaker = breaker
        self.retry = retry

        self.high: deque[QueuedRequest] = deque()
        self.normal: deque[QueuedRequest] = deque()
        self.active = 0
        # Admitted requests sleeping out a stagger or retry delay
        self.scheduled = 0
        self.last_request_time: float | None = None

        self.wakeup = asyncio.Event()
        self.processor: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self.high) + len(self.normal)

    @property
    def pending(self) -> int:
        """Requests waiting for a dispatch slot, queued or delayed."""
        return len(self) + self.scheduled

    def push(self, request: QueuedRequest) -> None:
        if request.priority == Priority.HIGH:
            self.high.append(request)
        else:
            self.normal.append(request)

    def pop(self) -> QueuedRequest:
        return self.high.popleft() if self.high else self.normal.popleft()

    def ready(self) -> bool:
        if not len(self):
            return False
        state = self.breaker.state
        if state == CircuitState.OPEN:
            # Queued requests are rejected without taking a slot
            return True
        return self.active < self.limits.max_concurrent and self.breaker.can_execute()


class AccessCoordinator:
    """Per-source queueing, spacing, circuit breaking and provider selection."""

    def __init__(
        self,
        sources: Sequence[SourceConfig],
        *,
        worker: WorkerIdentity | None = None,
        base_stagger_seconds: float = 5.0,
        rollover_interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        retry_policies: dict[str, RetryPolicy] | None = None,
    ) -> None:
        if not sources:
            raise ConfigurationError("At least one source must be configured")

        self._clock = clock
        self._worker = worker
        self._base_stagger = base_stagger_seconds
        self._rollover_interval = rollover_interval_seconds

        self._registry = ProviderRegistry.from_sources(list(sources))
        self._registry.validate()
        self._quota = QuotaTracker(self._registry, clock=clock)

        self._circuit_breakers: dict[str, CircuitBreaker] = {}
        self._lanes: dict[str, _SourceLane] = {}
        self._health: dict[tuple[str, str], ProviderHealthTracker] = {}
        retry_policies = retry_policies or {}

        for source in self._registry:
            limits = source.limits
            cb = CircuitBreaker(
                source.name,
                failure_threshold=limits.cb_threshold,
                timeout_seconds=limits.cb_timeout_s,
                clock=clock,
            )
            self._circuit_breakers[source.name] = cb
            retry = retry_policies.get(source.name) or RetryPolicy.from_limits(limits)
            self._lanes[source.name] = _SourceLane(source, cb, retry)
            for provider in source.providers:
                self._health[(source.name, provider.provider_id)] = ProviderHealthTracker(
                    provider.provider_id, clock=clock
                )

        self._selector = ProviderSelector(self._registry, self._quota, self._circuit_breakers)

        self._staggered: set[int] = set()
        self._live: set[QueuedRequest] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._rollover_task: asyncio.Task[None] | None = None
        self._closed = False

        logger.info(
            "coordinator_initialized",
            sources=self._registry.source_names,
            worker=worker.worker_id if worker else None,
        )

    # ── Accessors ────────────────────────────────────────────
    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    @property
    def selector(self) -> ProviderSelector:
        return self._selector

    def circuit_breaker(self, source: str) -> CircuitBreaker:
        return self._lane(source).breaker

    # ── Main entry-point ─────────────────────────────────────
    async def execute(
        self,
        source: str,
        operation: Operation,
        priority: Priority | str = Priority.NORMAL,
        *,
        worker: WorkerIdentity | None = None,
    ) -> Any:
        """Queue ``operation`` for ``source`` and wait for its result.

        Args:
            source: Registered source name (or ``KnownSource`` member).
            operation: Async callable receiving the selected ``ProviderConfig``.
            priority: ``Priority.HIGH`` jumps ahead of every queued normal request.
            worker: Identity of the calling bot; its first call is staggered.

        Returns:
            Whatever the operation returned on its successful attempt.

        Raises:
            UnknownSourceError: ``source`` is not registered.
            CircuitOpenError: The source circuit is open.
            QueueFullError: The source queue is at ``max_queue_depth``.
            NoActiveProviderError: Every provider is deactivated.
            RetryExhaustedError: Rate-limited / transient failures outlived ``max_retries``,
                or a pending retry met an open circuit.
            Exception: Fatal failures are re-raised unchanged.
        """
        return await self.submit(source, operation, priority, worker=worker)

    def submit(
        self,
        source: str,
        operation: Operation,
        priority: Priority | str = Priority.NORMAL,
        *,
        worker: WorkerIdentity | None = None,
    ) -> asyncio.Future[Any]:
        """Enqueue ``operation`` and return a future resolved with its outcome.

        Immediate rejections (unknown source, open circuit, full queue) are
        raised synchronously and never queued.
        """
        if self._closed:
            raise CoordinatorClosedError()

        lane = self._lane(source)
        if lane.breaker.state == CircuitState.OPEN:
            error = CircuitOpenError(lane.name, lane.breaker.retry_after())
            REJECTIONS_TOTAL.labels(source=lane.name, code=error.code).inc()
            raise error
        if lane.pending >= lane.limits.max_queue_depth:
            error = QueueFullError(lane.name, lane.pending)
            REJECTIONS_TOTAL.labels(source=lane.name, code=error.code).inc()
            logger.warning("queue_full", source=lane.name, depth=lane.pending)
            raise error
        try:
            tier = Priority(priority)
        except ValueError:
            raise CoordinatorError(
                f"Unknown priority {priority!r}; expected 'high' or 'normal'",
                code="INVALID_PRIORITY",
            ) from None

        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            operation=operation,
            priority=tier,
            future=loop.create_future(),
            max_retries=lane.retry.max_retries,
            enqueued_at=self._clock(),
        )
        self._live.add(request)
        request.future.add_done_callback(lambda _f: self._live.discard(request))

        identity = worker or self._worker
        stagger = self._stagger_for(identity)
        if identity is not None and stagger > 0:
            logger.debug(
                "worker_stagger_applied",
                source=lane.name,
                worker=identity.worker_id,
                delay_s=stagger,
            )
            self._schedule(lane, request, stagger)
        else:
            self._enqueue(lane, request)
        return request.future

    async def wait_for_permission(self, source: str) -> None:
        """Suspend until ``min_delay`` has passed since the last granted request."""
        lane = self._lane(source)
        now = self._clock()
        delay = 0.0
        if lane.last_request_time is not None:
            delay = max(0.0, lane.limits.min_delay_s - (now - lane.last_request_time))
        # Granted now; the slot is reserved before the sleep
        lane.last_request_time = now + delay
        if delay > 0:
            await asyncio.sleep(delay)

    # ── Observation / admin ──────────────────────────────────
    def status(self, source: str) -> SourceStatus:
        """Non-blocking snapshot of queue, circuit and provider utilisation."""
        lane = self._lane(source)
        now = self._clock()
        providers: list[ProviderUtilization] = []
        for p in self._registry.providers(lane.name):
            health = self._health[(lane.name, p.provider_id)]
            providers.append(
                ProviderUtilization(
                    provider_id=p.provider_id,
                    request_count=p.request_count,
                    daily_limit=p.config.daily_limit,
                    utilization=round(p.utilization, 4),
                    is_active=p.is_active(now),
                    quota_exhausted=p.quota_exhausted,
                    suspended_for_s=round(self._quota.suspended_for(p), 1),
                    success_rate=health.success_rate,
                    latency_p50_ms=health.percentile(0.50),
                    latency_p95_ms=health.percentile(0.95),
                    last_error=health.last_error,
                )
            )
        return SourceStatus(
            source=lane.name,
            queue_length=len(lane),
            active_requests=lane.active,
            circuit_state=lane.breaker.state.value,
            failure_count=lane.breaker.failure_count,
            providers=providers,
        )

    def status_all(self) -> list[SourceStatus]:
        return [self.status(name) for name in self._registry.source_names]

    def reset_source(self, source: str) -> None:
        """Close the circuit and lift provider suspensions.

        Daily request counts are left alone; they mirror usage the provider
        has already seen.
        """
        lane = self._lane(source)
        lane.breaker.reset()
        CIRCUIT_STATE.labels(source=lane.name).set(0)
        for provider in self._registry.providers(lane.name):
            provider.suspended_until = None
            provider.consecutive_failures = 0
        self._notify(lane)
        logger.info("source_admin_reset", source=lane.name)

    # ── Lifecycle ────────────────────────────────────────────
    def start(self) -> None:
        """Start the periodic quota rollover check."""
        if self._rollover_task is None or self._rollover_task.done():
            self._rollover_task = asyncio.get_running_loop().create_task(
                self._quota.run_periodic(self._rollover_interval)
            )
            self._rollover_task.add_done_callback(self._on_background_done)

    async def close(self) -> None:
        """Stop background work and fail every request still pending."""
        if self._closed:
            return
        self._closed = True

        background: list[asyncio.Task[Any]] = list(self._tasks)
        if self._rollover_task is not None:
            background.append(self._rollover_task)
        background.extend(lane.processor for lane in self._lanes.values() if lane.processor)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        for request in list(self._live):
            if not request.future.done():
                request.future.set_exception(CoordinatorClosedError())
        for lane in self._lanes.values():
            lane.high.clear()
            lane.normal.clear()
            QUEUE_DEPTH.labels(source=lane.name).set(0)
        logger.info("coordinator_closed")

    async def __aenter__(self) -> AccessCoordinator:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Queue processing ─────────────────────────────────────
    def _enqueue(self, lane: _SourceLane, request: QueuedRequest) -> None:
        if request.future.done():
            return
        lane.push(request)
        QUEUE_DEPTH.labels(source=lane.name).set(len(lane))
        self._ensure_processor(lane)
        self._notify(lane)

    def _schedule(self, lane: _SourceLane, request: QueuedRequest, delay: float) -> None:
        """Re-enter ``request`` into the queue after ``delay`` seconds."""

        async def _later() -> None:
            try:
                await asyncio.sleep(delay)
            finally:
                lane.scheduled -= 1
            if not self._closed:
                self._enqueue(lane, request)

        lane.scheduled += 1
        self._track(asyncio.get_running_loop().create_task(_later()))

    def _notify(self, lane: _SourceLane) -> None:
        lane.wakeup.set()

    def _ensure_processor(self, lane: _SourceLane) -> None:
        if lane.processor is None or lane.processor.done():
            lane.processor = asyncio.get_running_loop().create_task(self._process(lane))
            lane.processor.add_done_callback(self._on_background_done)

    async def _process(self, lane: _SourceLane) -> None:
        """Drain one source queue, one dispatch decision at a time."""
        while True:
            while not lane.ready():
                lane.wakeup.clear()
                await lane.wakeup.wait()

            request = lane.pop()
            QUEUE_DEPTH.labels(source=lane.name).set(len(lane))
            if request.future.done():
                continue

            if lane.breaker.state == CircuitState.OPEN:
                self._reject(lane, request, self._circuit_open_error(lane, request))
                continue

            trial = lane.breaker.begin_trial()
            lane.active += 1
            ACTIVE_REQUESTS.labels(source=lane.name).set(lane.active)

            await self.wait_for_permission(lane.name)
            self._track(asyncio.get_running_loop().create_task(self._dispatch(lane, request, trial)))

    async def _dispatch(self, lane: _SourceLane, request: QueuedRequest, trial: bool) -> None:
        try:
            # The circuit may have opened while this request slept out its spacing
            if lane.breaker.state == CircuitState.OPEN:
                self._reject(lane, request, self._circuit_open_error(lane, request))
                return
            try:
                provider = self._selector.select_provider(lane.name)
            except NoActiveProviderError as exc:
                self._reject(lane, request, exc)
                return

            self._quota.increment(provider)
            await self._invoke(lane, request, provider)
        finally:
            if trial:
                lane.breaker.release_trial()
            lane.active -= 1
            ACTIVE_REQUESTS.labels(source=lane.name).set(lane.active)
            CIRCUIT_STATE.labels(source=lane.name).set(
                0 if lane.breaker.state == CircuitState.CLOSED else 1
            )
            self._notify(lane)

    async def _invoke(self, lane: _SourceLane, request: QueuedRequest, provider: ProviderState) -> None:
        pid = provider.provider_id
        health = self._health[(lane.name, pid)]
        log = logger.bind(source=lane.name, provider=pid, attempt=request.attempts)

        start = time.monotonic()
        try:
            result = await request.operation(provider.config)
        except Exception as exc:
            duration = time.monotonic() - start
            error_msg = f"{type(exc).__name__}: {exc}"
            health.record_failure(error_msg, duration * 1000)
            DISPATCHES_TOTAL.labels(source=lane.name, provider=pid, outcome="failure").inc()
            OPERATION_DURATION.labels(source=lane.name, provider=pid).observe(duration)
            log.warning("operation_failed", error=error_msg, latency_ms=round(duration * 1000, 1))
            self._handle_failure(lane, request, provider, exc)
            return

        duration = time.monotonic() - start
        health.record_success(duration * 1000)
        provider.consecutive_failures = 0
        lane.breaker.record_success()
        DISPATCHES_TOTAL.labels(source=lane.name, provider=pid, outcome="success").inc()
        OPERATION_DURATION.labels(source=lane.name, provider=pid).observe(duration)
        log.debug("operation_succeeded", latency_ms=round(duration * 1000, 1))
        if not request.future.done():
            request.future.set_result(result)

    def _handle_failure(
        self,
        lane: _SourceLane,
        request: QueuedRequest,
        provider: ProviderState,
        exc: Exception,
    ) -> None:
        decision = lane.retry.decide(exc, request.retry_count)

        if decision.kind == FailureKind.FATAL:
            self._reject(lane, request, exc)
            return

        if decision.record_circuit_failure:
            lane.breaker.record_failure()

        if decision.suspend_provider_s is not None:
            self._quota.suspend(provider, decision.suspend_provider_s, reason="rate_limited")
        else:
            provider.consecutive_failures += 1
            if provider.consecutive_failures >= lane.limits.connection_failure_threshold:
                self._quota.suspend(
                    provider, lane.limits.provider_cooldown_s, reason="connection_failures"
                )

        if not decision.retry:
            error = RetryExhaustedError(lane.name, request.attempts, exc)
            error.__cause__ = exc
            self._reject(lane, request, error)
            return

        request.retry_count += 1
        request.last_error = exc
        RETRIES_TOTAL.labels(source=lane.name, kind=decision.kind.value).inc()
        logger.info(
            "request_requeued",
            source=lane.name,
            kind=decision.kind.value,
            retry=request.retry_count,
            max_retries=request.max_retries,
            delay_s=round(decision.delay_s, 3),
        )
        self._schedule(lane, request, decision.delay_s)

    def _circuit_open_error(self, lane: _SourceLane, request: QueuedRequest) -> CoordinatorError:
        """Rejection for a request that meets an open circuit.

        A request that already failed and was waiting to retry surfaces as
        ``RetryExhaustedError`` carrying its last failure, chained from the
        ``CircuitOpenError`` that stopped it.
        """
        error = CircuitOpenError(lane.name, lane.breaker.retry_after())
        if request.last_error is None:
            return error
        exhausted = RetryExhaustedError(lane.name, request.retry_count, request.last_error)
        exhausted.__cause__ = error
        return exhausted

    def _reject(self, lane: _SourceLane, request: QueuedRequest, exc: BaseException) -> None:
        code = getattr(exc, "code", type(exc).__name__)
        REJECTIONS_TOTAL.labels(source=lane.name, code=code).inc()
        if not request.future.done():
            request.future.set_exception(exc)

    # ── Helpers ──────────────────────────────────────────────
    def _lane(self, source: str) -> _SourceLane:
        name = _source_name(source)
        self._registry.source(name)  # raises UnknownSourceError
        return self._lanes[name]

    def _stagger_for(self, worker: WorkerIdentity | None) -> float:
        if worker is None or worker.worker_id in self._staggered:
            return 0.0
        self._staggered.add(worker.worker_id)
        return worker.stagger_offset(self._base_stagger)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("coordinator_task_crashed", error=f"{type(exc).__name__}: {exc}")
