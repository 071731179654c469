"""
Worker process for sending queued emails.

The worker polls every workspace for eligible entries, claims them one by
one, sends them through the provider registered for the entry and records
the outcome: delete on success, backoff or permanent removal on failure.
"""

import asyncio
import inspect
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from typing import Any

from mailqueue.config import get_settings
from mailqueue.constants import SPAN_SEND_EMAIL
from mailqueue.db.connection import close_connections, get_connection_manager
from mailqueue.db.models import EmailQueueEntry
from mailqueue.exceptions import EmailQueueError, SendError
from mailqueue.observability.logging import setup_logging, workspace_log_context
from mailqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from mailqueue.observability.tracing import get_tracer, setup_tracing
from mailqueue.queue import EmailQueueService
from mailqueue.worker.backoff import calculate_next_retry_time
from mailqueue.worker.circuit_breaker import IntegrationCircuitBreaker
from mailqueue.worker.rate_limit import IntegrationRateLimiter
from mailqueue.worker.senders import send_entry

logger = logging.getLogger(__name__)

WorkspaceLister = Callable[[], Awaitable[Sequence[str]]]
RateLimitLookup = Callable[[str], int]
Sender = Callable[[EmailQueueEntry], Awaitable[None]]
# (workspace_id, entry)
EmailSentCallback = Callable[[str, EmailQueueEntry], Any]
# (workspace_id, entry, error, permanent)
EmailFailedCallback = Callable[[str, EmailQueueEntry, SendError, bool], Any]

# Share of a minute's sending budget fetched per poll
_BATCH_TIME_BUDGET_SECONDS = 45


class EmailQueueWorker:
    """
    Email queue worker.

    Features:
    - Workspaces processed concurrently, bounded by ``worker_count``
    - Batch size derived from the slowest integration rate of the workspace
    - Circuit-broken integrations rescheduled without burning an attempt
    - Per-integration rate limiting
    - Exponential backoff, permanent removal once attempts are exhausted
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        service: EmailQueueService,
        workspace_lister: WorkspaceLister | None = None,
        sender: Sender = send_entry,
        rate_limit_lookup: RateLimitLookup | None = None,
        rate_limiter: IntegrationRateLimiter | None = None,
        circuit_breaker: IntegrationCircuitBreaker | None = None,
        metrics: MetricsCollector | None = None,
        worker_id: str | None = None,
        worker_count: int | None = None,
        send_concurrency: int | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        fetch_timeout: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            service: The queue service.
            workspace_lister: Returns the workspaces to poll. Defaults to the
                configured ``worker_workspace_ids``.
            sender: Delivers one entry, raising ``SendError`` on failure.
            rate_limit_lookup: Lowest integration rate (per minute) of a
                workspace. Defaults to ``default_rate_limit_per_minute``.
            rate_limiter: Per-integration rate limiter.
            circuit_breaker: Per-integration circuit breaker.
            metrics: Metrics collector. Defaults to the global one.
            worker_id: Worker identifier used in logs.
            worker_count: Workspaces processed concurrently.
            send_concurrency: Entries sent concurrently per workspace.
            batch_size: Upper bound on entries fetched per workspace poll.
            poll_interval: Seconds between polls when the queue is empty.
            fetch_timeout: Deadline in seconds for one fetch.
        """
        settings = get_settings()

        self.service = service
        self.worker_id = worker_id or settings.worker_id
        self.worker_count = worker_count or settings.worker_count
        self.send_concurrency = send_concurrency or settings.worker_send_concurrency
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.fetch_timeout = fetch_timeout or settings.worker_fetch_timeout_seconds
        self.default_rate_limit = settings.default_rate_limit_per_minute

        self._workspace_lister = workspace_lister or self._configured_workspaces
        self._sender = sender
        self._rate_limit_lookup = rate_limit_lookup or (lambda _: self.default_rate_limit)
        self.rate_limiter = rate_limiter or IntegrationRateLimiter()
        self.circuit_breaker = circuit_breaker or IntegrationCircuitBreaker(
            threshold=settings.circuit_breaker_threshold,
            cooldown=timedelta(seconds=settings.circuit_breaker_cooldown_seconds),
            clock=service.clock,
        )
        self._metrics = metrics or get_metrics()

        self._on_sent: EmailSentCallback | None = None
        self._on_failed: EmailFailedCallback | None = None

        self._running = False
        self._stop_event = asyncio.Event()

    @staticmethod
    async def _configured_workspaces() -> Sequence[str]:
        return get_settings().worker_workspace_ids

    def set_callbacks(
        self,
        on_sent: EmailSentCallback | None = None,
        on_failed: EmailFailedCallback | None = None,
    ) -> None:
        """
        Register outcome callbacks, e.g. for broadcast progress tracking.

        Callbacks may be plain functions or coroutines.
        """
        self._on_sent = on_sent
        self._on_failed = on_failed

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the polling loop until ``stop`` is called."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "worker_count": self.worker_count},
        )

        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                processed = 0

            if processed == 0 and self._running:
                await self._idle()

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def stop(self) -> None:
        """Stop the worker after the current poll."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Poll every workspace once.

        A failing workspace is logged and does not affect the others.

        Returns:
            Number of entries fetched across all workspaces.
        """
        workspace_ids = await self._workspace_lister()
        if not workspace_ids:
            return 0

        semaphore = asyncio.Semaphore(self.worker_count)

        async def process(workspace_id: str) -> int:
            async with semaphore:
                return await self._process_workspace(workspace_id)

        results = await asyncio.gather(
            *(process(ws) for ws in workspace_ids),
            return_exceptions=True,
        )

        processed = 0
        for workspace_id, result in zip(workspace_ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to process workspace",
                    extra={"workspace_id": workspace_id, "error": str(result)},
                    exc_info=result,
                )
                continue
            processed += result
        return processed

    def effective_batch_size(self, workspace_id: str) -> int:
        """
        Entries to fetch for a workspace in one poll.

        Sized so the slowest integration can send the batch within 45
        seconds, clamped to ``[1, batch_size]``.
        """
        min_rate = self._rate_limit_lookup(workspace_id)
        size = min_rate * _BATCH_TIME_BUDGET_SECONDS // 60
        return max(1, min(size, self.batch_size))

    async def _process_workspace(self, workspace_id: str) -> int:
        with workspace_log_context(workspace_id):
            limit = self.effective_batch_size(workspace_id)

            async with asyncio.timeout(self.fetch_timeout):
                entries = await self.service.fetch_pending(workspace_id, limit)

            if not entries:
                return 0

            logger.debug(
                "Processing queued emails",
                extra={"workspace_id": workspace_id, "count": len(entries)},
            )

            semaphore = asyncio.Semaphore(self.send_concurrency)

            async def process(entry: EmailQueueEntry) -> None:
                async with semaphore:
                    if not self._stop_event.is_set():
                        await self._process_entry(workspace_id, entry)

            await asyncio.gather(*(process(entry) for entry in entries))
            return len(entries)

    async def _process_entry(self, workspace_id: str, entry: EmailQueueEntry) -> None:
        """
        Take one fetched entry through its lifecycle.

        1. Open circuit: reschedule after the cooldown, attempts untouched
        2. Claim; a lost race means another worker has it
        3. Rate-limit wait, then send
        4. Record the outcome
        """
        try:
            if self.circuit_breaker.is_open(entry.integration_id):
                next_retry = self.service.clock() + self.circuit_breaker.cooldown
                rescheduled = await self.service.set_next_retry(
                    workspace_id, entry.id, next_retry, skip_in_flight=True
                )
                if rescheduled:
                    self._metrics.record_rescheduled(workspace_id, entry.integration_id)
                    logger.debug(
                        "Circuit open, entry rescheduled without burning an attempt",
                        extra={"entry_id": entry.id, "integration_id": entry.integration_id},
                    )
                return

            claimed = await self.service.mark_as_processing(workspace_id, entry.id)
            if claimed is None:
                logger.debug(
                    "Entry claimed by another worker",
                    extra={"entry_id": entry.id},
                )
                return

            # The fetched row may be stale; only the claimed row is authoritative
            entry = claimed

            await self.rate_limiter.wait(entry.integration_id, self._rate_for(entry))

            start_time = time.perf_counter()
            try:
                with get_tracer().start_as_current_span(SPAN_SEND_EMAIL) as span:
                    span.set_attribute("entry_id", entry.id)
                    span.set_attribute("workspace_id", workspace_id)
                    span.set_attribute("provider_kind", entry.provider_kind)
                    span.set_attribute("attempt", entry.attempts)

                    await self._sender(entry)
            except SendError as e:
                self.circuit_breaker.record_failure(entry.integration_id, e)
                await self._handle_failure(workspace_id, entry, e)
                return

            self.circuit_breaker.record_success(entry.integration_id)
            await self.service.mark_as_sent(workspace_id, entry.id)

            self._metrics.record_sent(
                workspace_id, entry.provider_kind, time.perf_counter() - start_time
            )
            logger.debug(
                "Email sent",
                extra={
                    "entry_id": entry.id,
                    "message_id": entry.message_id,
                    "source_type": str(entry.source_type),
                    "source_id": entry.source_id,
                },
            )

            await self._notify(self._on_sent, workspace_id, entry)

        except EmailQueueError as e:
            logger.error(
                "Failed to record queue entry outcome",
                extra={"entry_id": entry.id, "error": str(e)},
            )

    def _rate_for(self, entry: EmailQueueEntry) -> int:
        rate = (entry.payload or {}).get("rate_limit_per_minute") or 0
        return rate if rate > 0 else self.default_rate_limit

    async def _handle_failure(
        self,
        workspace_id: str,
        entry: EmailQueueEntry,
        error: SendError,
    ) -> None:
        """
        Delete permanently failed entries, schedule a retry for the rest.

        ``entry`` must be the claimed row so ``attempts`` counts this send.
        """
        permanent = not entry.is_retryable or not error.retryable

        logger.warning(
            "Failed to send email",
            extra={
                "entry_id": entry.id,
                "message_id": entry.message_id,
                "attempts": entry.attempts,
                "remaining_attempts": entry.remaining_attempts,
                "error": str(error),
                "permanent": permanent,
            },
        )
        self._metrics.record_failed(workspace_id, permanent)

        if permanent:
            await self.service.delete(workspace_id, entry.id)
        else:
            next_retry = calculate_next_retry_time(entry.attempts, self.service.clock())
            await self.service.mark_as_failed(workspace_id, entry.id, str(error), next_retry)

        await self._notify(self._on_failed, workspace_id, entry, error, permanent)

    @staticmethod
    async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
        """Run an outcome callback; its errors are logged, never propagated."""
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(
                f"Outcome callback failed: {e}",
                extra={"callback": getattr(callback, "__name__", repr(callback))},
            )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()

    setup_logging()
    if settings.otel_enabled:
        setup_tracing()
    setup_metrics(settings.prometheus_port)

    service = EmailQueueService(get_connection_manager())
    worker = EmailQueueWorker(service)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_connections()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
