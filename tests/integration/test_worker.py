"""
Integration tests for worker functionality.
"""

import asyncio
import logging
from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from mailqueue.db.connection import StaticConnectionResolver
from mailqueue.db.models import EmailQueueEntry
from mailqueue.exceptions import QueueConnectionError, SendError
from mailqueue.queue import EmailQueueService
from mailqueue.worker.circuit_breaker import IntegrationCircuitBreaker
from mailqueue.worker.main import EmailQueueWorker
from mailqueue.worker.rate_limit import IntegrationRateLimiter


class FakeSender:
    """Records deliveries and raises the queued errors in order."""

    def __init__(self, errors: list[SendError | None] | None = None):
        self.errors = list(errors or [])
        self.sent: list[str] = []
        self.calls = 0

    async def __call__(self, entry: EmailQueueEntry) -> None:
        self.calls += 1
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        self.sent.append(entry.id)


async def no_sleep(delay: float) -> None:
    return None


class PartiallyReachableResolver:
    """Routes every workspace to one engine except those marked down."""

    def __init__(self, inner: StaticConnectionResolver, down: set[str]):
        self._inner = inner
        self._down = down

    async def resolve(self, workspace_id: str):
        if workspace_id in self._down:
            raise QueueConnectionError("workspace database down", workspace_id=workspace_id)
        return await self._inner.resolve(workspace_id)


class TestWorkerIntegration:
    """Integration tests for worker email processing."""

    @pytest.fixture
    def sender(self) -> FakeSender:
        return FakeSender()

    @pytest.fixture
    def make_worker(self, service: EmailQueueService, workspace_id: str, metrics, clock):
        def _make_worker(sender: FakeSender, **kwargs) -> EmailQueueWorker:
            async def list_workspaces() -> list[str]:
                return [workspace_id]

            kwargs.setdefault("workspace_lister", list_workspaces)
            kwargs.setdefault(
                "circuit_breaker",
                IntegrationCircuitBreaker(
                    threshold=5, cooldown=timedelta(minutes=1), clock=clock
                ),
            )
            return EmailQueueWorker(
                kwargs.pop("service", service),
                sender=sender,
                rate_limiter=IntegrationRateLimiter(sleep=no_sleep),
                metrics=metrics,
                worker_count=2,
                send_concurrency=2,
                batch_size=50,
                poll_interval=0.01,
                **kwargs,
            )

        return _make_worker

    async def test_sends_and_removes_entries(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
        registry: CollectorRegistry,
    ):
        """Test that delivered entries are deleted and reported."""
        entries = [make_entry() for _ in range(3)]
        await service.enqueue(workspace_id, entries)
        delivered: list[tuple[str, str]] = []

        worker = make_worker(sender)
        worker.set_callbacks(on_sent=lambda ws, entry: delivered.append((ws, entry.id)))

        processed = await worker.run_once()

        assert processed == 3
        assert sorted(sender.sent) == sorted(e.id for e in entries)
        assert sorted(delivered) == sorted((workspace_id, e.id) for e in entries)
        assert (await service.get_stats(workspace_id)).total == 0
        assert registry.get_sample_value(
            "email_queue_sent_total", {"workspace_id": workspace_id}
        ) == 3

    async def test_retryable_failure_schedules_backoff(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        clock,
    ):
        """Test that a failed send waits 1 then 2 minutes between attempts."""
        entry = make_entry()
        await service.enqueue(workspace_id, [entry])
        failures: list[tuple[str, bool]] = []

        async def on_failed(ws, failed_entry, error, permanent):
            failures.append((str(error), permanent))

        sender = FakeSender([SendError("smtp timeout"), SendError("smtp timeout")])
        worker = make_worker(sender)
        worker.set_callbacks(on_failed=on_failed)

        await worker.run_once()

        stored = await service.get(workspace_id, entry.id)
        assert stored.status == "failed"
        assert stored.attempts == 1
        assert stored.last_error == "smtp timeout"
        assert stored.next_retry_at == clock.now + timedelta(minutes=1)
        assert failures == [("smtp timeout", False)]

        # Not eligible before the retry time
        assert await worker.run_once() == 0

        clock.advance(minutes=1)
        await worker.run_once()

        stored = await service.get(workspace_id, entry.id)
        assert stored.attempts == 2
        assert stored.next_retry_at == clock.now + timedelta(minutes=2)
        assert sender.calls == 2

    async def test_exhausted_attempts_delete_entry(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        registry: CollectorRegistry,
    ):
        """Test that the last failed attempt removes the entry."""
        entry = make_entry(max_attempts=1)
        await service.enqueue(workspace_id, [entry])
        failures: list[bool] = []

        worker = make_worker(FakeSender([SendError("smtp timeout")]))
        worker.set_callbacks(on_failed=lambda ws, e, error, permanent: failures.append(permanent))

        await worker.run_once()

        assert await service.get(workspace_id, entry.id) is None
        assert failures == [True]
        assert registry.get_sample_value(
            "email_queue_failed_total", {"workspace_id": workspace_id, "permanent": "true"}
        ) == 1

    async def test_non_retryable_failure_deletes_entry(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
    ):
        """Test that a hard failure is not retried even with attempts left."""
        entry = make_entry(max_attempts=3)
        await service.enqueue(workspace_id, [entry])

        worker = make_worker(
            FakeSender([SendError("hard bounce", retryable=False, provider_error=False)])
        )
        await worker.run_once()

        assert await service.get(workspace_id, entry.id) is None

    async def test_open_circuit_reschedules_without_attempt(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        clock,
        registry: CollectorRegistry,
    ):
        """Test that an open circuit defers entries without burning attempts."""
        breaker = IntegrationCircuitBreaker(
            threshold=1, cooldown=timedelta(minutes=1), clock=clock
        )
        first = make_entry(integration_id="integration-1")
        await service.enqueue(workspace_id, [first])

        sender = FakeSender([SendError("503 unavailable")])
        worker = make_worker(sender, circuit_breaker=breaker)
        await worker.run_once()
        assert breaker.is_open("integration-1") is True

        second = make_entry(integration_id="integration-1")
        await service.enqueue(workspace_id, [second])
        await worker.run_once()

        stored = await service.get(workspace_id, second.id)
        assert stored.status == "pending"
        assert stored.attempts == 0
        assert stored.next_retry_at == clock.now + timedelta(minutes=1)
        assert sender.calls == 1
        assert registry.get_sample_value(
            "email_queue_rescheduled_total",
            {"workspace_id": workspace_id, "integration_id": "integration-1"},
        ) == 1

        # Cooldown over: the probe goes through and closes the circuit
        clock.advance(minutes=1)
        await worker.run_once()

        assert sorted(sender.sent) == sorted([first.id, second.id])
        assert breaker.is_open("integration-1") is False

    async def test_lost_race_skips_entry(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
        monkeypatch,
    ):
        """Test that an entry claimed elsewhere is neither sent nor modified."""
        entry = make_entry()
        await service.enqueue(workspace_id, [entry])

        async def lose_race(ws: str, entry_id: str) -> None:
            return None

        monkeypatch.setattr(service, "mark_as_processing", lose_race)
        worker = make_worker(sender)

        await worker.run_once()

        assert sender.calls == 0
        stored = await service.get(workspace_id, entry.id)
        assert stored.status == "pending"
        assert stored.attempts == 0

    async def test_failing_workspace_does_not_stop_others(
        self,
        async_engine,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
        clock,
        metrics,
    ):
        """Test that one unreachable workspace is isolated."""
        resolver = PartiallyReachableResolver(
            StaticConnectionResolver(async_engine), down={"ws-down"}
        )
        service = EmailQueueService(resolver, clock=clock, metrics=metrics)
        await service.enqueue(workspace_id, [make_entry()])

        async def list_workspaces() -> list[str]:
            return ["ws-down", workspace_id]

        worker = make_worker(sender, service=service, workspace_lister=list_workspaces)

        assert await worker.run_once() == 1
        assert len(sender.sent) == 1

    @pytest.mark.parametrize(
        ("rate", "expected"),
        [(60, 45), (1, 1), (0, 1), (100_000, 50)],
    )
    def test_effective_batch_size(self, make_worker, sender, workspace_id, rate, expected):
        """Test that the batch fits 45 seconds of the slowest integration."""
        worker = make_worker(sender, rate_limit_lookup=lambda ws: rate)

        assert worker.effective_batch_size(workspace_id) == expected

    async def test_stale_fetch_uses_claimed_attempts(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        clock,
    ):
        """Test that exhaustion is judged on the claimed row, not the fetched one."""
        entry = make_entry(max_attempts=3)
        await service.enqueue(workspace_id, [entry])
        [stale] = await service.fetch_pending(workspace_id, 10)
        assert stale.attempts == 0

        # Another worker claims and fails the entry twice meanwhile
        for _ in range(2):
            assert await service.mark_as_processing(workspace_id, entry.id) is not None
            await service.mark_as_failed(workspace_id, entry.id, "smtp timeout", clock.now)

        failures: list[bool] = []
        worker = make_worker(FakeSender([SendError("smtp timeout")]))
        worker.set_callbacks(on_failed=lambda ws, e, error, permanent: failures.append(permanent))

        await worker._process_entry(workspace_id, stale)

        assert await service.get(workspace_id, entry.id) is None
        assert failures == [True]
        assert (await service.get_stats(workspace_id)).failed == 0

    async def test_fetch_deadline_isolates_workspace(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
        monkeypatch,
        caplog,
    ):
        """Test that a fetch exceeding its deadline fails only its workspace."""
        await service.enqueue(workspace_id, [make_entry()])
        fetch_pending = service.fetch_pending

        async def slow_fetch(ws: str, limit: int):
            if ws == "ws-slow":
                await asyncio.sleep(10)
            return await fetch_pending(ws, limit)

        monkeypatch.setattr(service, "fetch_pending", slow_fetch)
        caplog.set_level(logging.ERROR, logger="mailqueue.worker.main")

        async def only_slow() -> list[str]:
            return ["ws-slow"]

        worker = make_worker(sender, workspace_lister=only_slow, fetch_timeout=0.05)
        assert await worker.run_once() == 0

        failed = [r for r in caplog.records if r.getMessage() == "Failed to process workspace"]
        assert [r.workspace_id for r in failed] == ["ws-slow"]

        async def both() -> list[str]:
            return ["ws-slow", workspace_id]

        worker = make_worker(sender, workspace_lister=both, fetch_timeout=0.05)
        assert await worker.run_once() == 1
        assert len(sender.sent) == 1

    async def test_open_circuit_leaves_in_flight_entry(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
        clock,
        registry: CollectorRegistry,
    ):
        """Test that an open circuit does not release another worker's claim."""
        breaker = IntegrationCircuitBreaker(
            threshold=1, cooldown=timedelta(minutes=1), clock=clock
        )
        breaker.record_failure("integration-1", SendError("503 unavailable"))

        entry = make_entry(integration_id="integration-1")
        await service.enqueue(workspace_id, [entry])
        [stale] = await service.fetch_pending(workspace_id, 10)
        await service.mark_as_processing(workspace_id, entry.id)

        worker = make_worker(sender, circuit_breaker=breaker)
        await worker._process_entry(workspace_id, stale)

        stored = await service.get(workspace_id, entry.id)
        assert stored.status == "processing"
        assert stored.next_retry_at is None
        assert sender.calls == 0
        assert registry.get_sample_value(
            "email_queue_rescheduled_total",
            {"workspace_id": workspace_id, "integration_id": "integration-1"},
        ) is None

    async def test_callback_error_does_not_abort_batch(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
    ):
        """Test that a raising callback is logged and the batch completes."""
        entries = [make_entry() for _ in range(3)]
        await service.enqueue(workspace_id, entries)

        def on_sent(ws, entry):
            raise RuntimeError("progress tracker down")

        worker = make_worker(sender)
        worker.set_callbacks(on_sent=on_sent)

        assert await worker.run_once() == 3
        assert sorted(sender.sent) == sorted(e.id for e in entries)
        assert (await service.get_stats(workspace_id)).total == 0

    async def test_start_and_stop(
        self,
        service: EmailQueueService,
        workspace_id: str,
        make_entry,
        make_worker,
        sender: FakeSender,
    ):
        """Test the polling loop drains the queue and stops on request."""
        await service.enqueue(workspace_id, [make_entry() for _ in range(2)])
        worker = make_worker(sender)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if len(sender.sent) == 2:
                break
            await asyncio.sleep(0.01)

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert len(sender.sent) == 2
        assert worker.is_running is False
