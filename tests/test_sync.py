"""
Tests for sync orchestration and the periodic runner.
"""

import asyncio
from datetime import timedelta

import aiosqlite
import pytest

from backoffice.db import OrderFilter, ReconcileMode, StoredOrder, SyncKind, SyncRunStatus
from backoffice.processor import (
    OrderSyncService,
    SyncInProgressError,
    SyncScheduler,
    SyncStage,
)
from backoffice.processor.runner import JOB_ID
from backoffice.salesdrive import (
    QueryCache,
    RateLimiter,
    SalesDriveCircuitOpenError,
    SalesDriveUnavailableError,
)


def make_service(db, client, fixed_now, sleeper, **kwargs):
    return OrderSyncService(db, client, clock=lambda: fixed_now, sleep=sleeper, **kwargs)


def blocking_client(fake_client, orders):
    """A fake client whose list_orders waits until ``gate`` is set."""

    class BlockingClient(fake_client):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.gate = asyncio.Event()

        async def list_orders(self, *args, **kwargs):
            self.calls.append(args)
            await self.gate.wait()
            self.calls.pop()
            return await super().list_orders(*args, **kwargs)

    return BlockingClient(orders)


async def wait_for_call(client, attempts=200):
    for _ in range(attempts):
        if client.calls:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("client was never called")


class TestScheduledSync:

    @pytest.mark.asyncio
    async def test_first_run_creates_and_persists(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(i) for i in range(1, 6)])
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_scheduled()

        assert result.success
        assert result.run.status == SyncRunStatus.SUCCESS
        assert result.run.created_count == 5
        assert result.run.kind == SyncKind.SCHEDULED
        assert result.run.filter_kind == OrderFilter.UPDATE_AT
        assert result.run.window_start == fixed_now - timedelta(hours=24)
        assert client.calls[0][2] == OrderFilter.UPDATE_AT
        assert [r.id for r in await db.get_sync_runs()] == [result.run.id]

    @pytest.mark.asyncio
    async def test_second_run_skips_unchanged_orders(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(i) for i in range(1, 6)])
        service = make_service(db, client, fixed_now, sleeper)

        await service.run_scheduled()
        second = await service.run_scheduled()

        assert second.run.skipped_count == 5
        assert second.run.created_count == 0
        assert second.run.updated_count == 0
        # last sync finished moments ago, so the update window is 4 hours
        assert second.run.window_start == fixed_now - timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_update_filter_failure_falls_back_to_order_time(
        self, db, raw_order, fake_client, fixed_now, sleeper
    ):
        client = fake_client(
            [raw_order(1)],
            failures={(OrderFilter.UPDATE_AT, 1): SalesDriveUnavailableError("502")},
        )
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_scheduled()

        assert result.run.status == SyncRunStatus.SUCCESS
        assert result.run.filter_kind == OrderFilter.ORDER_TIME
        assert result.run.details["filter_fallback"] is True
        assert [call[2] for call in client.calls] == [OrderFilter.UPDATE_AT, OrderFilter.ORDER_TIME]

    @pytest.mark.asyncio
    async def test_open_circuit_fails_without_fallback(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)], failures={1: SalesDriveCircuitOpenError("open")})
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_scheduled()

        assert not result.success
        assert result.run.error_count == 1
        assert result.run.details["error_type"] == "SalesDriveCircuitOpenError"
        assert client.pages_requested == [1]
        assert (await db.get_sync_runs())[0].status == SyncRunStatus.FAILED

    @pytest.mark.asyncio
    async def test_unconfigured_client_records_failed_run(self, db, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([], configured=False), fixed_now, sleeper)

        result = await service.run_scheduled()

        assert result.run.status == SyncRunStatus.FAILED
        assert "not configured" in result.run.error_message
        assert len(await db.get_sync_runs()) == 1

    @pytest.mark.asyncio
    async def test_failed_page_makes_run_partial(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client(
            [raw_order(i) for i in range(1, 201)],
            failures={2: SalesDriveUnavailableError("502")},
        )
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_scheduled()

        assert result.run.status == SyncRunStatus.PARTIAL
        assert result.run.created_count == 100
        assert result.run.details["failed_pages"] == [2]

    @pytest.mark.asyncio
    async def test_stored_settings_are_applied(self, db, raw_order, fake_client, fixed_now, sleeper):
        await db.set_setting("orders", {"batch_size": 2, "filter_type": "orderTime"})
        client = fake_client([raw_order(i) for i in range(1, 6)])
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_scheduled()

        assert client.pages_requested == [1, 2, 3]
        assert result.run.filter_kind == OrderFilter.ORDER_TIME
        assert result.run.details["filter_fallback"] is False

    @pytest.mark.asyncio
    async def test_concurrent_request_is_rejected(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = blocking_client(fake_client, [raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper)

        task = asyncio.create_task(service.run_scheduled())
        await wait_for_call(client)

        assert service.is_running
        with pytest.raises(SyncInProgressError):
            await service.run_manual("2026-03-01")
        with pytest.raises(SyncInProgressError):
            await service.run_scheduled()

        client.gate.set()
        result = await task

        assert result.success
        assert len(await db.get_sync_runs()) == 1

    @pytest.mark.asyncio
    async def test_history_write_failure_keeps_result(self, db, raw_order, fake_client, fixed_now, sleeper):
        async def locked(run):
            raise aiosqlite.OperationalError("database is locked")

        db.create_sync_run = locked
        service = make_service(db, fake_client([raw_order(1)]), fixed_now, sleeper)

        result = await service.run_scheduled()

        assert result.success
        assert result.run.created_count == 1
        assert not service.is_running


class TestLastSyncTime:

    @pytest.mark.asyncio
    async def test_none_without_history(self, db, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([]), fixed_now, sleeper)

        assert await service.last_sync_time() is None

    @pytest.mark.asyncio
    async def test_falls_back_to_last_synced_order(self, db, fake_client, fixed_now, sleeper):
        synced = fixed_now - timedelta(days=2)
        await db.create_order(StoredOrder(external_id="EXT-1", last_synced=synced))
        service = make_service(db, fake_client([]), fixed_now, sleeper)

        assert await service.last_sync_time() == synced

    @pytest.mark.asyncio
    async def test_failed_runs_do_not_count(self, db, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([], configured=False), fixed_now, sleeper)
        await service.run_scheduled()

        assert await service.last_sync_time() is None


class TestBreakerCooldown:

    @pytest.mark.asyncio
    async def test_open_circuit_run_starts_cooldown(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)], failures={1: SalesDriveCircuitOpenError("open")})
        service = make_service(db, client, fixed_now, sleeper)
        result = await service.run_scheduled()

        until = await service.breaker_cooldown_until()

        assert until == result.run.finished_at + timedelta(seconds=RateLimiter.COOLDOWN_SECONDS)

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)], failures={1: SalesDriveCircuitOpenError("open")})
        await make_service(db, client, fixed_now, sleeper).run_scheduled()

        later = fixed_now + timedelta(seconds=RateLimiter.COOLDOWN_SECONDS + 60)
        service = make_service(db, fake_client([]), later, sleeper)

        assert await service.breaker_cooldown_until() is None

    @pytest.mark.asyncio
    async def test_other_failures_do_not_block(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)], failures={
            (OrderFilter.UPDATE_AT, 1): SalesDriveUnavailableError("502"),
            (OrderFilter.ORDER_TIME, 1): SalesDriveUnavailableError("502"),
        })
        service = make_service(db, client, fixed_now, sleeper)
        result = await service.run_scheduled()

        assert not result.success
        assert await service.breaker_cooldown_until() is None

    @pytest.mark.asyncio
    async def test_no_history(self, db, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([]), fixed_now, sleeper)

        assert await service.breaker_cooldown_until() is None


class TestManualSync:

    @pytest.mark.asyncio
    async def test_chunks_are_processed_in_order(self, db, raw_order, fake_client, fixed_now, sleeper):
        updates = []
        client = fake_client([raw_order(i) for i in range(1, 6)])
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_manual("2026-03-01", chunk_size=2, on_progress=updates.append)

        assert result.run.kind == SyncKind.MANUAL
        assert result.run.mode == ReconcileMode.FORCE
        assert result.run.created_count == 5
        assert result.run.details["chunks"] == 3
        assert [u.stage for u in updates] == (
            [SyncStage.FETCHING]
            + [SyncStage.PROCESSING, SyncStage.SAVING] * 3
            + [SyncStage.COMPLETED]
        )
        assert [u.processed_count for u in updates if u.stage == SyncStage.SAVING] == [2, 4, 5]
        assert service.progress.stage == SyncStage.COMPLETED
        assert client.calls[0][2] == OrderFilter.ORDER_TIME

    @pytest.mark.asyncio
    async def test_window_comes_from_operator_input(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_manual("2026-03-01", "2026-03-05")

        window = client.calls[0][3]
        assert window.start.isoformat() == "2026-03-01T00:00:00+00:00"
        assert window.end.isoformat() == "2026-03-06T00:00:00+00:00"
        assert result.run.window_end == window.end

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, db, raw_order, fake_client, fixed_now, sleeper):
        stages = []

        async def on_progress(update):
            stages.append(update.stage)

        service = make_service(db, fake_client([raw_order(1)]), fixed_now, sleeper)
        await service.run_manual("2026-03-01", on_progress=on_progress)

        assert stages[-1] == SyncStage.COMPLETED

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_sync(self, db, raw_order, fake_client, fixed_now, sleeper):
        def on_progress(update):
            raise RuntimeError("ui went away")

        service = make_service(db, fake_client([raw_order(1)]), fixed_now, sleeper)
        result = await service.run_manual("2026-03-01", on_progress=on_progress)

        assert result.success
        assert result.run.created_count == 1

    @pytest.mark.asyncio
    async def test_smart_mode_skips_unchanged(self, db, raw_order, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([raw_order(i) for i in range(1, 4)]), fixed_now, sleeper)
        await service.run_manual("2026-03-01")

        result = await service.run_manual("2026-03-01", mode=ReconcileMode.SMART)

        assert result.run.skipped_count == 3

    @pytest.mark.asyncio
    async def test_invalid_start_is_a_failed_run(self, db, fake_client, fixed_now, sleeper):
        updates = []
        client = fake_client([])
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_manual("not a date", on_progress=updates.append)

        assert not result.success
        assert result.run.error_count >= 1
        assert len(result.records) == 1
        assert result.records[0].error
        assert updates[-1].stage == SyncStage.ERROR
        assert client.calls == []
        assert len(await db.get_sync_runs()) == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_is_a_failed_run(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = fake_client([raw_order(1)], failures={1: SalesDriveUnavailableError("SalesDrive down")})
        service = make_service(db, client, fixed_now, sleeper)

        result = await service.run_manual("2026-03-01")

        assert result.run.status == SyncRunStatus.FAILED
        assert "SalesDrive down" in result.run.error_message
        assert result.run.details["processed_before_failure"]["created"] == 0
        assert len(result.records) == 1

    @pytest.mark.asyncio
    async def test_cancellation_records_run_and_propagates(
        self, db, raw_order, fake_client, fixed_now, sleeper
    ):
        client = blocking_client(fake_client, [raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper)

        task = asyncio.create_task(service.run_manual("2026-03-01"))
        await wait_for_call(client)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        [run] = await db.get_sync_runs()
        assert run.status == SyncRunStatus.FAILED
        assert run.error_message == "cancelled"
        assert service.progress.stage == SyncStage.ERROR
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_history_write_failure_keeps_result(self, db, raw_order, fake_client, fixed_now, sleeper):
        async def locked(run):
            raise aiosqlite.OperationalError("database is locked")

        updates = []
        db.create_sync_run = locked
        service = make_service(db, fake_client([raw_order(1)]), fixed_now, sleeper)

        result = await service.run_manual("2026-03-01", on_progress=updates.append)

        assert result.success
        assert result.run.created_count == 1
        assert updates[-1].stage == SyncStage.COMPLETED
        assert await db.get_order("EXT-1") is not None
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_history_write_failure_after_failed_run(self, db, fake_client, fixed_now, sleeper):
        async def locked(run):
            raise aiosqlite.OperationalError("database is locked")

        db.create_sync_run = locked
        service = make_service(db, fake_client([]), fixed_now, sleeper)

        result = await service.run_manual("not a date")

        assert not result.success
        assert len(result.records) == 1
        assert service.progress.stage == SyncStage.ERROR


class TestPreview:

    @pytest.mark.asyncio
    async def test_preview_classifies_without_writing(self, db, raw_order, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([raw_order(1), raw_order(2)]), fixed_now, sleeper)
        await service.run_manual("2026-03-01")
        service.client = fake_client([raw_order(1), raw_order(2, statusId=4), raw_order(3)])

        preview = await service.preview("2026-03-01")

        assert preview["stats"] == {"new": 1, "update": 1, "skip": 1, "errors": 0}
        assert preview["total_from_salesdrive"] == 3
        assert await db.count_orders() == 2

    @pytest.mark.asyncio
    async def test_repeated_preview_uses_cache(self, db, raw_order, fake_client, fixed_now, sleeper, clock):
        client = fake_client([raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper, cache=QueryCache(clock=clock))

        await service.preview("2026-03-01", "2026-03-10")
        await service.preview("2026-03-01", "2026-03-10")

        assert client.pages_requested == [1]


class TestScheduler:

    @pytest.mark.asyncio
    async def test_run_once_returns_result(self, db, raw_order, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([raw_order(1)]), fixed_now, sleeper)

        result = await SyncScheduler(service).run_once()

        assert result.run.created_count == 1

    @pytest.mark.asyncio
    async def test_run_once_returns_failed_result(self, db, fake_client, fixed_now, sleeper):
        service = make_service(db, fake_client([], configured=False), fixed_now, sleeper)

        result = await SyncScheduler(service).run_once()

        assert not result.success

    @pytest.mark.asyncio
    async def test_tick_is_skipped_while_sync_runs(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = blocking_client(fake_client, [raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper)
        task = asyncio.create_task(service.run_manual("2026-03-01"))
        await wait_for_call(client)

        assert await SyncScheduler(service).run_once() is None

        client.gate.set()
        await task

    @pytest.mark.asyncio
    async def test_timeout_cancels_the_run(self, db, raw_order, fake_client, fixed_now, sleeper):
        client = blocking_client(fake_client, [raw_order(1)])
        service = make_service(db, client, fixed_now, sleeper)

        result = await SyncScheduler(service, timeout_seconds=0.05).run_once()

        assert result is None
        [run] = await db.get_sync_runs()
        assert run.error_message == "cancelled"
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_start_and_stop(self, db, fake_client, fixed_now, sleeper):
        scheduler = SyncScheduler(make_service(db, fake_client([]), fixed_now, sleeper), interval_minutes=60)

        scheduler.start()
        assert scheduler.is_active

        job = scheduler.scheduler.get_job(JOB_ID)
        assert job.func == scheduler.run_once
        assert job.trigger.interval == timedelta(minutes=60)
        assert job.max_instances == 1
        assert job.coalesce is True
        assert scheduler.next_run_time() is not None

        await scheduler.stop()
        assert not scheduler.is_active
        assert scheduler.next_run_time() is None

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_job(self, db, fake_client, fixed_now, sleeper):
        scheduler = SyncScheduler(make_service(db, fake_client([]), fixed_now, sleeper))

        scheduler.start()
        first = scheduler.scheduler
        scheduler.start()

        assert scheduler.scheduler is first
        assert len(first.get_jobs()) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, db, fake_client, fixed_now, sleeper):
        scheduler = SyncScheduler(make_service(db, fake_client([]), fixed_now, sleeper))

        await scheduler.stop()

        assert not scheduler.is_active
