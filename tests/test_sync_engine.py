"""Tests for change-log replication between devices."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import test_utils
from sqlalchemy.exc import OperationalError

from posvault.backup.repository import InMemoryRepository
from posvault.context import build_context
from posvault.errors import RemoteError
from posvault.observability.metrics import MetricsCollector
from posvault.sync.change_log import ChangeLog
from posvault.sync.engine import APPLIED, DUPLICATE, SKIPPED, SyncEngine
from posvault.sync.models import ChangeEvent, Operation, SyncStatus
from posvault.sync.remote import InMemoryChangeLog, SupabaseChangeLog
from posvault.utils.gate import StoreGate
from posvault.utils.idempotency import EPOCH, generate_uuid7, utc_now

from tests.support import (
    SUPABASE_TEST_KEY,
    create_app_schema,
    make_settings,
    postgrest_app,
    seed,
)


@pytest.fixture
def remote():
    return InMemoryChangeLog()


@pytest_asyncio.fixture
async def make_device(tmp_path, remote):
    """Open one context per simulated device, all sharing *remote*."""
    opened = []

    async def _make(device_id, remote_log=None, **overrides):
        values = {"device_id": device_id, "sync_interval_seconds": 3600, **overrides}
        settings = make_settings(tmp_path, name=f"{device_id or 'generated'}.db", **values)
        ctx = build_context(
            settings,
            repository=InMemoryRepository(),
            remote=remote_log or remote,
            metrics=MetricsCollector(),
        )
        await ctx.open()
        await create_app_schema(ctx.store)
        opened.append(ctx)
        return ctx

    yield _make
    for ctx in opened:
        await ctx.close()


@pytest_asyncio.fixture
async def capped_postgrest():
    """PostgREST server that returns at most two rows per response."""
    state = {"rows": {}, "max_rows": 2}
    server = test_utils.TestServer(postgrest_app(state))
    await server.start_server()
    yield str(server.make_url("")), state
    await server.close()


async def _names(ctx):
    return {r["id"]: r["name"] for r in await ctx.store.read_all("categories")}


async def _insert_category(ctx, row):
    """Write a row and log it in the same transaction, as the host app does."""
    async with ctx.store.transaction() as conn:
        await ctx.store.insert("categories", row, conn)
        return await ctx.sync.log_change("categories", "INSERT", row["id"], row, conn=conn)


class TestCapture:

    @pytest.mark.asyncio
    async def test_changes_captured_while_disabled_are_pushed_later(self, make_device, remote):
        a = await make_device("device_a")
        assert not a.sync.enabled

        event = await _insert_category(a, {"id": 1, "name": "Drinks"})
        assert event is not None
        assert await a.sync.pending_count() == 1

        report = await a.sync.sync_with_remote()
        assert report.status == SyncStatus.SKIPPED
        assert report.reason == "sync disabled"
        assert remote.rows == {}

        await a.sync.enable_sync()
        report = await a.sync.sync_with_remote()
        assert report.pushed == 1
        assert event.id in remote.rows
        assert await a.sync.pending_count() == 0

    @pytest.mark.asyncio
    async def test_strict_mode_drops_changes_while_disabled(self, make_device):
        a = await make_device("device_a", capture_changes_while_disabled=False)
        assert await a.sync.log_change("categories", "INSERT", 1, {"id": 1}) is None
        assert await a.change_log.list_events() == []

        await a.sync.enable_sync()
        assert await a.sync.log_change("categories", "INSERT", 1, {"id": 1}) is not None

    @pytest.mark.asyncio
    async def test_event_fields(self, make_device):
        a = await make_device("device_a")
        before = utc_now()
        event = await a.sync.log_change(
            "inventory_items", Operation.UPDATE, "SKU001", {"quantity": 3},
        )
        assert event.origin_device_id == "device_a"
        assert event.synced is False
        assert event.timestamp >= before
        assert event.record_id == "SKU001"

    @pytest.mark.asyncio
    async def test_own_timestamps_strictly_increase(self, make_device):
        a = await make_device("device_a")
        events = [await a.sync.log_change("categories", "UPDATE", 1, {"name": str(i)}) for i in range(20)]
        stamps = [e.timestamp for e in events]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    @pytest.mark.asyncio
    async def test_log_rolls_back_with_caller_transaction(self, make_device):
        a = await make_device("device_a")
        with pytest.raises(RuntimeError):
            async with a.store.transaction() as conn:
                await a.sync.log_change("categories", "DELETE", 1, conn=conn)
                raise RuntimeError("abort")
        assert await a.sync.pending_count() == 0


class TestReplication:

    @pytest.mark.asyncio
    async def test_insert_update_delete_reach_other_device(self, make_device):
        a = await make_device("device_a")
        b = await make_device("device_b")
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.sync_with_remote()
        report = await b.sync.sync_with_remote()
        assert report.status == SyncStatus.SUCCESS
        assert (report.pulled, report.applied) == (1, 1)
        assert await _names(b) == {1: "Drinks"}

        await a.sync.log_change("categories", "UPDATE", 1, {"name": "Beverages"})
        await a.sync.sync_with_remote()
        await b.sync.sync_with_remote()
        assert await _names(b) == {1: "Beverages"}

        await a.sync.log_change("categories", "DELETE", 1)
        await a.sync.sync_with_remote()
        await b.sync.sync_with_remote()
        assert await _names(b) == {}

    @pytest.mark.asyncio
    async def test_applied_events_are_logged_but_not_pushed_back(self, make_device, remote):
        a = await make_device("device_a")
        b = await make_device("device_b")
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        event = await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.sync_with_remote()
        await b.sync.sync_with_remote()

        logged = await b.change_log.get(event.id)
        assert logged.synced is True
        assert logged.origin_device_id == "device_a"
        assert await b.sync.pending_count() == 0
        assert len(remote.rows) == 1

    @pytest.mark.asyncio
    async def test_own_events_are_not_pulled(self, make_device):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        await _insert_category(a, {"id": 1, "name": "Drinks"})
        report = await a.sync.sync_with_remote()
        assert report.pushed == 1
        assert report.pulled == 0

    @pytest.mark.asyncio
    async def test_last_applied_wins(self, make_device):
        a = await make_device("device_a")
        b = await make_device("device_b")
        c = await make_device("device_c")
        for ctx in (a, b, c):
            await seed(ctx.store, "categories", [{"id": 1, "name": "Original"}])
            await ctx.sync.enable_sync()

        await a.sync.log_change("categories", "UPDATE", 1, {"name": "from A"})
        await asyncio.sleep(0.001)
        await b.sync.log_change("categories", "UPDATE", 1, {"name": "from B"})
        await b.sync.sync_with_remote()
        await a.sync.sync_with_remote()

        report = await c.sync.sync_with_remote()
        assert report.applied == 2
        assert await _names(c) == {1: "from B"}

    @pytest.mark.asyncio
    async def test_failed_apply_is_counted_and_not_logged(self, make_device):
        a = await make_device("device_a")
        b = await make_device("device_b")
        await seed(b.store, "categories", [{"id": 1, "name": "Already here"}])
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        event = await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.sync_with_remote()
        report = await b.sync.sync_with_remote()

        assert report.apply_failed == 1
        assert report.status == SyncStatus.PARTIAL
        assert await b.change_log.exists(event.id) is False
        assert await _names(b) == {1: "Already here"}

    @pytest.mark.asyncio
    async def test_out_of_range_value_does_not_stall_sync(self, make_device):
        a = await make_device("device_a")
        b = await make_device("device_b")
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        huge = await a.sync.log_change(
            "inventory_items", "INSERT", "big", {"id": "big", "name": "Huge", "quantity": 10**20},
        )
        await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.sync_with_remote()

        report = await b.sync.sync_with_remote()
        assert report.pulled == 2
        assert report.applied == 1
        assert report.apply_failed == 1
        assert report.status == SyncStatus.PARTIAL
        assert report.watermark_advanced
        assert any(huge.id in error for error in report.errors)
        assert await _names(b) == {1: "Drinks"}
        assert await b.store.read_all("inventory_items") == []

        report = await b.sync.sync_with_remote()
        assert report.pulled == 0
        assert report.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_mark_synced_failure_still_returns_report(self, make_device, remote):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        event = await _insert_category(a, {"id": 1, "name": "Drinks"})

        failing = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("database is locked")))
        with patch.object(a.change_log, "mark_synced", failing):
            report = await a.sync.sync_with_remote()

        assert report.push_failed == 1
        assert report.pushed == 0
        assert report.status == SyncStatus.PARTIAL
        assert not report.watermark_advanced
        assert event.id in remote.rows
        assert await a.sync.pending_count() == 1

        report = await a.sync.sync_with_remote()
        assert report.pushed == 1
        assert len(remote.rows) == 1
        assert await a.sync.pending_count() == 0

    @pytest.mark.asyncio
    async def test_pull_reads_past_server_row_cap(self, make_device, capped_postgrest):
        url, state = capped_postgrest
        a = await make_device("device_a", remote_log=SupabaseChangeLog(url, SUPABASE_TEST_KEY))
        b = await make_device("device_b", remote_log=SupabaseChangeLog(url, SUPABASE_TEST_KEY))
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        for i in range(1, 4):
            await _insert_category(a, {"id": i, "name": f"c{i}"})
        assert (await a.sync.sync_with_remote()).pushed == 3
        assert len(state["rows"]) == 3

        report = await b.sync.sync_with_remote()
        assert report.pulled == 3
        assert report.applied == 3
        assert report.watermark_advanced
        assert await _names(b) == {1: "c1", 2: "c2", 3: "c3"}


class TestApplyRemoteEvent:

    def _remote_event(self, **overrides):
        values = dict(
            id=generate_uuid7(),
            table_name="categories",
            operation=Operation.INSERT,
            record_id="5",
            payload={"id": 5, "name": "Snacks"},
            timestamp=utc_now(),
            origin_device_id="device_z",
            synced=True,
        )
        values.update(overrides)
        return ChangeEvent(**values)

    @pytest.mark.asyncio
    async def test_applied_at_most_once(self, make_device):
        a = await make_device("device_a")
        event = self._remote_event()
        assert await a.sync.apply_remote_event(event) == APPLIED
        assert await a.sync.apply_remote_event(event) == DUPLICATE
        assert await _names(a) == {5: "Snacks"}

    @pytest.mark.asyncio
    async def test_unknown_table_is_skipped(self, make_device):
        a = await make_device("device_a")
        event = self._remote_event(table_name="loyalty_points")
        assert await a.sync.apply_remote_event(event) == SKIPPED
        assert await a.change_log.exists(event.id) is False

    @pytest.mark.asyncio
    async def test_bookkeeping_table_is_skipped(self, make_device):
        a = await make_device("device_a")
        event = self._remote_event(table_name="app_state", payload={"key": "x", "value": "y"})
        assert await a.sync.apply_remote_event(event) == SKIPPED

    @pytest.mark.asyncio
    async def test_custom_key_column(self, make_device):
        a = await make_device("device_a", key_columns={"users": "username"})
        await seed(a.store, "users", [{"username": "kasir", "role": "cashier"}])
        event = self._remote_event(
            table_name="users", operation=Operation.UPDATE,
            record_id="kasir", payload={"role": "supervisor"},
        )
        assert await a.sync.apply_remote_event(event) == APPLIED
        assert (await a.store.read_all("users"))[0]["role"] == "supervisor"

    @pytest.mark.asyncio
    async def test_update_of_missing_row_is_still_applied(self, make_device):
        a = await make_device("device_a")
        event = self._remote_event(operation=Operation.UPDATE, payload={"name": "X"})
        assert await a.sync.apply_remote_event(event) == APPLIED
        assert await a.change_log.exists(event.id)

    @pytest.mark.asyncio
    async def test_redelivery_counts_as_duplicate(self, make_device):
        a = await make_device("device_a")
        b = await make_device("device_b", sync_pull_lookback_seconds=3600)
        await a.sync.enable_sync()
        await b.sync.enable_sync()

        await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.sync_with_remote()
        first = await b.sync.sync_with_remote()
        second = await b.sync.sync_with_remote()

        assert first.applied == 1
        assert (second.pulled, second.applied, second.already_applied) == (1, 0, 1)
        assert await _names(b) == {1: "Drinks"}


class TestWatermark:

    @pytest.mark.asyncio
    async def test_advances_after_clean_cycle(self, make_device):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        before = utc_now()
        report = await a.sync.sync_with_remote()
        assert report.watermark_advanced
        assert a.sync.watermark >= before
        assert report.watermark == a.sync.watermark

    @pytest.mark.asyncio
    async def test_pull_failure_keeps_watermark(self, make_device, remote):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        await _insert_category(a, {"id": 1, "name": "Drinks"})

        with patch.object(remote, "fetch_since", AsyncMock(side_effect=RemoteError("timeout"))):
            report = await a.sync.sync_with_remote()

        assert report.status == SyncStatus.PARTIAL
        assert report.pushed == 1
        assert not report.watermark_advanced
        assert a.sync.watermark == EPOCH

    @pytest.mark.asyncio
    async def test_push_failure_keeps_watermark_and_event(self, make_device, remote):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        await _insert_category(a, {"id": 1, "name": "Drinks"})

        with patch.object(remote, "upsert", AsyncMock(side_effect=RemoteError("offline"))):
            report = await a.sync.sync_with_remote()

        assert report.push_failed == 1
        assert report.status == SyncStatus.PARTIAL
        assert a.sync.watermark == EPOCH
        assert await a.sync.pending_count() == 1

        report = await a.sync.sync_with_remote()
        assert report.pushed == 1
        assert report.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_total_failure(self, make_device, remote):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        await _insert_category(a, {"id": 1, "name": "Drinks"})
        with patch.object(remote, "upsert", AsyncMock(side_effect=RemoteError("offline"))), \
                patch.object(remote, "fetch_since", AsyncMock(side_effect=RemoteError("offline"))):
            report = await a.sync.sync_with_remote()
        assert report.status == SyncStatus.FAILED
        assert len(report.errors) == 2
        assert a.metrics.sample("posvault_sync_cycles_total", {"status": "failed"}) == 1.0

    @pytest.mark.asyncio
    async def test_lookback_widens_pull_window(self, make_device, remote):
        a = await make_device("device_a", sync_pull_lookback_seconds=60)
        await a.sync.enable_sync()
        await a.sync.sync_with_remote()
        watermark = a.sync.watermark

        fetch = AsyncMock(return_value=[])
        with patch.object(remote, "fetch_since", fetch):
            await a.sync.sync_with_remote()
        since, device = fetch.await_args.args
        assert (watermark - since).total_seconds() == 60
        assert device == "device_a"


class TestCycleGuards:

    @pytest.mark.asyncio
    async def test_skipped_while_restore_holds_store(self, make_device):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        async with a.gate.exclusive("restore:latest"):
            report = await a.sync.sync_with_remote()
        assert report.status == SyncStatus.SKIPPED
        assert "restore:latest" in report.reason
        assert not a.sync.running

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, make_device, remote):
        a = await make_device("device_a")
        await a.sync.enable_sync()
        release = asyncio.Event()

        async def slow_fetch(watermark, exclude_device):
            await release.wait()
            return []

        with patch.object(remote, "fetch_since", slow_fetch):
            first = asyncio.create_task(a.sync.sync_with_remote())
            await asyncio.sleep(0.01)
            assert a.sync.running
            second = await a.sync.sync_with_remote()
            release.set()
            await first

        assert second.status == SyncStatus.SKIPPED
        assert second.reason == "cycle already running"
        assert first.result().status == SyncStatus.SUCCESS


class TestTimerAndState:

    @pytest.mark.asyncio
    async def test_timer_pushes_without_manual_calls(self, make_device, remote):
        a = await make_device("device_a", sync_interval_seconds=0.02)
        event = await _insert_category(a, {"id": 1, "name": "Drinks"})
        await a.sync.enable_sync()
        assert a.sync.timer_active

        for _ in range(100):
            if event.id in remote.rows:
                break
            await asyncio.sleep(0.02)
        assert event.id in remote.rows

        await a.sync.disable_sync()
        assert not a.sync.timer_active
        await a.sync.cleanup()

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, make_device):
        a = await make_device("")
        device_id = a.sync.device_id
        assert device_id.startswith("device_")

        await a.sync.enable_sync()
        await a.sync.sync_with_remote()
        watermark = a.sync.watermark
        a.sync.stop_timer()

        reloaded = SyncEngine(a.store, a.change_log, a.remote, a.gate)
        meta = await reloaded.load()
        assert meta.device_id == device_id
        assert meta.sync_enabled is True
        assert meta.last_sync_watermark == watermark

    @pytest.mark.asyncio
    async def test_status(self, make_device):
        a = await make_device("device_a")
        await a.sync.log_change("categories", "INSERT", 1, {"id": 1, "name": "Drinks"})
        status = await a.sync.status()
        assert status["device_id"] == "device_a"
        assert status["sync_enabled"] is False
        assert status["pending"] == 1
        assert status["running"] is False
        assert status["timer_active"] is False

    @pytest.mark.asyncio
    async def test_metadata_requires_load(self, store, remote):
        engine = SyncEngine(store, ChangeLog(store), remote, StoreGate())
        with pytest.raises(RuntimeError):
            engine.device_id
