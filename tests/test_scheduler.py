"""Tests for background scheduling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from driftsync.background import (
    CONNECTIVITY_SYNC_TASK,
    IMMEDIATE_SYNC_TASK,
    PERIODIC_SYNC_TASK,
    AsyncioTaskHost,
    BackgroundScheduler,
    BackoffKind,
    BackoffPolicy,
    Constraints,
    ExistingWorkPolicy,
    TaskRequest,
    build_task_handlers,
    dispatch_task,
)
from driftsync.background.host import MAX_BACKOFF_SECONDS
from driftsync.sync import SyncResult, SyncStateMachine, SyncStatus


def make_host():
    host = MagicMock()
    host.initialize = AsyncMock()
    host.register_periodic = AsyncMock()
    host.register_one_off = AsyncMock()
    host.cancel_by_unique_name = AsyncMock()
    host.cancel_all = AsyncMock()
    host.wait_idle = AsyncMock()
    return host


class TestDispatchTask:
    """Tests for dispatch_task."""

    @pytest.mark.asyncio
    async def test_known_task(self):
        """Test a registered handler's result is returned."""
        handler = AsyncMock(return_value=True)

        assert await dispatch_task(PERIODIC_SYNC_TASK, None, {PERIODIC_SYNC_TASK: handler})
        handler.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_unknown_task(self):
        """Test an unknown id reports failure."""
        assert await dispatch_task("nightly_report", None, {}) is False

    @pytest.mark.asyncio
    async def test_handler_exception(self):
        """Test a raising handler reports failure instead of raising."""
        handler = AsyncMock(side_effect=RuntimeError("boom"))

        assert await dispatch_task(IMMEDIATE_SYNC_TASK, {"k": 1}, {IMMEDIATE_SYNC_TASK: handler}) is False


class TestTaskHandlers:
    """Tests for build_task_handlers."""

    def make_engine(self, result, status=SyncStatus.IDLE):
        engine = MagicMock()
        engine.run_sync = AsyncMock(return_value=result)
        engine.state = SyncStateMachine()
        if status != SyncStatus.IDLE:
            engine.state.begin(SyncStatus.SYNCING)
            if status == SyncStatus.ERROR:
                engine.state.fail("down")
        return engine

    def test_every_task_identity_mapped(self):
        """Test all three task ids have handlers."""
        handlers = build_task_handlers(self.make_engine(SyncResult.success()))

        assert set(handlers) == {PERIODIC_SYNC_TASK, IMMEDIATE_SYNC_TASK, CONNECTIVITY_SYNC_TASK}

    @pytest.mark.asyncio
    async def test_success_and_failure(self):
        """Test handler results follow the sync result."""
        ok = build_task_handlers(self.make_engine(SyncResult.success()))
        failed = build_task_handlers(self.make_engine(SyncResult.failure("down")))

        assert await ok[PERIODIC_SYNC_TASK](None) is True
        assert await failed[PERIODIC_SYNC_TASK](None) is False

    @pytest.mark.asyncio
    async def test_deferred_counts_as_success_unless_error(self):
        """Test a pass deferred by an active pass is not retried."""
        busy = build_task_handlers(
            self.make_engine(SyncResult.deferred("busy"), SyncStatus.SYNCING)
        )
        stuck = build_task_handlers(
            self.make_engine(SyncResult.deferred("error"), SyncStatus.ERROR)
        )

        assert await busy[CONNECTIVITY_SYNC_TASK](None) is True
        assert await stuck[CONNECTIVITY_SYNC_TASK](None) is False


class TestBackgroundScheduler:
    """Tests for BackgroundScheduler."""

    def test_normal_profile(self):
        """Test intervals and constraints without battery optimization."""
        scheduler = BackgroundScheduler(make_host(), {})

        request = scheduler.periodic_request()

        assert request.frequency_seconds == 30 * 60
        assert request.constraints.network_connected is True
        assert request.constraints.requires_battery_not_low is True
        assert request.constraints.requires_charging is False
        assert request.backoff == BackoffPolicy(BackoffKind.EXPONENTIAL, 300.0)
        assert request.existing_policy == ExistingWorkPolicy.KEEP

    @pytest.mark.asyncio
    async def test_battery_optimized_profile(self):
        """Test the battery-saving profile syncs less often and only when charging."""
        scheduler = BackgroundScheduler(make_host(), {}, battery_probe=lambda: True)
        await scheduler.initialize()

        periodic = scheduler.periodic_request()
        connectivity = scheduler.connectivity_request()

        assert periodic.frequency_seconds == 2 * 60 * 60
        assert periodic.constraints.requires_charging is True
        assert periodic.constraints.requires_battery_not_low is False
        assert connectivity.constraints.requires_charging is True

    def test_one_off_requests(self):
        """Test immediate and connectivity task settings."""
        scheduler = BackgroundScheduler(make_host(), {})

        immediate = scheduler.immediate_request({"reason": "user"})
        connectivity = scheduler.connectivity_request()

        assert immediate.unique_name == IMMEDIATE_SYNC_TASK
        assert immediate.initial_delay_seconds == 5
        assert immediate.existing_policy == ExistingWorkPolicy.REPLACE
        assert immediate.constraints.requires_battery_not_low is True
        assert immediate.input_data == {"reason": "user"}
        assert immediate.is_periodic is False
        assert connectivity.unique_name == CONNECTIVITY_SYNC_TASK
        assert connectivity.initial_delay_seconds == 10
        assert connectivity.existing_policy == ExistingWorkPolicy.REPLACE

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self):
        """Test a second initialize does nothing."""
        host = make_host()
        probe = MagicMock(return_value=False)
        scheduler = BackgroundScheduler(host, {}, battery_probe=probe)

        await scheduler.initialize()
        await scheduler.initialize()

        probe.assert_called_once()
        host.initialize.assert_awaited_once()
        assert scheduler.is_initialized

    @pytest.mark.asyncio
    async def test_registration_initializes_first(self):
        """Test scheduling before initialize initializes implicitly."""
        host = make_host()
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        assert await scheduler.schedule_immediate_sync() is True

        host.initialize.assert_awaited_once()
        request = host.register_one_off.await_args.args[0]
        assert request.unique_name == IMMEDIATE_SYNC_TASK

    @pytest.mark.asyncio
    async def test_periodic_registration(self):
        """Test the periodic task goes through register_periodic."""
        host = make_host()
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        assert await scheduler.register_periodic_sync() is True

        request = host.register_periodic.await_args.args[0]
        assert request.unique_name == PERIODIC_SYNC_TASK
        assert request.is_periodic is True

    @pytest.mark.asyncio
    async def test_registration_failure_reported(self):
        """Test a host failure is logged and reported as False."""
        host = make_host()
        host.register_periodic.side_effect = RuntimeError("host unavailable")
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        assert await scheduler.register_periodic_sync() is False

    @pytest.mark.asyncio
    async def test_host_init_failure_does_not_raise(self):
        """Test a failing host initialize is logged only."""
        host = make_host()
        host.initialize.side_effect = RuntimeError("no scheduler")
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        await scheduler.initialize()

        assert scheduler.is_initialized

    @pytest.mark.asyncio
    async def test_cancel_failures_are_swallowed(self):
        """Test cancellation failures are logged, not raised."""
        host = make_host()
        host.cancel_all.side_effect = RuntimeError("boom")
        host.cancel_by_unique_name.side_effect = RuntimeError("boom")
        scheduler = BackgroundScheduler(host, {})

        await scheduler.cancel_all()
        await scheduler.cancel_task(PERIODIC_SYNC_TASK)

    @pytest.mark.asyncio
    async def test_reconnect_schedules_connectivity_sync(self):
        """Test regaining connectivity registers the reconnect task."""
        host = make_host()
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        scheduler.on_connectivity_change(False)
        scheduler.on_connectivity_change(True)
        for _ in range(3):
            await asyncio.sleep(0)

        host.register_one_off.assert_awaited_once()
        assert host.register_one_off.await_args.args[0].unique_name == CONNECTIVITY_SYNC_TASK

    def test_reconnect_without_event_loop_warns(self, caplog):
        """Test a reconnect published outside a loop is logged, not lost silently."""
        host = make_host()
        scheduler = BackgroundScheduler(host, {}, battery_probe=lambda: False)

        with caplog.at_level("WARNING", logger="driftsync.background.scheduler"):
            scheduler.on_connectivity_change(True)

        assert "connectivity sync not scheduled" in caplog.text
        host.register_one_off.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatch_entry_point(self):
        """Test the dispatcher given to the host routes to handlers."""
        host = make_host()
        handler = AsyncMock(return_value=True)
        scheduler = BackgroundScheduler(
            host, {PERIODIC_SYNC_TASK: handler}, battery_probe=lambda: False
        )
        await scheduler.initialize()
        dispatcher = host.initialize.await_args.args[0]

        assert await dispatcher(PERIODIC_SYNC_TASK, None) is True
        assert await dispatcher("unknown", None) is False


def one_off(name="task", delay=0.0, policy=ExistingWorkPolicy.KEEP, backoff_seconds=0.01, **constraints):
    return TaskRequest(
        unique_name=name,
        task_name=name,
        constraints=Constraints(**constraints),
        backoff=BackoffPolicy(BackoffKind.LINEAR, backoff_seconds),
        initial_delay_seconds=delay,
        existing_policy=policy,
    )


class TestAsyncioTaskHost:
    """Tests for the in-process task host."""

    def test_backoff_policy(self):
        """Test exponential and linear delays with the cap."""
        exponential = BackoffPolicy(BackoffKind.EXPONENTIAL, 300)
        linear = BackoffPolicy(BackoffKind.LINEAR, 300)

        assert [exponential.delay_for(n) for n in (1, 2, 3)] == [300, 600, 1200]
        assert [linear.delay_for(n) for n in (1, 2, 3)] == [300, 600, 900]
        assert exponential.delay_for(20) == MAX_BACKOFF_SECONDS

    @pytest.mark.asyncio
    async def test_one_off_runs(self):
        """Test a one-off task is dispatched with its name."""
        dispatcher = AsyncMock(return_value=True)
        host = AsyncioTaskHost()
        await host.initialize(dispatcher)

        await host.register_one_off(one_off("sync"))
        await asyncio.sleep(0.02)

        dispatcher.assert_awaited_once_with("sync", None)

    @pytest.mark.asyncio
    async def test_waits_for_constraints(self):
        """Test a task waits until its constraints are met."""
        online = {"value": False}
        dispatcher = AsyncMock(return_value=True)
        host = AsyncioTaskHost(is_connected=lambda: online["value"], constraint_poll_seconds=0.01)
        await host.initialize(dispatcher)

        await host.register_one_off(one_off())
        await asyncio.sleep(0.03)
        dispatcher.assert_not_awaited()

        online["value"] = True
        await asyncio.sleep(0.05)
        dispatcher.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_replace_cancels_pending(self):
        """Test REPLACE keeps only the newest pending registration."""
        dispatcher = AsyncMock(return_value=True)
        host = AsyncioTaskHost()
        await host.initialize(dispatcher)

        await host.register_one_off(one_off(delay=0.05, policy=ExistingWorkPolicy.REPLACE))
        await host.register_one_off(one_off(delay=0.05, policy=ExistingWorkPolicy.REPLACE))
        await asyncio.sleep(0.1)

        assert dispatcher.await_count == 1

    @pytest.mark.asyncio
    async def test_keep_ignores_new_registration(self):
        """Test KEEP leaves the pending registration alone."""
        dispatcher = AsyncMock(return_value=True)
        host = AsyncioTaskHost()
        await host.initialize(dispatcher)

        await host.register_one_off(one_off(delay=0.05))
        await host.register_one_off(one_off(delay=0.0))
        await asyncio.sleep(0.02)
        dispatcher.assert_not_awaited()

        await asyncio.sleep(0.06)
        assert dispatcher.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_one_off_retried_with_backoff(self):
        """Test a failed dispatch is retried."""
        dispatcher = AsyncMock(side_effect=[False, True])
        host = AsyncioTaskHost()
        await host.initialize(dispatcher)

        await host.register_one_off(one_off())
        await asyncio.sleep(0.05)

        assert dispatcher.await_count == 2

    @pytest.mark.asyncio
    async def test_cancel_does_not_interrupt_running_dispatch(self):
        """Test cancelling stops future runs but lets a running one finish."""
        finished = []

        async def dispatcher(task_name, input_data):
            await asyncio.sleep(0.03)
            finished.append(task_name)
            return True

        host = AsyncioTaskHost()
        await host.initialize(dispatcher)
        await host.register_one_off(one_off("sync"))
        await asyncio.sleep(0.01)

        await host.cancel_all()
        await host.wait_idle()

        assert finished == ["sync"]
        assert host.registered == []
