"""Tests for the connectivity-gated operation queue."""

import asyncio

import pytest

from driftsync.sync.operation_queue import NetworkOperation, OperationQueue


class Link:
    """Switchable eligibility predicate."""

    def __init__(self, eligible: bool = False):
        self.eligible = eligible

    def __call__(self) -> bool:
        return self.eligible


def make_op(op_id, log, fail_times=0, max_retries=3, delay=0.0, on_run=None):
    """Build an operation that records its runs and fails a set number of times."""
    failures = {"count": 0}

    async def action():
        log.append(op_id)
        if on_run:
            on_run()
        if delay:
            await asyncio.sleep(delay)
        if failures["count"] < fail_times:
            failures["count"] += 1
            raise RuntimeError(f"{op_id} failed")

    return NetworkOperation(
        id=op_id, description=f"operation {op_id}", action=action, max_retries=max_retries
    )


class TestEnqueue:
    """Tests for enqueue, remove and clear."""

    @pytest.mark.asyncio
    async def test_enqueue_while_ineligible_does_not_run(self):
        """Test operations wait while sync is not eligible."""
        queue = OperationQueue(Link(False))
        log = []

        queue.enqueue(make_op("A", log))
        await asyncio.sleep(0.01)

        assert log == []
        assert queue.pending_ids() == ["A"]

    @pytest.mark.asyncio
    async def test_enqueue_while_eligible_triggers_one_drain(self):
        """Test enqueuing while eligible starts exactly one drain."""
        queue = OperationQueue(Link(True))
        log = []
        calls = {"drain": 0}
        original_drain = queue.drain

        async def counting_drain():
            calls["drain"] += 1
            await original_drain()

        queue.drain = counting_drain

        queue.enqueue(make_op("A", log))
        queue.enqueue(make_op("B", log))
        await queue.wait_idle()

        assert calls["drain"] == 1
        assert log == ["A", "B"]
        assert queue.pending_count == 0

    def test_duplicate_id_rejected(self):
        """Test an id can only be queued once."""
        queue = OperationQueue(Link(False))
        log = []
        queue.enqueue(make_op("A", log))

        with pytest.raises(ValueError):
            queue.enqueue(make_op("A", log))

    def test_remove(self):
        """Test removing a waiting operation."""
        queue = OperationQueue(Link(False))
        log = []
        queue.enqueue(make_op("A", log))
        queue.enqueue(make_op("B", log))

        assert queue.remove("A") is True
        assert queue.remove("missing") is False
        assert queue.pending_ids() == ["B"]

    def test_clear(self):
        """Test clearing drops every waiting operation."""
        queue = OperationQueue(Link(False))
        log = []
        queue.enqueue(make_op("A", log))
        queue.enqueue(make_op("B", log))

        assert queue.clear() == 2
        assert queue.pending_count == 0


class TestDrain:
    """Tests for draining, ordering and retries."""

    @pytest.mark.asyncio
    async def test_fifo_order_with_one_retry(self):
        """Test A, B, C run in order and B runs twice when it fails once."""
        link = Link(False)
        queue = OperationQueue(link)
        log = []

        queue.enqueue(make_op("A", log))
        queue.enqueue(make_op("B", log, fail_times=1))
        queue.enqueue(make_op("C", log))
        assert log == []

        link.eligible = True
        queue.on_eligibility_change(True)
        await queue.wait_idle()

        assert log == ["A", "B", "C"]
        assert queue.pending_ids() == ["B"]
        assert queue.retry_count("B") == 1

        await queue.drain()

        assert log == ["A", "B", "C", "B"]
        assert queue.pending_ids() == []
        assert log.count("B") == 2
        assert queue.retry_count("B") == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_reported_and_dropped(self):
        """Test an operation out of retries is discarded and reported."""
        queue = OperationQueue(Link(True))
        log = []
        failures = []
        queue.failures.subscribe(failures.append)

        queue.enqueue(make_op("X", log, fail_times=100, max_retries=2))
        await queue.wait_idle()
        await queue.drain()
        await queue.drain()

        assert log == ["X", "X", "X"]
        assert queue.pending_count == 0
        assert len(failures) == 1
        assert failures[0].operation.id == "X"
        assert failures[0].attempts == 3

        await queue.drain()
        assert log == ["X", "X", "X"]

    @pytest.mark.asyncio
    async def test_single_flight(self):
        """Test concurrent triggers never run two drains at once."""
        queue = OperationQueue(Link(True))
        counters = {"active": 0, "peak": 0}

        def tracked(op_id):
            async def action():
                counters["active"] += 1
                counters["peak"] = max(counters["peak"], counters["active"])
                await asyncio.sleep(0.01)
                counters["active"] -= 1

            return NetworkOperation(id=op_id, description=op_id, action=action)

        queue.enqueue(tracked("A"))
        queue.enqueue(tracked("B"))
        await asyncio.gather(queue.drain(), queue.drain(), queue.wait_idle())
        queue.enqueue(tracked("C"))
        await queue.wait_idle()

        assert counters["peak"] == 1
        assert queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_losing_eligibility_mid_drain_keeps_remaining_in_order(self):
        """Test operations after the link drops stay queued in order."""
        link = Link(False)
        queue = OperationQueue(link)
        log = []

        def drop_link():
            link.eligible = False

        queue.enqueue(make_op("A", log, on_run=drop_link))
        queue.enqueue(make_op("B", log))
        queue.enqueue(make_op("C", log))

        link.eligible = True
        await queue.drain()

        assert log == ["A"]
        assert queue.pending_ids() == ["B", "C"]

    @pytest.mark.asyncio
    async def test_remaining_operations_stay_ahead_of_mid_drain_enqueue(self):
        """Test unprocessed operations keep priority over ones queued while draining."""
        link = Link(False)
        queue = OperationQueue(link)
        log = []

        def drop_link_and_enqueue():
            link.eligible = False
            queue.enqueue(make_op("D", log))

        queue.enqueue(make_op("A", log, on_run=drop_link_and_enqueue))
        queue.enqueue(make_op("B", log))
        queue.enqueue(make_op("C", log))

        link.eligible = True
        await queue.drain()

        assert queue.pending_ids() == ["B", "C", "D"]

        link.eligible = True
        queue.on_eligibility_change(True)
        await queue.wait_idle()

        assert log == ["A", "B", "C", "D"]
        assert queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_enqueue_during_drain_runs_in_follow_up_pass(self):
        """Test an operation queued mid-drain is not left behind."""
        queue = OperationQueue(Link(True))
        log = []

        def enqueue_d():
            queue.enqueue(make_op("D", log))

        queue.enqueue(make_op("A", log, on_run=enqueue_d))
        await queue.wait_idle()

        assert log == ["A", "D"]
        assert queue.pending_count == 0

    @pytest.mark.asyncio
    async def test_flag_released_after_failure(self):
        """Test a failing action does not wedge the queue."""
        queue = OperationQueue(Link(True))
        log = []

        queue.enqueue(make_op("A", log, fail_times=1, max_retries=0))
        await queue.wait_idle()

        assert queue.is_draining is False
        queue.enqueue(make_op("B", log))
        await queue.wait_idle()
        assert log == ["A", "B"]

    @pytest.mark.asyncio
    async def test_retry_delay_schedules_another_drain(self):
        """Test a failed operation is retried after the retry delay."""
        queue = OperationQueue(Link(True), retry_delay_seconds=0.01)
        log = []

        queue.enqueue(make_op("A", log, fail_times=1))
        await queue.wait_idle()
        assert log == ["A"]

        await asyncio.sleep(0.05)
        await queue.wait_idle()

        assert log == ["A", "A"]
        assert queue.pending_count == 0
        await queue.close()
