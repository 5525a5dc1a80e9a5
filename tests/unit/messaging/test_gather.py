"""
Partial Request Gatherer Unit Tests
===================================

[UNIT] messaging/gather.py:
- completion and timeout dispatch exactly once
- late parts after dispatch are dropped
- merge of documents, routes and status
- duplicate doc_id / inconsistent fields recorded on the merged status
"""

import asyncio
import threading

import pytest

from messaging.gather import (
    GatherState,
    GatherTable,
    PartialRequestGatherer,
    merge_parts,
)
from messaging.models import (
    ControlCommand,
    ControlRequest,
    Envelope,
    Message,
    Request,
    Route,
    StatusCode,
    TrainRequest,
)


@pytest.fixture
def gatherer(fake_clock, metrics, dispatched):
    return PartialRequestGatherer(
        table=GatherTable(dispatched_ttl=60),
        on_dispatch=dispatched.append,
        pod="join",
        pod_id="j1",
        default_timeout=5.0,
        sweep_interval=0.01,
        clock=fake_clock,
        metrics=metrics,
    )


def _doc_ids(message):
    return [d.doc_id for d in message.docs]


# ============================================================================
# Completion
# ============================================================================

class TestCompletion:
    """Bucket fills up -> one merged message."""

    def test_two_parts_merge_in_arrival_order(self, gatherer, make_part, dispatched):
        assert gatherer.receive(make_part(1, [3, 4])) is None
        merged = gatherer.receive(make_part(1, [1, 2]))

        assert merged is not None
        assert dispatched == [merged]
        assert _doc_ids(merged) == [3, 4, 1, 2]
        assert merged.envelope.status.code == StatusCode.SUCCESS
        assert merged.request.status.code == StatusCode.SUCCESS

    def test_single_part_dispatches_immediately(self, gatherer, make_part, dispatched):
        merged = gatherer.receive(make_part(9, [1], num_part=1))

        assert merged is not None
        assert len(dispatched) == 1

    def test_missing_num_part_means_one_part(self, gatherer, make_part, dispatched):
        part = make_part(9, [1])
        part.envelope.num_part = []

        assert gatherer.receive(part) is not None
        assert len(dispatched) == 1

    def test_three_parts_out_of_order(self, gatherer, make_part, dispatched):
        gatherer.receive(make_part(2, [20], num_part=3))
        gatherer.receive(make_part(2, [0], num_part=3))
        assert dispatched == []
        gatherer.receive(make_part(2, [10], num_part=3))

        assert len(dispatched) == 1
        assert _doc_ids(dispatched[0]) == [20, 0, 10]

    def test_innermost_num_part_is_popped(self, gatherer, make_part):
        first = make_part(3, [1])
        second = make_part(3, [2])
        for part in (first, second):
            part.envelope.num_part = [4, 2]

        gatherer.receive(first)
        merged = gatherer.receive(second)

        assert merged.envelope.num_part == [4]
        assert first.envelope.num_part == [4, 2]

    def test_inputs_are_not_modified(self, gatherer, make_part):
        first = make_part(4, [1])
        gatherer.receive(first)
        merged = gatherer.receive(make_part(4, [2]))

        merged.docs[0].content = "changed"
        assert first.docs[0].content == "document 1"
        assert len(first.docs) == 1

    def test_independent_requests(self, gatherer, make_part, dispatched):
        gatherer.receive(make_part(1, [1]))
        gatherer.receive(make_part(2, [2]))
        assert sorted(r for r, _, _ in gatherer.pending()) == [1, 2]

        gatherer.receive(make_part(2, [3]))

        assert [m.request_id for m in dispatched] == [2]
        assert gatherer.pending() == [(1, 1, 2)]

    def test_without_callback(self, fake_clock, metrics, make_part):
        gatherer = PartialRequestGatherer(clock=fake_clock, metrics=metrics, table=GatherTable(60))
        gatherer.receive(make_part(1, [1]))

        assert gatherer.receive(make_part(1, [2])) is not None


# ============================================================================
# Late parts
# ============================================================================

class TestLateParts:
    """Parts after dispatch never reopen the bucket."""

    def test_extra_part_after_completion_dropped(self, gatherer, make_part, dispatched, metrics):
        gatherer.receive(make_part(1, [1]))
        gatherer.receive(make_part(1, [2]))

        assert gatherer.receive(make_part(1, [3])) is None
        assert len(dispatched) == 1
        assert 1 not in gatherer.table
        assert metrics.counter("gather_late_parts_total").get() == 1

    def test_late_part_after_timeout_dropped(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(1, [1], timeout=1.0))
        fake_clock.advance(1.5)
        gatherer.tick()

        assert gatherer.receive(make_part(1, [2], timeout=1.0)) is None
        assert len(dispatched) == 1
        assert gatherer.pending() == []

    def test_dispatched_ids_forgotten_after_ttl(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(1, [1], num_part=1))
        assert gatherer.table.was_dispatched(1)

        fake_clock.advance(61)
        gatherer.tick()

        assert not gatherer.table.was_dispatched(1)


# ============================================================================
# Timeout
# ============================================================================

class TestTimeout:
    """Deadline = first arrival + Envelope.timeout."""

    def test_tick_dispatches_partial_as_error(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(5, [1], num_part=3, timeout=1.0))
        gatherer.receive(make_part(5, [2], num_part=3, timeout=1.0))

        fake_clock.advance(0.5)
        assert gatherer.tick() == []

        fake_clock.advance(0.6)
        result = gatherer.tick()

        assert len(result) == 1
        assert dispatched == result
        merged = result[0]
        assert _doc_ids(merged) == [1, 2]
        assert merged.envelope.status.code == StatusCode.ERROR
        assert merged.envelope.status.description == (
            "timeout: received 2 of 3 parts for request 5 within 1.0s"
        )
        assert merged.request.status.code == StatusCode.ERROR

    def test_tick_is_idempotent(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(5, [1], timeout=1.0))
        fake_clock.advance(2)

        gatherer.tick()
        gatherer.tick()

        assert len(dispatched) == 1

    def test_lazy_timeout_on_access(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(6, [1], timeout=1.0))
        fake_clock.advance(1.0)

        merged = gatherer.receive(make_part(6, [2], timeout=1.0))

        assert merged is not None
        assert dispatched == [merged]
        assert _doc_ids(merged) == [1]
        assert merged.envelope.status.code == StatusCode.ERROR

    def test_zero_timeout_uses_default(self, gatherer, make_part, dispatched, fake_clock):
        gatherer.receive(make_part(7, [1], timeout=0))
        fake_clock.advance(4.9)
        gatherer.tick()
        assert dispatched == []

        fake_clock.advance(0.2)
        gatherer.tick()
        assert len(dispatched) == 1

    def test_timeout_keeps_part_errors_in_details(self, gatherer, make_part, fake_clock):
        from messaging.models import Details

        part = make_part(8, [1], num_part=2, code=StatusCode.ERROR, description="encoder failed")
        part.envelope.status.details.append(Details(pod="encoder", exception="RuntimeError"))
        gatherer.receive(part)

        fake_clock.advance(2)
        merged = gatherer.tick()[0]

        assert merged.envelope.status.code == StatusCode.ERROR
        assert merged.envelope.status.description.startswith("timeout:")
        assert [d.pod for d in merged.envelope.status.details] == ["encoder"]


# ============================================================================
# Cancel
# ============================================================================

class TestCancel:

    def test_cancel_dispatches_partial(self, gatherer, make_part, dispatched, metrics):
        gatherer.receive(make_part(1, [1], num_part=3))

        merged = gatherer.cancel(1, "shutdown")

        assert dispatched == [merged]
        assert merged.envelope.status.description == "cancelled: shutdown (received 1 of 3 parts)"
        dispatched_total = metrics.counter("gather_dispatched_total", labels=["outcome"])
        assert dispatched_total.get({"outcome": "cancelled"}) == 1

    def test_cancel_unknown_or_dispatched(self, gatherer, make_part):
        assert gatherer.cancel(404) is None

        gatherer.receive(make_part(1, [1], num_part=1))
        assert gatherer.cancel(1) is None


# ============================================================================
# Merge
# ============================================================================

class TestMerge:
    """merge_parts() content rules."""

    def test_duplicate_doc_id_appends_chunks(self, make_part, make_doc):
        first = make_part(1, [7, 8])
        second = make_part(1, [7])
        first.request.body.docs[0] = make_doc(7, n_chunks=1)
        second.request.body.docs[0] = make_doc(7, n_chunks=2)

        merged = merge_parts([first, second], pod="join")

        assert _doc_ids(merged) == [7, 8]
        assert len(merged.docs[0].chunks) == 3
        status = merged.envelope.status
        assert status.code == StatusCode.ERROR
        assert status.description.startswith("DuplicateDocument: doc_id=7")
        assert [d.exception for d in status.details] == ["DuplicateDocument"]
        assert status.details[0].pod == "join"

    def test_inconsistent_top_k(self, make_part):
        first = make_part(1, [1], search=True)
        second = make_part(1, [2], search=True)
        second.request.body.top_k = 50

        merged = merge_parts([first, second])

        assert merged.request.body.top_k == 10
        assert _doc_ids(merged) == [1, 2]
        assert merged.envelope.status.code == StatusCode.ERROR
        assert merged.envelope.status.details[0].exception == "InconsistentRequestFields"
        assert "top_k 50 != 10" in merged.envelope.status.details[0].traceback

    def test_inconsistent_filter_by(self, make_part):
        first = make_part(1, [1])
        second = make_part(1, [2])
        second.request.body.filter_by = ["image"]

        merged = merge_parts([first, second])

        assert merged.request.body.filter_by == ["text"]
        assert "filter_by" in merged.envelope.status.details[0].traceback

    def test_inconsistent_flush(self):
        parts = [
            Message(
                envelope=Envelope(request_id=1, num_part=[2]),
                request=Request(request_id=1, body=TrainRequest(flush=flush)),
            )
            for flush in (True, False)
        ]

        merged = merge_parts(parts)

        assert merged.request.body.flush is True
        assert merged.envelope.status.code == StatusCode.ERROR

    def test_mismatched_kind_skips_documents(self, make_part):
        first = make_part(1, [1])
        second = make_part(1, [2], search=True)

        merged = merge_parts([first, second])

        assert merged.request.kind == "index"
        assert _doc_ids(merged) == [1]
        assert "expected 'index'" in merged.envelope.status.details[0].traceback

    def test_num_part_mismatch_recorded(self, make_part):
        first = make_part(1, [1], num_part=2)
        second = make_part(1, [2], num_part=3)

        merged = merge_parts([first, second])

        assert merged.envelope.num_part == []
        assert merged.envelope.status.details[0].exception == "InconsistentRequestFields"

    def test_error_part_wins_and_keeps_description(self, make_part):
        first = make_part(1, [1])
        second = make_part(1, [2], code=StatusCode.ERROR, description="index full")

        merged = merge_parts([first, second])

        assert merged.envelope.status.code == StatusCode.ERROR
        assert merged.envelope.status.description == "index full"

    def test_merge_problem_appended_to_existing_error(self, make_part):
        first = make_part(1, [1], code=StatusCode.ERROR, description="index full")
        second = make_part(1, [1])

        status = merge_parts([first, second]).envelope.status

        assert status.description == "index full"
        assert status.details[-1].exception == "DuplicateDocument"

    def test_pending_part_makes_merge_pending(self, make_part):
        merged = merge_parts([make_part(1, [1]), make_part(1, [2], code=StatusCode.PENDING)])
        assert merged.envelope.status.code == StatusCode.PENDING

    def test_routes_are_merged_without_duplicates(self, make_part):
        first = make_part(1, [1])
        second = make_part(1, [2])
        shared = Route(pod="gateway", start_time=1.0, end_time=2.0)
        first.envelope.routes = [shared]
        second.envelope.routes = [
            Route(pod="gateway", start_time=1.0, end_time=2.0),
            Route(pod="encoder", pod_id="e2", start_time=3.0),
        ]

        merged = merge_parts([first, second])

        assert [(r.pod, r.pod_id) for r in merged.envelope.routes] == [("gateway", ""), ("encoder", "e2")]

    def test_control_requests(self):
        parts = [
            Message(
                envelope=Envelope(request_id=1, num_part=[2]),
                request=Request(
                    request_id=1,
                    body=ControlRequest(command=ControlCommand.STATUS, args=args),
                ),
            )
            for args in ({"a": "1"}, {"a": "2", "b": "3"})
        ]

        merged = merge_parts(parts)

        assert merged.request.kind == "control"
        assert merged.request.body.command == ControlCommand.STATUS
        assert merged.request.body.args == {"a": "1", "b": "3"}
        assert merged.envelope.status.code == StatusCode.SUCCESS

    def test_empty_parts_rejected(self):
        with pytest.raises(ValueError):
            merge_parts([])


# ============================================================================
# Metrics / callback errors
# ============================================================================

class TestMetrics:

    def test_counters(self, gatherer, make_part, metrics, fake_clock):
        gatherer.receive(make_part(1, [1]))
        assert metrics.gauge("gather_open_buckets").get() == 1

        fake_clock.advance(0.5)
        gatherer.receive(make_part(1, [2]))

        assert metrics.counter("gather_parts_total").get() == 2
        dispatched_total = metrics.counter("gather_dispatched_total", labels=["outcome"])
        assert dispatched_total.get({"outcome": "complete"}) == 1
        assert metrics.gauge("gather_open_buckets").get() == 0

        stats = metrics.histogram("gather_wait_seconds").get_stats()
        assert stats["count"] == 1
        assert stats["sum"] == pytest.approx(0.5)


class TestDispatchCallback:

    def test_callback_error_propagates_once(self, fake_clock, metrics, make_part):
        calls = []

        def broken(message):
            calls.append(message)
            raise RuntimeError("downstream closed")

        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=broken, clock=fake_clock, metrics=metrics,
        )
        gatherer.receive(make_part(1, [1]))

        with pytest.raises(RuntimeError):
            gatherer.receive(make_part(1, [2]))

        assert len(calls) == 1
        assert gatherer.table.was_dispatched(1)
        assert gatherer.receive(make_part(1, [3])) is None

    def test_tick_delivers_all_before_raising(self, fake_clock, metrics, make_part):
        calls = []

        def flaky(message):
            calls.append(message.request_id)
            if message.request_id == 1:
                raise RuntimeError("boom")

        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=flaky, clock=fake_clock, metrics=metrics,
        )
        gatherer.receive(make_part(1, [1], timeout=1.0))
        gatherer.receive(make_part(2, [2], timeout=1.0))
        fake_clock.advance(2)

        with pytest.raises(RuntimeError):
            gatherer.tick()

        assert sorted(calls) == [1, 2]


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrency:

    def test_parallel_parts_dispatch_once(self, metrics, make_part):
        dispatched = []
        lock = threading.Lock()

        def collect(message):
            with lock:
                dispatched.append(message)

        n_parts = 16
        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=collect, default_timeout=30, metrics=metrics,
        )
        parts = [make_part(42, [i], num_part=n_parts, timeout=30) for i in range(n_parts)]
        barrier = threading.Barrier(n_parts)

        def send(part):
            barrier.wait()
            gatherer.receive(part)

        threads = [threading.Thread(target=send, args=(p,)) for p in parts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(dispatched) == 1
        assert sorted(_doc_ids(dispatched[0])) == list(range(n_parts))

    def test_tick_races_with_last_part(self, metrics, make_part, fake_clock):
        dispatched = []
        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=dispatched.append, clock=fake_clock, metrics=metrics,
        )
        gatherer.receive(make_part(1, [1], timeout=1.0))
        fake_clock.advance(1.0)

        t = threading.Thread(target=gatherer.tick)
        t.start()
        gatherer.receive(make_part(1, [2], timeout=1.0))
        t.join()

        assert len(dispatched) == 1
        assert dispatched[0].envelope.status.code == StatusCode.ERROR

    def test_completion_races_with_deadline_tick(self, metrics, make_part, fake_clock):
        """Last part just before the deadline vs tick() at the deadline: one winner."""
        dispatched = []
        lock = threading.Lock()

        def collect(message):
            with lock:
                dispatched.append(message)

        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=collect, clock=fake_clock, metrics=metrics,
        )
        outcomes = set()

        for request_id in range(1, 51):
            dispatched.clear()
            start = fake_clock.now
            gatherer.receive(make_part(request_id, [1], timeout=1.0))
            fake_clock.advance(0.9)
            barrier = threading.Barrier(2)

            def sweep():
                barrier.wait()
                gatherer.tick(now=start + 1.0)

            t = threading.Thread(target=sweep)
            t.start()
            barrier.wait()
            gatherer.receive(make_part(request_id, [2], timeout=1.0))
            t.join()

            assert len(dispatched) == 1
            merged = dispatched[0]
            if merged.envelope.status.code == StatusCode.SUCCESS:
                assert _doc_ids(merged) == [1, 2]
            else:
                assert merged.envelope.status.description.startswith("timeout: received 1 of 2")
                assert _doc_ids(merged) == [1]
            outcomes.add(merged.envelope.status.code)
            fake_clock.advance(1.0)

        assert outcomes <= {StatusCode.SUCCESS, StatusCode.ERROR}
        assert gatherer.pending() == []


# ============================================================================
# Background sweep
# ============================================================================

class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_dispatches_expired(self, metrics, make_part):
        dispatched = []
        gatherer = PartialRequestGatherer(
            table=GatherTable(60),
            on_dispatch=dispatched.append,
            sweep_interval=0.01,
            metrics=metrics,
        )
        await gatherer.start()
        try:
            gatherer.receive(make_part(1, [1], timeout=0.05))
            for _ in range(100):
                if dispatched:
                    break
                await asyncio.sleep(0.01)
        finally:
            await gatherer.stop()

        assert len(dispatched) == 1
        assert dispatched[0].envelope.status.code == StatusCode.ERROR

    @pytest.mark.asyncio
    async def test_start_twice_and_stop(self, gatherer):
        await gatherer.start()
        task = gatherer._sweep_task
        await gatherer.start()

        assert gatherer._sweep_task is task

        await gatherer.stop()
        assert gatherer._sweep_task is None

    @pytest.mark.asyncio
    async def test_sweep_survives_callback_errors(self, metrics, make_part):
        calls = []

        def broken(message):
            calls.append(message.request_id)
            raise RuntimeError("boom")

        gatherer = PartialRequestGatherer(
            table=GatherTable(60), on_dispatch=broken, sweep_interval=0.01, metrics=metrics,
        )
        await gatherer.start()
        try:
            gatherer.receive(make_part(1, [1], timeout=0.02))
            gatherer.receive(make_part(2, [2], timeout=0.06))
            for _ in range(100):
                if len(calls) == 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await gatherer.stop()

        assert sorted(calls) == [1, 2]


class TestBucketState:

    def test_states(self, fake_clock, make_part):
        table = GatherTable(dispatched_ttl=10)
        gatherer = PartialRequestGatherer(table=table, clock=fake_clock, metrics=None)
        gatherer.receive(make_part(1, [1]))

        bucket = table.get(1)
        assert bucket.state is GatherState.COLLECTING
        assert bucket.deadline == fake_clock.now + 1.0

        gatherer.receive(make_part(1, [2]))
        assert bucket.state is GatherState.DISPATCHED
        assert table.get(1) is None
