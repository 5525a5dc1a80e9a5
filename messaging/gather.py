"""
Partial Request Gatherer
========================

[GATHER] Fan-in: несколько физических Message с одним request_id
собираются в один логический запрос и отправляются дальше один раз.

Bucket state machine (per request_id):

    COLLECTING ──(count reached)──> COMPLETE  ──┐
        │                                      ├──> DISPATCHED (terminal)
        └──(deadline / cancel)───> TIMED_OUT ──┘

- expected count = innermost Envelope.num_part entry
- deadline = first part arrival + Envelope.timeout (0 -> default timeout)
- parts arriving after DISPATCHED are dropped and logged, the bucket is
  never reopened
- one threading.Lock per bucket: exactly one of COMPLETE / TIMED_OUT fires

[MERGE]
- documents concatenated in arrival order, deep-copied
- repeated doc_id -> chunks appended to the first document (DuplicateDocument)
- filter_by / top_k / flush / body kind must match the first part
  (InconsistentRequestFields)
- merge problems are recorded as Status.Details with code ERROR, the merge
  still completes

[MEMORY] Expired buckets are collected by tick(): from the background sweep
(start()/stop()), on demand, or lazily when a part for the bucket arrives.
"""

import asyncio
import copy
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Tuple

from config import config
from core.monitoring.metrics import MetricsCollector, get_metrics
from .models import (
    ControlRequest,
    Details,
    Document,
    IndexRequest,
    Message,
    Request,
    RequestBody,
    SearchRequest,
    Status,
    StatusCode,
    TrainRequest,
    body_kind,
)
from .routes import routes_to_str
from .status import aggregate_status, details_for

logger = logging.getLogger(__name__)


class GatherError(Exception):
    """Base class for merge problems recorded on the merged Status."""
    pass


class InconsistentRequestFields(GatherError):
    """Parts disagree on body kind, filter_by, top_k, flush or num_part."""
    pass


class DuplicateDocument(GatherError):
    """The same doc_id arrived in more than one part."""
    pass


class GatherState(Enum):
    COLLECTING = auto()
    COMPLETE = auto()
    TIMED_OUT = auto()
    DISPATCHED = auto()


@dataclass
class GatherBucket:
    """Parts collected so far for one request_id."""
    request_id: int
    expected: int
    timeout: float
    created_at: float
    parts: List[Message] = field(default_factory=list)
    state: GatherState = GatherState.COLLECTING
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout

    @property
    def received(self) -> int:
        return len(self.parts)

    def is_expired(self, now: float) -> bool:
        return now >= self.deadline


class GatherTable:
    """
    Owned table of open buckets plus recently dispatched request ids.

    Each gatherer instance (e.g. one per pipeline stage) gets its own table.
    Dispatched ids are remembered for dispatched_ttl seconds so late parts
    can be recognised and dropped.

    [LOCKING] Table lock is never held while acquiring a bucket lock.
    """

    def __init__(self, dispatched_ttl: Optional[float] = None):
        if dispatched_ttl is None:
            dispatched_ttl = config.gather.dispatched_ttl
        self.dispatched_ttl = dispatched_ttl

        self._buckets: Dict[int, GatherBucket] = {}
        self._dispatched: "OrderedDict[int, float]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, request_id: int) -> Optional[GatherBucket]:
        with self._lock:
            return self._buckets.get(request_id)

    def get_or_create(
        self,
        request_id: int,
        factory: Callable[[], GatherBucket],
    ) -> Tuple[Optional[GatherBucket], bool]:
        """
        Returns:
            (bucket, created); bucket is None if request_id was already dispatched
        """
        with self._lock:
            if request_id in self._dispatched:
                return None, False
            bucket = self._buckets.get(request_id)
            if bucket is not None:
                return bucket, False
            bucket = factory()
            self._buckets[request_id] = bucket
            return bucket, True

    def mark_dispatched(self, bucket: GatherBucket, now: float) -> None:
        with self._lock:
            if self._buckets.get(bucket.request_id) is bucket:
                del self._buckets[bucket.request_id]
            self._dispatched[bucket.request_id] = now
            self._dispatched.move_to_end(bucket.request_id)

    def was_dispatched(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._dispatched

    def snapshot(self) -> List[GatherBucket]:
        with self._lock:
            return list(self._buckets.values())

    def prune(self, now: float) -> int:
        """Forget dispatched ids older than dispatched_ttl."""
        removed = 0
        with self._lock:
            cutoff = now - self.dispatched_ttl
            while self._dispatched:
                request_id, ts = next(iter(self._dispatched.items()))
                if ts > cutoff:
                    break
                del self._dispatched[request_id]
                removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._buckets


# ============================================================================
# Merge
# ============================================================================

def _empty_like(body: RequestBody) -> RequestBody:
    if isinstance(body, TrainRequest):
        return TrainRequest(flush=body.flush, filter_by=list(body.filter_by))
    if isinstance(body, IndexRequest):
        return IndexRequest(filter_by=list(body.filter_by))
    if isinstance(body, SearchRequest):
        return SearchRequest(top_k=body.top_k, filter_by=list(body.filter_by))
    raise TypeError(f"Unsupported request body: {type(body).__name__}")


def _field_mismatches(first: RequestBody, other: RequestBody) -> List[str]:
    problems = []
    if first.filter_by != other.filter_by:
        problems.append(f"filter_by {other.filter_by!r} != {first.filter_by!r}")
    if isinstance(first, SearchRequest) and first.top_k != other.top_k:
        problems.append(f"top_k {other.top_k} != {first.top_k}")
    if isinstance(first, TrainRequest) and first.flush != other.flush:
        problems.append(f"flush {other.flush} != {first.flush}")
    return problems


class _MergeProblems:
    """Collects merge problems as Status.Details."""

    def __init__(self, request_id: int, pod: str, pod_id: str):
        self.request_id = request_id
        self.pod = pod
        self.pod_id = pod_id
        self.details: List[Details] = []

    def add(self, error_cls: type, message: str) -> None:
        logger.warning(f"[GATHER] request {self.request_id}: {error_cls.__name__}: {message}")
        self.details.append(
            details_for(error_cls.__name__, message, pod=self.pod, pod_id=self.pod_id)
        )


def _merge_control(parts: List[Message], problems: _MergeProblems) -> ControlRequest:
    first = parts[0].request.body
    merged = ControlRequest(command=first.command, args=dict(first.args))
    for index, part in enumerate(parts[1:], start=1):
        body = part.request.body
        if not isinstance(body, ControlRequest):
            problems.add(
                InconsistentRequestFields,
                f"part {index} is {body_kind(body)!r}, expected 'control'",
            )
            continue
        if body.command != first.command:
            problems.add(
                InconsistentRequestFields,
                f"part {index} command {body.command.name} != {first.command.name}",
            )
        for key, value in body.args.items():
            merged.args.setdefault(key, value)
    return merged


def _merge_bodies(parts: List[Message], problems: _MergeProblems) -> Optional[RequestBody]:
    first = parts[0].request.body
    kind = body_kind(first)

    if first is None:
        for index, part in enumerate(parts[1:], start=1):
            if part.request.body is not None:
                problems.add(
                    InconsistentRequestFields,
                    f"part {index} is {part.request.kind!r}, first part has no body",
                )
        return None

    if isinstance(first, ControlRequest):
        return _merge_control(parts, problems)

    merged = _empty_like(first)
    docs_by_id: Dict[int, Document] = {}

    for index, part in enumerate(parts):
        body = part.request.body
        if body_kind(body) != kind:
            problems.add(
                InconsistentRequestFields,
                f"part {index} is {body_kind(body)!r}, expected {kind!r}; its documents are skipped",
            )
            continue
        if index > 0:
            for mismatch in _field_mismatches(first, body):
                problems.add(InconsistentRequestFields, f"part {index} {mismatch}")

        for doc in body.docs:
            existing = docs_by_id.get(doc.doc_id)
            if existing is None:
                doc_copy = copy.deepcopy(doc)
                docs_by_id[doc.doc_id] = doc_copy
                merged.docs.append(doc_copy)
            else:
                problems.add(
                    DuplicateDocument,
                    f"doc_id={doc.doc_id} repeated in part {index}, "
                    f"{len(doc.chunks)} chunk(s) appended to the first occurrence",
                )
                existing.chunks.extend(copy.deepcopy(doc.chunks))

    return merged


def merge_parts(parts: List[Message], pod: str = "", pod_id: str = "") -> Message:
    """
    Merge the parts of one logical request into a new Message.

    The first part provides the envelope (innermost num_part popped),
    routes of later parts are appended when not already present.
    Input messages are not modified.
    """
    if not parts:
        raise ValueError("merge_parts() needs at least one part")

    first = parts[0]
    problems = _MergeProblems(first.request_id, pod, pod_id)

    envelope = copy.deepcopy(first.envelope)
    if envelope.num_part:
        envelope.num_part.pop()

    seen_routes = {(r.pod, r.pod_id, r.start_time) for r in envelope.routes}
    for index, part in enumerate(parts[1:], start=1):
        for route in part.envelope.routes:
            key = (route.pod, route.pod_id, route.start_time)
            if key not in seen_routes:
                seen_routes.add(key)
                envelope.routes.append(copy.deepcopy(route))
        if part.envelope.num_part != first.envelope.num_part:
            problems.add(
                InconsistentRequestFields,
                f"part {index} num_part {part.envelope.num_part} != {first.envelope.num_part}",
            )

    body = _merge_bodies(parts, problems)

    status = copy.deepcopy(aggregate_status(p.envelope.status for p in parts))
    if problems.details:
        if status.is_error:
            status.details.extend(problems.details)
        else:
            head = problems.details[0]
            status = Status(
                code=StatusCode.ERROR,
                description=f"{head.exception}: {head.traceback}",
                details=status.details + problems.details,
            )

    envelope.status = status
    request = Request(
        request_id=first.request.request_id,
        body=body,
        status=copy.deepcopy(status),
    )
    return Message(envelope=envelope, request=request)


def _force_error(message: Message, description: str) -> Message:
    status = message.envelope.status
    message.envelope.status = Status(
        code=StatusCode.ERROR,
        description=description,
        details=status.details,
    )
    message.request.status = copy.deepcopy(message.envelope.status)
    return message


# ============================================================================
# Gatherer
# ============================================================================

class PartialRequestGatherer:
    """
    Collects physical parts and dispatches one merged Message per request_id.

    [USAGE]
    ```python
    gatherer = PartialRequestGatherer(on_dispatch=forward, pod="join", pod_id=pid)
    await gatherer.start()          # background sweep of expired buckets

    for msg in incoming:
        gatherer.receive(msg)       # forward() is called once per request

    await gatherer.stop()
    ```

    [THREADS] receive()/tick()/cancel() may be called from several threads;
    different request_ids never contend on the same lock.
    """

    def __init__(
        self,
        table: Optional[GatherTable] = None,
        on_dispatch: Optional[Callable[[Message], None]] = None,
        pod: Optional[str] = None,
        pod_id: Optional[str] = None,
        default_timeout: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            table: bucket table owned by this gatherer
            on_dispatch: called once with every merged Message
            pod: name recorded in Status.Details
            pod_id: id recorded in Status.Details
            default_timeout: seconds, used when Envelope.timeout is 0
            sweep_interval: background sweep period in seconds
            clock: monotonic time source for deadlines
            metrics: collector for gather metrics
        """
        cfg = config.gather
        self.table = table if table is not None else GatherTable()
        self.on_dispatch = on_dispatch
        self.pod = pod if pod is not None else cfg.pod
        self.pod_id = pod_id if pod_id is not None else cfg.pod_id
        self.default_timeout = default_timeout if default_timeout is not None else cfg.default_timeout
        self.sweep_interval = sweep_interval if sweep_interval is not None else cfg.sweep_interval
        self.clock = clock

        self.metrics = metrics or get_metrics()
        self._parts_total = self.metrics.counter("gather_parts_total", "Physical parts received")
        self._dispatched_total = self.metrics.counter(
            "gather_dispatched_total", "Logical requests dispatched", ["outcome"]
        )
        self._late_total = self.metrics.counter("gather_late_parts_total", "Late or duplicate parts dropped")
        self._open_buckets = self.metrics.gauge("gather_open_buckets", "Buckets still collecting")
        self._wait_seconds = self.metrics.histogram(
            "gather_wait_seconds", "Time from first part to dispatch"
        )

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def receive(self, message: Message) -> Optional[Message]:
        """
        Add one physical part.

        Returns:
            The Message dispatched during this call (complete, or timed out
            on access), else None.
        """
        now = self.clock()
        request_id = message.request_id
        self._parts_total.inc()

        bucket, created = self.table.get_or_create(
            request_id, lambda: self._new_bucket(message, now)
        )
        if bucket is None:
            self._drop_late(message, "request already dispatched")
            return None
        if created:
            self._open_buckets.inc()
            logger.debug(
                f"[GATHER] Opened bucket {request_id}: expecting {bucket.expected} part(s), "
                f"timeout={bucket.timeout}s"
            )

        merged: Optional[Message] = None
        late_reason = ""
        with bucket.lock:
            if bucket.state is not GatherState.COLLECTING:
                late_reason = "request already dispatched"
            elif bucket.is_expired(now):
                merged = self._dispatch_locked(
                    bucket, GatherState.TIMED_OUT, now, self._timeout_description(bucket), "timeout"
                )
                late_reason = "arrived after the gather deadline"
            else:
                bucket.parts.append(message)
                if bucket.received >= bucket.expected:
                    merged = self._dispatch_locked(bucket, GatherState.COMPLETE, now)

        if late_reason:
            self._drop_late(message, late_reason)
        if merged is not None:
            self._emit(merged)
        return merged

    def tick(self, now: Optional[float] = None) -> List[Message]:
        """Dispatch every bucket whose deadline has passed."""
        if now is None:
            now = self.clock()

        dispatched = []
        for bucket in self.table.snapshot():
            if not bucket.is_expired(now):
                continue
            with bucket.lock:
                if bucket.state is not GatherState.COLLECTING:
                    continue
                dispatched.append(
                    self._dispatch_locked(
                        bucket, GatherState.TIMED_OUT, now, self._timeout_description(bucket), "timeout"
                    )
                )

        self.table.prune(now)

        # every bucket is already DISPATCHED; deliver all before re-raising
        errors = []
        for merged in dispatched:
            try:
                self._emit(merged)
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]
        return dispatched

    def cancel(self, request_id: int, reason: str = "cancelled by caller") -> Optional[Message]:
        """Force dispatch of an open bucket regardless of its part count."""
        bucket = self.table.get(request_id)
        if bucket is None:
            return None

        now = self.clock()
        with bucket.lock:
            if bucket.state is not GatherState.COLLECTING:
                return None
            description = (
                f"cancelled: {reason} (received {bucket.received} of {bucket.expected} parts)"
            )
            merged = self._dispatch_locked(bucket, GatherState.TIMED_OUT, now, description, "cancelled")

        self._emit(merged)
        return merged

    def pending(self) -> List[Tuple[int, int, int]]:
        """[(request_id, received, expected)] for open buckets."""
        return [(b.request_id, b.received, b.expected) for b in self.table.snapshot()]

    async def start(self) -> None:
        """Start the background sweep of expired buckets."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"[GATHER] Sweep started, interval={self.sweep_interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("[GATHER] Sweep stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_bucket(self, message: Message, now: float) -> GatherBucket:
        return GatherBucket(
            request_id=message.request_id,
            expected=message.envelope.expected_parts,
            timeout=message.envelope.timeout or self.default_timeout,
            created_at=now,
        )

    def _timeout_description(self, bucket: GatherBucket) -> str:
        return (
            f"timeout: received {bucket.received} of {bucket.expected} parts "
            f"for request {bucket.request_id} within {bucket.timeout}s"
        )

    def _dispatch_locked(
        self,
        bucket: GatherBucket,
        outcome: GatherState,
        now: float,
        description: str = "",
        label: str = "complete",
    ) -> Message:
        """Merge and mark DISPATCHED. Caller holds bucket.lock."""
        bucket.state = outcome
        merged = merge_parts(bucket.parts, pod=self.pod, pod_id=self.pod_id)
        if outcome is GatherState.TIMED_OUT:
            _force_error(merged, description)
            logger.warning(f"[GATHER] {description}")
        else:
            logger.debug(
                f"[GATHER] Request {bucket.request_id} complete: {bucket.received} part(s), "
                f"route {routes_to_str(merged.envelope)}"
            )

        bucket.state = GatherState.DISPATCHED
        self.table.mark_dispatched(bucket, now)

        self._open_buckets.dec()
        self._dispatched_total.inc(labels={"outcome": label})
        self._wait_seconds.observe(max(0.0, now - bucket.created_at))
        return merged

    def _drop_late(self, message: Message, reason: str) -> None:
        self._late_total.inc()
        logger.warning(
            f"[GATHER] Dropping part for request {message.request_id} "
            f"from {message.envelope.sender_id or '?'}: {reason}"
        )

    def _emit(self, merged: Message) -> None:
        if self.on_dispatch is None:
            return
        try:
            self.on_dispatch(merged)
        except Exception as e:
            logger.error(f"[GATHER] on_dispatch failed for request {merged.request_id}: {e}")
            raise

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[GATHER] Sweep error: {e}")
