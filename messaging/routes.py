"""
Route Tracing
=============

[TRACE] Каждый pod, через который проходит сообщение, оставляет Route
запись в Envelope.routes:

    enter(): append Route(pod, pod_id, start_time=now, end_time=None)
    exit():  close the most recent open Route of the same pod

Routes are append-only: records are never reordered or removed, so the
list is a causal trace of traversal order.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

from .models import Envelope, Route

logger = logging.getLogger(__name__)


class UnbalancedRoute(Exception):
    """exit() without a matching open enter()."""
    pass


class RouteTracer:
    """
    Stamps entry/exit hop records onto envelopes.

    Args:
        clock: time source in seconds, time.time by default
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def enter(self, envelope: Envelope, pod: str, pod_id: str = "") -> Envelope:
        envelope.routes.append(Route(pod=pod, pod_id=pod_id, start_time=self.clock()))
        return envelope

    def exit(self, envelope: Envelope, pod: str, pod_id: str = "") -> Envelope:
        """
        Close the latest open route of this pod.

        Raises:
            UnbalancedRoute: no open route for (pod, pod_id)
        """
        for route in reversed(envelope.routes):
            if route.pod == pod and route.pod_id == pod_id and route.is_open:
                route.end_time = self.clock()
                return envelope
        logger.warning(
            f"[ROUTE] exit() without enter(): pod={pod} pod_id={pod_id or '-'} "
            f"request={envelope.request_id}"
        )
        raise UnbalancedRoute(
            f"No open route for pod={pod!r} pod_id={pod_id!r} "
            f"(request_id={envelope.request_id})"
        )


def route_table(envelope: Envelope) -> List[Tuple[str, str, Optional[float]]]:
    """
    Per-hop durations.

    Returns:
        [(pod, pod_id, seconds or None while the hop is open)]
    """
    table = []
    for route in envelope.routes:
        duration = None
        if route.start_time is not None and route.end_time is not None:
            duration = route.end_time - route.start_time
        table.append((route.pod, route.pod_id, duration))
    return table


def routes_to_str(envelope: Envelope) -> str:
    """'pod1 -> pod2 -> pod3', for log lines."""
    return " -> ".join(route.pod for route in envelope.routes)
