"""
Status Aggregation
==================

[STATUS] Сведение статусов всех hops/parts в один итоговый Status.

Precedence (independent of arrival order):

    ERROR family  >  PENDING  >  SUCCESS        (READY only for empty input)

- first error by input order wins code and description
- details of every input are concatenated in input order
"""

import time
import traceback
from typing import Iterable, List, Optional

from .models import Details, Status, StatusCode


def aggregate_status(statuses: Iterable[Status]) -> Status:
    """
    Combine an ordered sequence of Status values.

    Returns a new Status; inputs are not modified.
    """
    statuses = list(statuses)
    if not statuses:
        return Status(code=StatusCode.READY)

    details: List[Details] = []
    for status in statuses:
        details.extend(status.details)

    first_error: Optional[Status] = next((s for s in statuses if s.is_error), None)
    if first_error is not None:
        return Status(
            code=first_error.code,
            description=first_error.description,
            details=details,
        )

    if any(s.code == StatusCode.PENDING for s in statuses):
        return Status(code=StatusCode.PENDING, details=details)

    return Status(code=StatusCode.SUCCESS, details=details)


class StatusAggregator:
    aggregate = staticmethod(aggregate_status)


def details_for(
    exception: str,
    message: str = "",
    pod: str = "",
    pod_id: str = "",
    executor: str = "",
) -> Details:
    return Details(
        pod=pod,
        pod_id=pod_id,
        executor=executor,
        exception=exception,
        traceback=message,
        time=time.time(),
    )


def status_from_exception(
    exc: BaseException,
    pod: str = "",
    pod_id: str = "",
    executor: str = "",
) -> Status:
    """
    ERROR status with one Details entry describing exc.

    [USAGE]
        try:
            executor.apply(req)
        except Exception as e:
            req.status = status_from_exception(e, pod="encoder", pod_id=pid)
    """
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return Status(
        code=StatusCode.ERROR,
        description=f"{type(exc).__name__}: {exc}",
        details=[details_for(type(exc).__name__, tb, pod, pod_id, executor)],
    )
