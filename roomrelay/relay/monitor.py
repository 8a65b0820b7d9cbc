"""
roomrelay -- Fault monitor for the live query.

Runs once per scheduler tick.  It only *polls* the listening task of the
current subscription handle; it never blocks on I/O unless termination is
already known, in which case it awaits the (brief) teardown.

Outcomes
--------
    IDLE       no handle open (never started, or already torn down)
    ACTIVE     the listening task is still running -- leave it alone
    COMPLETED  the task ended without an error; unexpected under normal
               operation, so it is torn down exactly like a fault
    FAULTED    the task ended with an error, or a restart could not reopen
               the query; classified, logged, torn down

The monitor never reopens a subscription.  Recovery is an explicit
external action (re-initialising the relay).
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from roomrelay.observability.metrics import RelayMetrics
from roomrelay.relay.subscription import WatermarkSubscription

logger = logging.getLogger(__name__)

# Query planners reject range+equality queries without a composite index
INDEX_REQUIRED_PREFIX: str = "The query requires an index"


# --------------------------------------------------------------------------- #
# Exceptions
# --------------------------------------------------------------------------- #


class QueryFault(Exception):
    """The listening task of a live query terminated with an error."""

    kind: str = "query"

    def __init__(self, collection: str, cause: BaseException) -> None:
        self.collection = collection
        self.cause = cause
        super().__init__(
            f"Live query on '{collection}' faulted: "
            f"{type(cause).__name__}: {cause}"
        )


class IndexRequiredFault(QueryFault):
    """The store refused the query until an index is created out-of-band."""

    kind = "index_required"


def classify_fault(collection: str, error: BaseException) -> QueryFault:
    """Wrap a listener error in the matching :class:`QueryFault` subtype.

    The index check looks at the error text and at its direct cause, since
    store clients commonly re-raise transport errors wrapped.
    """
    if isinstance(error, QueryFault):
        return error
    for candidate in (error, error.__cause__):
        if candidate is not None and str(candidate).startswith(INDEX_REQUIRED_PREFIX):
            return IndexRequiredFault(collection, error)
    return QueryFault(collection, error)


class MonitorOutcome(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAULTED = "faulted"


# --------------------------------------------------------------------------- #
# Monitor
# --------------------------------------------------------------------------- #


class FaultMonitor:
    """Per-tick health check of a :class:`WatermarkSubscription`.

    Args:
        verbose: Log clean terminations / teardown at INFO.
        metrics: Optional :class:`RelayMetrics` (``faults`` counter).
    """

    def __init__(
        self,
        verbose: bool = False,
        metrics: Optional[RelayMetrics] = None,
    ) -> None:
        self._verbose: bool = verbose
        self._metrics: Optional[RelayMetrics] = metrics
        self.last_fault: Optional[QueryFault] = None
        self.checks: int = 0

    async def check(self, subscription: WatermarkSubscription) -> MonitorOutcome:
        self.checks += 1
        handle = subscription.handle
        if handle is None:
            if subscription.reopen_error is None:
                return MonitorOutcome.IDLE
            # Restart closed the old query but the new one never opened
            return await self._fault(
                subscription, subscription.collection, subscription.reopen_error
            )
        if not handle.done():
            return MonitorOutcome.ACTIVE

        error = handle.error()
        if error is None:
            self.last_fault = None
            if self._verbose:
                logger.info(
                    "Live query for room [%s] completed without error; "
                    "stopping document monitor",
                    subscription.room_code,
                )
            self._count("completed")
            await subscription.stop()
            return MonitorOutcome.COMPLETED

        return await self._fault(subscription, handle.query.collection, error)

    async def _fault(
        self,
        subscription: WatermarkSubscription,
        collection: str,
        error: BaseException,
    ) -> MonitorOutcome:
        fault = classify_fault(collection, error)
        self.last_fault = fault
        if isinstance(fault, IndexRequiredFault):
            logger.error(
                "The store requires an index on (roomCode, timestamp) for "
                "collection '%s'. It must be created out-of-band by an "
                "operator; see the error below for details.",
                fault.collection,
            )
        logger.error(
            "Live query for room [%s] faulted: %s",
            subscription.room_code,
            error,
            exc_info=error,
        )
        self._count(fault.kind)

        if self._verbose:
            logger.info("Stopping document monitor for room [%s]", subscription.room_code)
        await subscription.stop()
        return MonitorOutcome.FAULTED

    def _count(self, kind: str) -> None:
        if self._metrics is not None:
            self._metrics.faults.labels(kind=kind).inc()
