"""roomrelay -- Relay core: subscription, fault monitor, service, writer.

Quick start::

    from roomrelay.relay import RelayService, append_message

    service = RelayService(store, room_code="ABCD")
    service.on_message.subscribe(print)
    await service.initialize()

    await append_message(store, "abcd", "hello")   # room code is upper-cased
"""

from roomrelay.relay.monitor import (
    INDEX_REQUIRED_PREFIX,
    FaultMonitor,
    IndexRequiredFault,
    MonitorOutcome,
    QueryFault,
    classify_fault,
)
from roomrelay.relay.service import EventHook, RelayService, RelayState
from roomrelay.relay.subscription import WatermarkSubscription
from roomrelay.relay.writer import append_message

__all__: list[str] = [
    "EventHook",
    "FaultMonitor",
    "INDEX_REQUIRED_PREFIX",
    "IndexRequiredFault",
    "MonitorOutcome",
    "QueryFault",
    "RelayService",
    "RelayState",
    "WatermarkSubscription",
    "append_message",
    "classify_fault",
]
