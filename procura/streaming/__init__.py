from .activity import ActivityFeed, ActivityTracker, Service
from .bus import StreamBus, StreamBusConfig
from .contracts import RunEvent, RunEventType

__all__ = [
    "ActivityFeed",
    "ActivityTracker",
    "RunEvent",
    "RunEventType",
    "Service",
    "StreamBus",
    "StreamBusConfig",
]
