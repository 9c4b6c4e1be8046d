"""Client-facing relay sinks."""

from chatrelay.relay.sink import ClientFrame, CollectingSink, QueueSink, RelaySink

__all__ = [
    "ClientFrame",
    "CollectingSink",
    "QueueSink",
    "RelaySink",
]
