"""Helpers for producing server-sent event (SSE) streams."""

import asyncio
import json
from collections.abc import AsyncIterator

from devlink.broadcast import Subscriber

SSE_KEEPALIVE = b": keepalive\n\n"


def sse_event(event: str, data: dict) -> bytes:
    """Serialize an event payload into SSE wire format."""
    payload = json.dumps(data, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


async def artifact_stream(
    subscriber: Subscriber, heartbeat_seconds: float
) -> AsyncIterator[bytes]:
    """Yield SSE chunks for a subscriber until its channel closes.

    A keepalive comment is sent whenever no update arrives within
    heartbeat_seconds.
    """
    while True:
        try:
            update = await asyncio.wait_for(
                subscriber.get(), timeout=heartbeat_seconds
            )
        except asyncio.TimeoutError:
            yield SSE_KEEPALIVE
            continue
        if update is None:
            return
        yield sse_event("artifact", update.to_dict())
