"""SSE passthrough: line reassembly, client channel and usage extraction."""

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol

import httpx

from llm_gateway.usage import TokenUsage, token_count

logger = logging.getLogger(__name__)


class ClientChannel(Protocol):
    async def send(self, data: bytes) -> bool:
        """Deliver bytes to the client. False means the client is gone."""
        ...


class QueueChannel:
    """Bounded hand-off between the upstream reader and the HTTP response body."""

    def __init__(self, maxsize: int = 64):
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> bool:
        if self._closed:
            return False
        await self._queue.put(data)
        return not self._closed

    def close(self) -> None:
        """Called by the consumer when the client disconnects."""
        self._closed = True

    async def finish(self) -> None:
        """Called by the producer after the last chunk."""
        if self._closed or self._finished:
            return
        self._finished = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            await self._queue.put(None)

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


def _int_field(data: dict, name: str) -> int:
    return token_count(data.get(name))


class StreamUsageTracker:
    """Watches forwarded SSE lines for the usage carried by Messages events.

    ``message_start`` supplies input and cache token counts and the model;
    the first ``message_delta`` with ``output_tokens`` completes the usage
    and hands it to ``on_usage``. Later deltas are ignored.
    """

    def __init__(self, on_usage: Callable[[TokenUsage], None]):
        self.on_usage = on_usage
        self.usage: Optional[TokenUsage] = None
        self.reported = False

    def observe_line(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except ValueError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message")
            if not isinstance(message, dict):
                return
            usage = message.get("usage")
            if not isinstance(usage, dict):
                return
            model = message.get("model")
            self.usage = TokenUsage(
                model=model if isinstance(model, str) else None,
                input_tokens=_int_field(usage, "input_tokens"),
                cache_creation_tokens=_int_field(usage, "cache_creation_input_tokens"),
                cache_read_tokens=_int_field(usage, "cache_read_input_tokens"),
            )
        elif event_type == "message_delta":
            usage = event.get("usage")
            if (
                self.reported
                or self.usage is None
                or not isinstance(usage, dict)
                or "output_tokens" not in usage
            ):
                return
            self.usage.output_tokens = _int_field(usage, "output_tokens")
            self.reported = True
            self.on_usage(self.usage)


@dataclass
class RelayStats:
    lines: int = 0
    bytes_sent: int = 0
    client_disconnected: bool = False


async def relay_stream(
    response: httpx.Response,
    channel: ClientChannel,
    tracker: Optional[StreamUsageTracker] = None,
) -> RelayStats:
    """Forward an upstream SSE body line by line, releasing it on every exit path."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    stats = RelayStats()
    buffer = ""

    async def forward(line: str) -> bool:
        data = line.encode("utf-8")
        if not await channel.send(data):
            stats.client_disconnected = True
            return False
        stats.lines += 1
        stats.bytes_sent += len(data)
        if tracker is not None:
            try:
                tracker.observe_line(line)
            except Exception:
                logger.exception("Ignoring unreadable usage metadata in stream")
        return True

    try:
        async for chunk in response.aiter_bytes():
            buffer += decoder.decode(chunk)
            lines = buffer.split("\n")
            buffer = lines.pop()
            for line in lines:
                if not await forward(line + "\n"):
                    logger.info("Client disconnected, stopped reading upstream stream")
                    return stats

        buffer += decoder.decode(b"", final=True)
        if buffer:
            await forward(buffer)
    finally:
        await response.aclose()
    return stats
