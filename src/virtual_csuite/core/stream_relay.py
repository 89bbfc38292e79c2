"""
Streaming synthesis relay.

Events for one chat turn travel over a single :class:`EventChannel`: a
bounded queue written by one producer task and read once, front to back, by
the consumer. The producer blocks while an event is pending, so at most one
event is ever buffered.

:class:`StreamRelay` drives the synthesis part of the turn through a
fallback ladder, moving to the next stage only if the previous one raised
before producing any text:

    1. consultation-informed stream
    2. plain stream (no consultation context)
    3. blocking call, delivered as one ``synthesis_complete``
    4. generic ``error`` event

State machine: ``idle -> streaming -> complete | error``. Exactly one
terminal event is emitted; anything emitted afterwards is dropped.
"""

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
)

from virtual_csuite.core.errors import ChainExhaustedError, StreamDecodeError
from virtual_csuite.core.sse import iter_tokens

logger = logging.getLogger(__name__)

END_OF_STREAM = "data: [DONE]\n\n"

GENERIC_ERROR = "Failed to generate response"
GENERIC_ERROR_MESSAGE = (
    "Sorry, I'm having trouble responding right now. Please try again in a moment."
)


# =============================================================================
# Events
# =============================================================================


class EventType(str, Enum):
    """Tags of the events delivered to the caller."""

    DECISION = "decision"
    CONSULTATION = "consultation"
    SYNTHESIS_START = "synthesis_start"
    SYNTHESIS_CHUNK = "synthesis_chunk"
    SYNTHESIS_COMPLETE = "synthesis_complete"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_SYNTHESIS_EVENTS = frozenset(
    {EventType.SYNTHESIS_COMPLETE, EventType.ERROR}
)


@dataclass(frozen=True)
class StreamEvent:
    """One tagged event with its payload."""

    type: EventType
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type.value}
        if self.data is not None:
            result["data"] = self.data
        return result

    def to_sse(self) -> str:
        """Serialize as one SSE frame."""
        return f"data: {json.dumps(self.to_dict(), separators=(',', ':'))}\n\n"


def error_event(total_duration_ms: int) -> StreamEvent:
    """The caller-facing terminal error. Never carries backend detail."""
    return StreamEvent(
        EventType.ERROR,
        {
            "error": GENERIC_ERROR,
            "message": GENERIC_ERROR_MESSAGE,
            "totalDuration": total_duration_ms,
        },
    )


# =============================================================================
# Channel
# =============================================================================

_CLOSED = object()


class EventChannel:
    """Single-producer, single-consumer event queue holding at most one event."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=1)
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: StreamEvent) -> None:
        """Wait until the consumer has room, then enqueue ``event``.

        Raises:
            RuntimeError: If the channel is closed
        """
        if self._closed:
            raise RuntimeError("Cannot send on a closed event channel")
        await self._queue.put(event)

    async def close(self) -> None:
        """Deliver the end-of-stream marker after any pending event."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("Event channel can only be consumed once")
        self._consumed = True
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


async def run_with_channel(
    producer: Callable[[EventChannel], Awaitable[None]],
) -> AsyncIterator[StreamEvent]:
    """Run ``producer`` as a task and yield the events it sends, in order.

    If the consumer stops early, the producer task is cancelled along with
    any backend call it is waiting on. An unexpected producer exception is
    re-raised to the consumer after the events sent before it.
    """
    channel = EventChannel()

    async def produce() -> None:
        try:
            await producer(channel)
        except asyncio.CancelledError:
            raise
        except Exception:
            await channel.close()
            raise
        await channel.close()

    task = asyncio.create_task(produce())
    try:
        async for event in channel:
            yield event
        await task
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# =============================================================================
# Relay
# =============================================================================


class RelayState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class StreamStage:
    """A streaming stage: ``open`` returns a token source once the stream is up.

    The source may be a raw SSE byte stream or an async iterable of
    structured chunks.
    """

    name: str
    open: Callable[[], Awaitable[AsyncIterable[Any]]]


class StreamRelay:
    """Drives one synthesis through the fallback ladder.

    Args:
        emit: Coroutine delivering an event to the caller (usually
            ``EventChannel.send``)
        started_at: ``time.monotonic()`` at the start of the turn, for the
            duration reported in the error event
    """

    def __init__(
        self,
        emit: Callable[[StreamEvent], Awaitable[None]],
        *,
        started_at: Optional[float] = None,
    ):
        self._emit = emit
        self._started_at = started_at if started_at is not None else time.monotonic()
        self.state = RelayState.IDLE
        self.reply = ""
        self.chunks_emitted = 0
        self.stage_used: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in (RelayState.COMPLETE, RelayState.ERROR)

    async def emit(self, event: StreamEvent) -> bool:
        """Emit ``event`` unless the relay is terminal. Returns whether it was sent."""
        if self.terminal:
            logger.warning(
                f"Dropping {event.type.value} event emitted after the terminal event"
            )
            return False
        if event.type in TERMINAL_SYNTHESIS_EVENTS:
            self.state = (
                RelayState.COMPLETE
                if event.type == EventType.SYNTHESIS_COMPLETE
                else RelayState.ERROR
            )
        await self._emit(event)
        return True

    async def run(
        self,
        stages: Sequence[StreamStage],
        blocking: Optional[Callable[[], Awaitable[str]]] = None,
    ) -> Optional[str]:
        """Run the ladder. Returns the full reply, or None if it ended in error.

        Raises:
            RuntimeError: If the relay has already run
        """
        if self.state != RelayState.IDLE:
            raise RuntimeError(f"StreamRelay already ran (state={self.state.value})")
        self.state = RelayState.STREAMING
        await self._emit(StreamEvent(EventType.SYNTHESIS_START))

        stage_errors: List[BaseException] = []
        for stage in stages:
            try:
                await self._relay_stage(stage)
            except Exception as exc:
                stage_errors.append(exc)
                if self.chunks_emitted:
                    # Restarting on another stage would repeat text already sent
                    logger.error(
                        f"Stream stage '{stage.name}' failed after "
                        f"{self.chunks_emitted} chunks: {exc}"
                    )
                    await self._fail(stage_errors)
                    return None
                logger.warning(f"Stream stage '{stage.name}' failed: {exc}")
                continue
            self.stage_used = stage.name
            await self.emit(
                StreamEvent(EventType.SYNTHESIS_COMPLETE, {"reply": self.reply})
            )
            return self.reply

        if blocking is not None:
            try:
                reply = await blocking()
            except Exception as exc:
                stage_errors.append(exc)
                logger.warning(f"Blocking fallback failed: {exc}")
            else:
                self.stage_used = "blocking"
                self.reply = reply
                await self.emit(
                    StreamEvent(EventType.SYNTHESIS_COMPLETE, {"reply": reply})
                )
                return reply

        await self._fail(stage_errors)
        return None

    async def _relay_stage(self, stage: StreamStage) -> None:
        source = await stage.open()
        try:
            async with aclosing(iter_tokens(source)) as tokens:
                async for token in tokens:
                    self.reply += token
                    self.chunks_emitted += 1
                    await self.emit(
                        StreamEvent(
                            EventType.SYNTHESIS_CHUNK,
                            {"token": token, "accumulated": self.reply},
                        )
                    )
        finally:
            close = getattr(source, "aclose", None)
            if close is not None:
                await close()
        if not self.chunks_emitted:
            raise StreamDecodeError(f"Stream stage '{stage.name}' produced no tokens")

    async def _fail(self, stage_errors: List[BaseException]) -> None:
        exhausted = ChainExhaustedError(
            "Every synthesis stage failed", stage_errors=stage_errors
        )
        logger.error(
            f"{exhausted}: "
            + "; ".join(f"{type(e).__name__}: {e}" for e in exhausted.stage_errors)
        )
        total = int((time.monotonic() - self._started_at) * 1000)
        await self.emit(error_event(total))
