"""Pipeline stages, progress events and cancellation tokens."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"  # voice only
    ANALYZING = "analyzing"  # image only
    SUMMARIZING = "summarizing"
    EXTRACTING_ENTITIES = "extractingEntities"
    RESOLVING_LOCATIONS = "resolvingLocations"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)


STAGE_FRACTIONS: dict[Stage, float] = {
    Stage.UPLOADING: 0.1,
    Stage.TRANSCRIBING: 0.3,
    Stage.ANALYZING: 0.3,
    Stage.SUMMARIZING: 0.5,
    Stage.EXTRACTING_ENTITIES: 0.65,
    Stage.RESOLVING_LOCATIONS: 0.8,
    Stage.FINALIZING: 0.9,
    Stage.COMPLETE: 1.0,
}


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    fraction: float
    message: str


ProgressSink = Callable[[ProgressEvent], None]


class ProgressChannel:
    """A progress sink that can also be consumed with ``async for``.

    Iteration ends after the terminal (``complete`` or ``error``) event.
    """

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._done = False

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)
        self._queue.put_nowait(event)

    @property
    def stages(self) -> list[Stage]:
        return [e.stage for e in self.events]

    def __aiter__(self) -> ProgressChannel:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.stage.is_terminal:
            self._done = True
        return event


class CancellationToken:
    """Cooperative cancellation, honored at stage boundaries only."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled
