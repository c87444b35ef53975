from __future__ import annotations

from jukebox.queue.store import QueueStore
from jukebox.queue.types import Lane, QueueEntry

LANE_ORDER: tuple[Lane, ...] = (Lane.PRIORITY, Lane.STANDARD)


class NextTrackSelector:
    """Priority lane drains first, each lane is FIFO.

    No weighting and no starvation protection for the standard lane: it plays
    only once the priority lane is empty.
    """

    def __init__(self, lane_order: tuple[Lane, ...] = LANE_ORDER) -> None:
        self._lane_order = lane_order

    @property
    def lane_order(self) -> tuple[Lane, ...]:
        return self._lane_order

    async def pop_next(self, store: QueueStore, venue_id: str) -> QueueEntry | None:
        for lane in self._lane_order:
            entry = await store.pop_entry(venue_id, lane)
            if entry is not None:
                return entry
        return None

    def peek_order(self, priority: list[QueueEntry], standard: list[QueueEntry]) -> list[QueueEntry]:
        by_lane = {Lane.PRIORITY: priority, Lane.STANDARD: standard}
        return [entry for lane in self._lane_order for entry in by_lane[lane]]
