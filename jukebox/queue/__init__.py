from jukebox.queue.coordinator import QueueCoordinator
from jukebox.queue.selector import NextTrackSelector
from jukebox.queue.store import RedisQueueStore
from jukebox.queue.types import Lane, QueueEntry

__all__ = [
    "Lane",
    "NextTrackSelector",
    "QueueCoordinator",
    "QueueEntry",
    "RedisQueueStore",
]
