from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

AVERAGE_TRACK_DURATION_SECONDS = 210


class Lane(str, Enum):
    PRIORITY = "priority"
    STANDARD = "standard"


@dataclass(frozen=True, slots=True)
class QueueEntry:
    track_id: str
    title: str
    duration_seconds: int
    lane: Lane
    requested_by: str
    venue_id: str
    added_at: datetime
    thumbnail: str = ""
    request_id: str = ""
    cost: int = 0

    def to_json(self) -> str:
        payload = asdict(self)
        payload["lane"] = self.lane.value
        payload["added_at"] = self.added_at.isoformat()
        return json.dumps(payload, separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> QueueEntry:
        payload = json.loads(raw)
        return cls(
            track_id=str(payload["track_id"]),
            title=str(payload["title"]),
            duration_seconds=int(payload["duration_seconds"]),
            lane=Lane(payload["lane"]),
            requested_by=str(payload["requested_by"]),
            venue_id=str(payload["venue_id"]),
            added_at=datetime.fromisoformat(payload["added_at"]),
            thumbnail=str(payload.get("thumbnail") or ""),
            request_id=str(payload.get("request_id") or ""),
            cost=int(payload.get("cost") or 0),
        )

    def as_event_payload(self) -> dict[str, object]:
        return {
            "track_id": self.track_id,
            "title": self.title,
            "thumbnail": self.thumbnail,
            "duration_seconds": self.duration_seconds,
            "lane": self.lane.value,
            "requested_by": self.requested_by,
            "added_at": self.added_at.isoformat(),
        }


@dataclass(slots=True)
class QueueState:
    venue_id: str
    current: QueueEntry | None
    priority: list[QueueEntry] = field(default_factory=list)
    standard: list[QueueEntry] = field(default_factory=list)
    active_track_ids: set[str] = field(default_factory=set)

    @property
    def ordered(self) -> list[QueueEntry]:
        return [*self.priority, *self.standard]


@dataclass(slots=True)
class QueueStats:
    venue_id: str
    total_tracks: int
    priority_count: int
    standard_count: int
    active_users: int
    estimated_wait_seconds: int
