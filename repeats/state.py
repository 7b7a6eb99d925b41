import logging
from typing import Dict, Iterator, List, Optional
from .models import TrackerState

logger = logging.getLogger(__name__)

class FrequencyStore:
    """
    In-memory play counter, track id -> count.

    Every stored count satisfies 0 < count <= limit. A count that would drop
    to zero removes the entry instead; absence means "untracked".
    """

    def __init__(self, limit: int, threshold: int):
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1, got {threshold}")
        if limit < threshold:
            raise ValueError(f"limit ({limit}) must be >= threshold ({threshold})")
        self.limit = limit
        self.threshold = threshold
        self._counts: Dict[str, int] = {}

    def increment(self, track_id: str) -> int:
        if track_id not in self._counts:
            self._counts[track_id] = 1
        else:
            self._counts[track_id] = min(self._counts[track_id] + 1, self.limit)
        return self._counts[track_id]

    def decrement(self, track_id: str) -> bool:
        """Returns True when the track was evicted."""
        if track_id not in self._counts:
            logger.debug(f"Decrement of untracked track {track_id} ignored")
            return False
        count = self._counts[track_id] - 1
        if count <= 0:
            del self._counts[track_id]
            return True
        self._counts[track_id] = count
        return False

    def seed(self, track_id: str, value: Optional[int] = None) -> int:
        """Force-set a count for a track found in the playlist. Never above the threshold."""
        if value is None:
            value = self.threshold
        if value < 1:
            raise ValueError(f"seed value must be at least 1, got {value}")
        self._counts[track_id] = min(value, self.threshold)
        return self._counts[track_id]

    def remove(self, track_id: str) -> bool:
        return self._counts.pop(track_id, None) is not None

    def contains(self, track_id: str) -> bool:
        return track_id in self._counts

    def get(self, track_id: str) -> int:
        return self._counts.get(track_id, 0)

    def track_ids(self) -> List[str]:
        return list(self._counts)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._counts)

    def __contains__(self, track_id: object) -> bool:
        return track_id in self._counts

    def __len__(self) -> int:
        return len(self._counts)

    def __iter__(self) -> Iterator[str]:
        return iter(self.track_ids())

class StateManager:
    """Process-lifetime tracker state: counters, watermark, snapshot token."""

    def __init__(self, limit: int, threshold: int):
        self.store = FrequencyStore(limit, threshold)
        self.state = TrackerState()

    @property
    def threshold(self) -> int:
        return self.store.threshold

    def advance_watermark(self, played_at_ms: int) -> int:
        if played_at_ms > self.state.after_time:
            self.state.after_time = played_at_ms
        return self.state.after_time

    def add_pending(self, track_id: str):
        if track_id not in self.state.pending_promotions:
            self.state.pending_promotions.append(track_id)

    def discard_pending(self, track_id: str):
        if track_id in self.state.pending_promotions:
            self.state.pending_promotions.remove(track_id)

    def is_pending(self, track_id: str) -> bool:
        return track_id in self.state.pending_promotions
