import asyncio
from typing import Dict, List, Optional
from repeats.exceptions import SpotifyAPIError
from repeats.models import PlayEvent

class FakeSpotifyClient:
    """In-memory stand-in for SpotifyClient. Every playlist write bumps the snapshot id."""

    def __init__(self, playlist: Optional[List[str]] = None):
        self.playlist: List[str] = list(playlist or [])
        self.revision = 0
        self.batches: List[List[PlayEvent]] = []
        self.clock = 1_700_000_000_000
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}  # method name -> exception to raise
        self.fail_offsets: Dict[int, Exception] = {}  # playlist page offset -> exception
        self.gate: Optional[asyncio.Event] = None

    @property
    def snapshot(self) -> str:
        return f"snap-{self.revision}"

    def edit_playlist(self, add: List[str] = (), remove: List[str] = ()):
        """Simulates a manual edit made in the Spotify app."""
        for track_id in remove:
            self.playlist.remove(track_id)
        self.playlist.extend(add)
        self.revision += 1

    def queue_plays(self, *track_ids: str):
        """Queues one batch of plays, oldest first in the arguments."""
        events = []
        for track_id in track_ids:
            self.clock += 1000
            events.append(PlayEvent(track_id=track_id, played_at_ms=self.clock, track_name=f"Song {track_id}"))
        self.batches.append(list(reversed(events)))

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def _check(self, method: str):
        if method in self.errors:
            raise self.errors[method]

    async def get_playlist_snapshot(self, playlist_id: str) -> str:
        self.calls.append(("get_playlist_snapshot", playlist_id))
        if self.gate is not None:
            await self.gate.wait()
        self._check("get_playlist_snapshot")
        return self.snapshot

    async def get_playlist_items(self, playlist_id: str, limit: int = 50, offset: int = 0) -> List[Optional[str]]:
        self.calls.append(("get_playlist_items", playlist_id, limit, offset))
        self._check("get_playlist_items")
        if offset in self.fail_offsets:
            raise self.fail_offsets[offset]
        return self.playlist[offset:offset + limit]

    async def get_recently_played(self, after_ms: int = 0, limit: int = 50) -> List[PlayEvent]:
        self.calls.append(("get_recently_played", after_ms, limit))
        self._check("get_recently_played")
        if not self.batches:
            return []
        return self.batches.pop(0)[:limit]

    async def add_track(self, playlist_id: str, track_id: str):
        self.calls.append(("add_track", playlist_id, track_id))
        self._check("add_track")
        self.playlist.append(track_id)
        self.revision += 1

    async def remove_track(self, playlist_id: str, track_id: str):
        self.calls.append(("remove_track", playlist_id, track_id))
        self._check("remove_track")
        if track_id in self.playlist:
            self.playlist = [t for t in self.playlist if t != track_id]
        self.revision += 1

def api_error(message: str = "boom") -> SpotifyAPIError:
    return SpotifyAPIError(message, status_code=503)
