from pydantic import BaseModel, Field
from typing import Dict, List, Optional

class PlayEvent(BaseModel):
    track_id: str
    played_at_ms: int
    track_name: str = ""
    artist_name: str = ""

class PlaylistRef(BaseModel):
    id: str
    name: str

class SpotifyUser(BaseModel):
    id: str
    display_name: Optional[str] = None

class TokenInfo(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: float = 0.0  # Unix seconds
    scope: str = ""

class TrackerStats(BaseModel):
    ticks: int = 0
    ticks_failed: int = 0
    promotions: int = 0
    evictions: int = 0
    manual_additions: int = 0
    manual_removals: int = 0
    last_successful_tick: float = 0.0

class TrackerState(BaseModel):
    after_time: int = 0       # Watermark, ms since epoch
    last_snapshot: str = ""   # Playlist snapshot_id seen by the last full reconcile
    pending_promotions: List[str] = Field(default_factory=list)  # Adds that failed remotely
    stats: TrackerStats = Field(default_factory=TrackerStats)

class ReconcileResult(BaseModel):
    changed: bool = False
    snapshot: str = ""
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)

class TickReport(BaseModel):
    events: int = 0
    aborted: bool = False
    skipped: bool = False
    watermark: int = 0
    decayed: List[str] = Field(default_factory=list)
    evicted: List[str] = Field(default_factory=list)
    promoted: List[str] = Field(default_factory=list)
    failed_writes: List[str] = Field(default_factory=list)
    counts: Dict[str, int] = Field(default_factory=dict)
    reconcile: Optional[ReconcileResult] = None
