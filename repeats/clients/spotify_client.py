import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import httpx
from ..exceptions import SpotifyAPIError, SpotifyAuthError, SpotifyRateLimitError
from ..models import PlayEvent, PlaylistRef, SpotifyUser
from .auth import SpotifyAuth

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")

def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"

def parse_played_at(value: str) -> int:
    """ISO-8601 `played_at` (e.g. 2024-05-01T10:00:00.123Z) -> ms since epoch."""
    value = value.replace("Z", "+00:00")
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))

class SpotifyClient:
    def __init__(self, auth: SpotifyAuth, base_url: str = "https://api.spotify.com/v1",
                 timeout: float = 30, dry_run: bool = False,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.auth = auth
        self.dry_run = dry_run
        self.client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            timeout=timeout
        )

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, params: Optional[Dict] = None,
                       json: Optional[Dict] = None) -> Dict[str, Any]:
        token = await self.auth.get_access_token()
        try:
            resp = await self.client.request(
                method, path, params=params, json=json,
                headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.TimeoutException as e:
            raise SpotifyAPIError(f"Timed out calling {method} {path}") from e
        except httpx.HTTPError as e:
            raise SpotifyAPIError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 401:
            raise SpotifyAuthError(f"Spotify rejected the session on {method} {path}", status_code=401)
        if resp.status_code == 429:
            retry_after = float(resp.headers.get("Retry-After", 0))
            raise SpotifyRateLimitError(f"Rate limited on {method} {path}, retry after {retry_after}s",
                                        retry_after=retry_after)
        if resp.status_code >= 400:
            raise SpotifyAPIError(f"{method} {path} returned {resp.status_code}: {resp.text}",
                                  status_code=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise SpotifyAPIError(f"{method} {path} returned a malformed body: {e}",
                                  status_code=resp.status_code) from e

    async def get_current_user(self) -> SpotifyUser:
        data = await self._request("GET", "/me")
        return SpotifyUser(id=data["id"], display_name=data.get("display_name"))

    async def get_recently_played(self, after_ms: int = 0, limit: int = 50) -> List[PlayEvent]:
        """Plays strictly after `after_ms`, newest first, one page."""
        params: Dict[str, Any] = {"limit": limit}
        if after_ms:
            params["after"] = after_ms
        data = await self._request("GET", "/me/player/recently-played", params=params)

        events = []
        for item in data.get("items", []):
            track = item.get("track") or {}
            track_id = track.get("id")
            played_at = item.get("played_at")
            if not track_id or not played_at:
                continue
            try:
                played_at_ms = parse_played_at(played_at)
            except ValueError:
                logger.warning(f"Skipping play of {track_id} with unreadable played_at {played_at!r}")
                continue
            artists = track.get("artists") or [{}]
            events.append(PlayEvent(
                track_id=track_id,
                played_at_ms=played_at_ms,
                track_name=track.get("name", ""),
                artist_name=artists[0].get("name", ""),
            ))
        events.sort(key=lambda e: e.played_at_ms, reverse=True)
        return events

    async def get_playlist_snapshot(self, playlist_id: str) -> str:
        data = await self._request("GET", f"/playlists/{playlist_id}", params={"fields": "snapshot_id"})
        return data.get("snapshot_id", "")

    async def get_playlist_items(self, playlist_id: str, limit: int = 50, offset: int = 0) -> List[Optional[str]]:
        """
        One page of track ids. Items without an id (local files) stay in the
        page as None so callers can tell a short page from a full one.
        """
        data = await self._request(
            "GET", f"/playlists/{playlist_id}/tracks",
            params={"limit": limit, "offset": offset, "fields": "items(track(id))"}
        )
        return [(item.get("track") or {}).get("id") for item in data.get("items", [])]

    async def add_track(self, playlist_id: str, track_id: str):
        if self.dry_run:
            logger.info(f"[DRY RUN] Would add {track_id} to playlist {playlist_id}")
            return
        await self._request("POST", f"/playlists/{playlist_id}/tracks", json={"uris": [track_uri(track_id)]})

    async def remove_track(self, playlist_id: str, track_id: str):
        if self.dry_run:
            logger.info(f"[DRY RUN] Would remove {track_id} from playlist {playlist_id}")
            return
        await self._request(
            "DELETE", f"/playlists/{playlist_id}/tracks",
            json={"tracks": [{"uri": track_uri(track_id)}]}
        )

    async def get_user_playlists(self, user_id: str, limit: int = 50, offset: int = 0) -> List[PlaylistRef]:
        data = await self._request(
            "GET", f"/users/{user_id}/playlists", params={"limit": limit, "offset": offset}
        )
        return [
            PlaylistRef(id=item["id"], name=item.get("name", ""))
            for item in data.get("items", []) if item and item.get("id")
        ]

    async def find_playlist(self, user_id: str, name: str, page_size: int = 50,
                            max_pages: int = 200) -> Optional[PlaylistRef]:
        offset = 0
        for _ in range(max_pages):
            page = await self.get_user_playlists(user_id, limit=page_size, offset=offset)
            for playlist in page:
                if playlist.name == name:
                    return playlist
            if len(page) < page_size:
                break
            offset += page_size
        return None

    async def create_playlist(self, user_id: str, name: str, description: str = "") -> PlaylistRef:
        data = await self._request(
            "POST", f"/users/{user_id}/playlists",
            json={"name": name, "description": description, "public": False}
        )
        return PlaylistRef(id=data["id"], name=data.get("name", name))
