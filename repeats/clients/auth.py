import asyncio
import logging
import secrets
import time
from typing import Dict, Optional
from urllib.parse import urlencode
import httpx
from ..exceptions import SpotifyAPIError, SpotifyAuthError, SpotifyAuthStateError, SpotifyRateLimitError
from ..models import TokenInfo

logger = logging.getLogger(__name__)

SCOPES = [
    "user-read-private",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-read-recently-played",
]
STATE_TTL_SECONDS = 600
REFRESH_MARGIN_SECONDS = 60

class SpotifyAuth:
    """Authorization-code OAuth flow for a single Spotify user."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 accounts_url: str = "https://accounts.spotify.com", timeout: float = 30,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.client = http_client or httpx.AsyncClient(
            base_url=accounts_url.rstrip('/'),
            timeout=timeout
        )
        self.accounts_url = accounts_url.rstrip('/')
        self.token: Optional[TokenInfo] = None
        self._states: Dict[str, float] = {}  # state -> issued at
        self._authenticated = asyncio.Event()

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def authorize_url(self) -> str:
        now = time.time()
        for expired in [s for s, t in self._states.items() if now - t > STATE_TTL_SECONDS]:
            del self._states[expired]

        state = secrets.token_urlsafe(16)
        self._states[state] = now
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{self.accounts_url}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, state: Optional[str]) -> TokenInfo:
        if not state or state not in self._states:
            raise SpotifyAuthStateError(f"Unknown or expired OAuth state: {state!r}")
        del self._states[state]

        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        self.token = self._parse_token(data)
        self._authenticated.set()
        logger.info("Spotify authorization complete")
        return self.token

    async def wait_for_token(self, timeout: Optional[float] = None) -> TokenInfo:
        """Block until the login callback has delivered a token."""
        await asyncio.wait_for(self._authenticated.wait(), timeout or None)
        return self.token

    async def get_access_token(self) -> str:
        if self.token is None:
            raise SpotifyAuthError("Not authenticated with Spotify")
        if time.time() >= self.token.expires_at - REFRESH_MARGIN_SECONDS:
            await self.refresh()
        return self.token.access_token

    async def refresh(self) -> TokenInfo:
        if self.token is None or not self.token.refresh_token:
            raise SpotifyAuthError("No refresh token available, login again")

        logger.info("Refreshing Spotify access token")
        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": self.token.refresh_token,
        })
        # Spotify only sometimes rotates the refresh token
        data.setdefault("refresh_token", self.token.refresh_token)
        self.token = self._parse_token(data)
        return self.token

    async def close(self):
        await self.client.aclose()

    async def _token_request(self, form: Dict[str, str]) -> Dict:
        try:
            resp = await self.client.post(
                f"{self.accounts_url}/api/token",
                data=form,
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            raise SpotifyAPIError(f"Failed to contact Spotify token endpoint: {e}") from e

        # Outages and throttling are retried next tick, only a rejected grant is fatal
        if resp.status_code == 429:
            retry_after = float(resp.headers.get("Retry-After", 0))
            raise SpotifyRateLimitError(f"Token endpoint rate limited, retry after {retry_after}s",
                                        retry_after=retry_after)
        if resp.status_code >= 500:
            raise SpotifyAPIError(
                f"Spotify token endpoint unavailable: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )
        if resp.status_code != 200:
            raise SpotifyAuthError(
                f"Spotify token request failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise SpotifyAPIError(f"Malformed token response: {e}", status_code=resp.status_code) from e

    def _parse_token(self, data: Dict) -> TokenInfo:
        access_token = data.get("access_token")
        if not access_token:
            raise SpotifyAuthError("Spotify token response missing access_token")
        return TokenInfo(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=time.time() + int(data.get("expires_in", 3600)),
            scope=data.get("scope", ""),
        )
