import asyncio
import logging
import signal
import sys
import time
from typing import Optional
import uvicorn

from .config import settings
from .state import StateManager
from .clients.auth import SpotifyAuth
from .clients.spotify_client import SpotifyClient
from .engine import TickProcessor
from .exceptions import SpotifyAuthError, SpotifyError
from .models import PlaylistRef
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class RepeatsService:
    def __init__(self):
        self.running = True
        self.state_manager = StateManager(settings.FMAP_LIMIT, settings.VALID_LISTEN_TIMES)
        self.auth = SpotifyAuth(
            settings.SPOTIFY_CLIENT_ID,
            settings.SPOTIFY_CLIENT_SECRET,
            settings.SPOTIFY_REDIRECT_URI,
            accounts_url=settings.SPOTIFY_ACCOUNTS_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )
        self.spotify = SpotifyClient(
            self.auth,
            base_url=settings.SPOTIFY_API_BASE_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            dry_run=settings.DRY_RUN,
        )
        self.playlist: Optional[PlaylistRef] = None
        self.processor: Optional[TickProcessor] = None
        self.http_server: Optional[uvicorn.Server] = None

        # Link state and auth to server module
        server.state_manager = self.state_manager
        server.auth = self.auth

    async def wait_for_login(self):
        login_url = f"http://localhost:{settings.HTTP_SERVER_PORT}/auth/spotify/login"
        logger.info(f"Please visit this URL to authenticate with Spotify: {login_url}")
        try:
            await self.auth.wait_for_token(settings.AUTH_TIMEOUT_SECONDS or None)
        except asyncio.TimeoutError:
            raise SpotifyAuthError(f"No Spotify login within {settings.AUTH_TIMEOUT_SECONDS}s")

    async def ensure_playlist(self, user_id: str) -> PlaylistRef:
        playlist = await self.spotify.find_playlist(
            user_id, settings.PLAYLIST_NAME, settings.PAGE_SIZE, settings.MAX_PAGES
        )
        if playlist:
            logger.info(f"Found '{playlist.name}' playlist with ID: {playlist.id}")
            return playlist

        logger.info(f"'{settings.PLAYLIST_NAME}' playlist does not exist, creating...")
        playlist = await self.spotify.create_playlist(
            user_id, settings.PLAYLIST_NAME, settings.PLAYLIST_DESCRIPTION
        )
        logger.info(f"Created '{playlist.name}' playlist with ID: {playlist.id}")
        return playlist

    async def setup(self):
        await self.wait_for_login()
        user = await self.spotify.get_current_user()
        logger.info(f"Logged in as user ID: {user.id}")

        self.playlist = await self.ensure_playlist(user.id)
        self.processor = TickProcessor(
            self.spotify,
            self.state_manager,
            self.playlist.id,
            decay_threshold=settings.DECAY_THRESHOLD,
            recently_played_limit=settings.RECENTLY_PLAYED_LIMIT,
            page_size=settings.PAGE_SIZE,
            max_pages=settings.MAX_PAGES,
        )
        logger.info(
            f"Tracker ready: poll every {settings.POLL_INTERVAL_HOURS}h, "
            f"validListenTimes={settings.VALID_LISTEN_TIMES}, fmapLimit={settings.FMAP_LIMIT}, "
            f"decayThreshold={settings.DECAY_THRESHOLD}"
        )

    async def poll_loop(self):
        # First tick runs immediately, the next one after a full interval
        while self.running:
            start_time = time.time()
            try:
                report = await self.processor.run_tick()
                logger.info(
                    f"Tick done: {report.events} plays, {len(report.promoted)} promoted, "
                    f"{len(report.evicted)} evicted, {len(self.state_manager.store)} tracked"
                )
            except SpotifyAuthError:
                raise
            except Exception as e:
                self.state_manager.state.stats.ticks_failed += 1
                logger.error(f"Error in poll loop: {e}", exc_info=True)

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            sleep_time = max(1, settings.poll_interval_seconds - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        config = uvicorn.Config(
            server.app, host=settings.HTTP_SERVER_HOST, port=settings.HTTP_SERVER_PORT, log_level="warning"
        )
        self.http_server = uvicorn.Server(config)
        server_task = asyncio.create_task(self.http_server.serve())

        try:
            await self.setup()
            await self.poll_loop()
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            self.http_server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
            await self.spotify.close()
            await self.auth.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = RepeatsService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except SpotifyAuthError as e:
        logger.critical(f"Spotify authentication failed, exiting: {e}")
        sys.exit(1)
    except SpotifyError as e:
        logger.critical(f"Could not prepare the target playlist, exiting: {e}")
        sys.exit(1)
