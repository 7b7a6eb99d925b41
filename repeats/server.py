import logging
import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse, RedirectResponse
from typing import Optional
from .clients.auth import SpotifyAuth
from .config import settings
from .exceptions import SpotifyAPIError, SpotifyAuthError, SpotifyAuthStateError
from .state import StateManager

logger = logging.getLogger(__name__)

app = FastAPI(title="Repeats")
state_manager: Optional[StateManager] = None
auth: Optional[SpotifyAuth] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

@app.get("/auth/spotify/login")
def login():
    if not auth:
        raise HTTPException(status_code=503, detail="Service is starting")
    return RedirectResponse(auth.authorize_url(), status_code=302)

@app.get("/auth/spotify/callback", response_class=PlainTextResponse)
async def callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    if not auth:
        raise HTTPException(status_code=503, detail="Service is starting")
    if error:
        logger.warning(f"Spotify authorization denied: {error}")
        raise HTTPException(status_code=400, detail=f"Spotify authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        await auth.exchange_code(code, state)
    except SpotifyAuthStateError as e:
        logger.warning(f"OAuth callback rejected: {e}")
        raise HTTPException(status_code=403, detail="State mismatch, start the login again")
    except SpotifyAuthError as e:
        logger.error(f"OAuth token exchange failed: {e}")
        raise HTTPException(status_code=403, detail="Couldn't get token")
    except SpotifyAPIError as e:
        logger.error(f"OAuth token exchange could not reach Spotify: {e}")
        raise HTTPException(status_code=503, detail="Spotify is unavailable, try the login again")
    return "Logged in to Spotify. You can close this window."

@app.get("/healthz")
def healthz():
    if not state_manager:
        return {"status": "starting"}

    last_tick = state_manager.state.stats.last_successful_tick
    if not last_tick:
        return {"status": "starting"}
    age = time.time() - last_tick
    if age > (settings.poll_interval_seconds * 3 + 60):
        return {"status": "lagging", "last_tick_age": age}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not state_manager:
        return {"status": "not_ready"}

    s = state_manager.state
    return {
        "tracked_tracks": len(state_manager.store),
        "counts": state_manager.store.as_dict(),
        "watermark": s.after_time,
        "snapshot": s.last_snapshot,
        "pending_promotions": list(s.pending_promotions),
        "stats": s.stats.model_dump(),
        "config": {
            "poll_interval_hours": settings.POLL_INTERVAL_HOURS,
            "valid_listen_times": state_manager.store.threshold,
            "fmap_limit": state_manager.store.limit,
            "decay_threshold": settings.DECAY_THRESHOLD,
        }
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not state_manager:
        return ""

    s = state_manager.state
    lines = [
        f'repeats_tracked_tracks {len(state_manager.store)}',
        f'repeats_watermark_ms {s.after_time}',
        f'repeats_pending_promotions {len(s.pending_promotions)}',
        f'repeats_ticks_total {s.stats.ticks}',
        f'repeats_ticks_failed_total {s.stats.ticks_failed}',
        f'repeats_promotions_total {s.stats.promotions}',
        f'repeats_evictions_total {s.stats.evictions}',
        f'repeats_manual_additions_total {s.stats.manual_additions}',
        f'repeats_manual_removals_total {s.stats.manual_removals}',
        f'repeats_last_tick_timestamp {s.stats.last_successful_tick}',
    ]
    return "\n".join(lines)
