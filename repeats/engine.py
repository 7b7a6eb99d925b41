import asyncio
import logging
import time
from typing import Optional, Set
from .exceptions import SpotifyAuthError, SpotifyError
from .models import TickReport
from .pagination import PlaylistTrackPager
from .reconciler import SnapshotReconciler
from .state import StateManager

logger = logging.getLogger(__name__)

class TickProcessor:
    """
    Runs one polling cycle: reconcile, fetch new plays, decay, increment and
    promote. SpotifyAuthError always propagates; every other remote failure
    is logged and only aborts the step it happened in.
    """

    def __init__(self, client, state_manager: StateManager, playlist_id: str,
                 decay_threshold: int, recently_played_limit: int = 50,
                 page_size: int = 50, max_pages: int = 200,
                 reconciler: Optional[SnapshotReconciler] = None):
        self.client = client
        self.sm = state_manager
        self.playlist_id = playlist_id
        self.decay_threshold = decay_threshold
        self.recently_played_limit = recently_played_limit
        self.reconciler = reconciler or SnapshotReconciler(
            client, state_manager, playlist_id, page_size=page_size, max_pages=max_pages
        )
        self.pager = PlaylistTrackPager(
            lambda limit, offset: self.client.get_playlist_items(self.playlist_id, limit, offset),
            page_size=page_size,
            max_pages=max_pages,
        )
        self._members: Optional[Set[str]] = None
        self._lock = asyncio.Lock()

    async def run_tick(self) -> TickReport:
        if self._lock.locked():
            logger.warning("Previous tick still running, skipping this one")
            return TickReport(skipped=True, watermark=self.sm.state.after_time)

        async with self._lock:
            self._members = None
            try:
                return await self._run()
            finally:
                self._members = None

    async def _run(self) -> TickReport:
        state = self.sm.state
        store = self.sm.store
        threshold = self.sm.threshold
        report = TickReport(watermark=state.after_time)
        state.stats.ticks += 1
        logger.info("----- Tick started -----")

        # 1. Manual playlist edits
        try:
            report.reconcile = await self.reconciler.reconcile()
        except SpotifyAuthError:
            raise
        except SpotifyError as e:
            logger.error(f"Playlist reconciliation failed, will retry next tick: {e}")

        # 2. Adds that failed last time
        for track_id in list(state.pending_promotions):
            if store.get(track_id) < threshold:
                self.sm.discard_pending(track_id)
                continue
            logger.info(f"Retrying pending promotion of {track_id}")
            await self._promote(track_id, report)

        # 3. New plays
        try:
            events = await self.client.get_recently_played(state.after_time, self.recently_played_limit)
        except SpotifyAuthError:
            raise
        except SpotifyError as e:
            logger.error(f"Could not get recently played, aborting tick: {e}")
            state.stats.ticks_failed += 1
            report.aborted = True
            return report

        report.events = len(events)
        logger.info(f"Fetched {len(events)} recently played tracks")
        if not events:
            logger.info("No recently played tracks found")
            state.stats.last_successful_tick = time.time()
            report.counts = store.as_dict()
            return report

        for index, event in enumerate(events):
            logger.debug(f"{index}: Recently played track: {event.track_name} by {event.artist_name}")

        # 4. Watermark
        report.watermark = self.sm.advance_watermark(max(e.played_at_ms for e in events))
        logger.info(f"Set watermark to {report.watermark}")

        # 5. Decay
        if len(events) > self.decay_threshold:
            logger.info(f"{len(events)} plays exceed decay threshold {self.decay_threshold}, decaying")
            played = {e.track_id for e in events}
            for track_id in store.track_ids():
                if track_id in played:
                    continue
                evicted = store.decrement(track_id)
                report.decayed.append(track_id)
                if evicted:
                    logger.info(f"Track {track_id} count reached 0, untracking")
                    report.evicted.append(track_id)
                    state.stats.evictions += 1
                    self.sm.discard_pending(track_id)
                    await self._remove(track_id, report)
                else:
                    logger.debug(f"Track {track_id} not recently played, count now {store.get(track_id)}")

        # 6. Increment and promote
        for event in events:
            count = store.increment(event.track_id)
            logger.debug(f"Track {event.track_id} played, count now {count}")
            if count == threshold:
                logger.info(f"Track {event.track_id} reached {threshold} plays, checking playlist")
                await self._promote(event.track_id, report, event.track_name)

        report.counts = store.as_dict()
        state.stats.last_successful_tick = time.time()
        logger.info("----- Tick finished -----")
        return report

    async def _playlist_members(self) -> Set[str]:
        # One scan per tick, kept current with our own writes
        if self._members is None:
            self._members = set(await self.pager.collect())
        return self._members

    async def _promote(self, track_id: str, report: TickReport, track_name: str = "") -> bool:
        try:
            members = await self._playlist_members()
        except SpotifyAuthError:
            raise
        except SpotifyError as e:
            logger.error(f"Could not scan playlist before adding {track_id}: {e}")
            self.sm.add_pending(track_id)
            report.failed_writes.append(track_id)
            return False

        if track_id in members:
            logger.info(f"Track {track_id} already exists in playlist")
            self.sm.discard_pending(track_id)
            return False

        try:
            await self.client.add_track(self.playlist_id, track_id)
        except SpotifyAuthError:
            raise
        except SpotifyError as e:
            logger.error(f"Could not add track {track_id} to playlist: {e}")
            self.sm.add_pending(track_id)
            report.failed_writes.append(track_id)
            return False

        members.add(track_id)
        self.sm.discard_pending(track_id)
        self.sm.state.stats.promotions += 1
        report.promoted.append(track_id)
        logger.info(f"Added track {track_name or track_id} to playlist")
        return True

    async def _remove(self, track_id: str, report: TickReport):
        try:
            await self.client.remove_track(self.playlist_id, track_id)
        except SpotifyAuthError:
            raise
        except SpotifyError as e:
            logger.error(f"Could not remove track {track_id} from playlist: {e}")
            report.failed_writes.append(track_id)
            return
        if self._members is not None:
            self._members.discard(track_id)
        logger.info(f"Removed track {track_id} from playlist")
