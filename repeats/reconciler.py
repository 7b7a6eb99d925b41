import logging
from .models import ReconcileResult
from .pagination import PlaylistTrackPager
from .state import StateManager

logger = logging.getLogger(__name__)

class SnapshotReconciler:
    """
    Brings the frequency store in line with manual edits made directly on the
    playlist, detected through a changed snapshot id.
    """

    def __init__(self, client, state_manager: StateManager, playlist_id: str,
                 page_size: int = 50, max_pages: int = 200):
        self.client = client
        self.sm = state_manager
        self.playlist_id = playlist_id
        self.pager = PlaylistTrackPager(
            lambda limit, offset: self.client.get_playlist_items(self.playlist_id, limit, offset),
            page_size=page_size,
            max_pages=max_pages,
        )

    async def reconcile(self) -> ReconcileResult:
        """
        Raises SpotifyError subclasses on remote failure. Nothing local is
        mutated and the snapshot token stays put in that case.
        """
        state = self.sm.state
        store = self.sm.store
        threshold = self.sm.threshold

        snapshot = await self.client.get_playlist_snapshot(self.playlist_id)
        if snapshot == state.last_snapshot:
            logger.info("Playlist snapshot unchanged. No sync necessary.")
            return ReconcileResult(changed=False, snapshot=snapshot)

        logger.info(f"Detected playlist snapshot change: {state.last_snapshot!r} -> {snapshot!r}")
        present = set(await self.pager.collect())
        result = ReconcileResult(changed=True, snapshot=snapshot)

        # 1. Manual additions
        for track_id in present:
            if track_id not in store:
                store.seed(track_id, threshold)
                result.added.append(track_id)
                logger.info(f"Manual addition: {track_id} found in playlist, seeding count {threshold}")
            # A pending add that shows up was completed by someone else
            self.sm.discard_pending(track_id)

        # 2. Manual removals, only for tracks we believed were in the playlist
        for track_id in store.track_ids():
            if track_id in present:
                continue
            count = store.get(track_id)
            if count >= threshold and not self.sm.is_pending(track_id):
                store.remove(track_id)
                result.removed.append(track_id)
                logger.info(f"Manual removal: {track_id} missing from playlist at count {count}, untracking")
            else:
                result.kept.append(track_id)
                logger.debug(f"Track {track_id} not in playlist yet ({count}/{threshold}), keeping")

        state.stats.manual_additions += len(result.added)
        state.stats.manual_removals += len(result.removed)
        state.last_snapshot = snapshot
        logger.info(
            f"Sync complete: {len(present)} in playlist, {len(result.added)} added, "
            f"{len(result.removed)} removed. Snapshot is now {snapshot!r}"
        )
        return result
