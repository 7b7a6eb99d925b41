import asyncio
import time
import unittest
import httpx
from fakes import FakeSpotifyClient, api_error
from repeats.clients.auth import SpotifyAuth
from repeats.clients.spotify_client import SpotifyClient, parse_played_at
from repeats.engine import TickProcessor
from repeats.exceptions import SpotifyAuthError
from repeats.models import PlayEvent, TokenInfo
from repeats.state import StateManager

class TickProcessorTestCase(unittest.IsolatedAsyncioTestCase):
    threshold = 3
    limit = 5
    decay_threshold = 2

    def setUp(self):
        self.sm = StateManager(limit=self.limit, threshold=self.threshold)
        self.client = FakeSpotifyClient()
        self.processor = TickProcessor(self.client, self.sm, "pl", decay_threshold=self.decay_threshold)

    async def tick(self, *plays: str):
        if plays:
            self.client.queue_plays(*plays)
        return await self.processor.run_tick()

class TestEndToEnd(TickProcessorTestCase):
    async def test_rise_promote_and_decay(self):
        await self.tick("A")
        self.assertEqual(self.sm.store.get("A"), 1)
        await self.tick("A")
        self.assertEqual(self.sm.store.get("A"), 2)
        self.assertEqual(self.client.playlist, [])

        report = await self.tick("A")
        self.assertEqual(report.promoted, ["A"])
        self.assertEqual(self.client.playlist, ["A"])

        report = await self.tick("B", "C", "D")
        self.assertEqual(report.decayed, ["A"])
        self.assertEqual(self.sm.store.get("A"), 2)
        # Below the threshold but above zero stays in the playlist
        self.assertEqual(self.client.playlist, ["A"])
        self.assertEqual(self.client.count("remove_track"), 0)

    async def test_no_decay_at_or_below_decay_threshold(self):
        await self.tick("A")
        report = await self.tick("B", "C")
        self.assertEqual(report.decayed, [])
        self.assertEqual(self.sm.store.get("A"), 1)

    async def test_empty_batch_ends_tick(self):
        self.sm.store.increment("A")
        report = await self.tick()
        self.assertEqual(report.events, 0)
        self.assertEqual(self.sm.store.get("A"), 1)
        self.assertEqual(self.sm.state.after_time, 0)
        self.assertGreater(self.sm.state.stats.last_successful_tick, 0)

class TestPromotion(TickProcessorTestCase):
    async def test_promotes_once_per_rise(self):
        report = await self.tick("A", "A", "A", "A", "A")
        self.assertEqual(report.promoted, ["A"])
        self.assertEqual(self.sm.store.get("A"), 5)
        await self.tick("A")
        await self.tick("A", "A")
        self.assertEqual(self.client.count("add_track"), 1)
        self.assertEqual(self.sm.state.stats.promotions, 1)

    async def test_back_at_threshold_does_not_re_add(self):
        self.processor.decay_threshold = 0
        await self.tick("A", "A", "A")
        await self.tick("B")
        self.assertEqual(self.sm.store.get("A"), 2)
        report = await self.tick("A")
        self.assertEqual(self.sm.store.get("A"), 3)
        self.assertEqual(report.promoted, [])
        self.assertEqual(self.client.playlist.count("A"), 1)
        self.assertEqual(self.client.count("add_track"), 1)

    async def test_already_in_playlist_is_not_added(self):
        self.client.playlist = ["A"]
        # Same snapshot as an empty reconcile would have seen
        self.sm.state.last_snapshot = self.client.snapshot
        report = await self.tick("A", "A", "A")
        self.assertEqual(report.promoted, [])
        self.assertEqual(self.client.count("add_track"), 0)

    async def test_failed_add_is_retried_next_tick(self):
        self.client.errors["add_track"] = api_error()
        report = await self.tick("A", "A", "A")
        self.assertEqual(report.failed_writes, ["A"])
        self.assertEqual(self.sm.state.pending_promotions, ["A"])
        self.assertEqual(self.sm.store.get("A"), 3)

        del self.client.errors["add_track"]
        self.client.edit_playlist(add=["M"])
        report = await self.tick()
        # Known failed add, not a manual removal
        self.assertNotIn("A", report.reconcile.removed)
        self.assertEqual(report.promoted, ["A"])
        self.assertEqual(self.client.playlist, ["M", "A"])
        self.assertEqual(self.sm.state.pending_promotions, [])

    async def test_pending_dropped_once_below_threshold(self):
        self.processor.decay_threshold = 0
        self.client.errors["add_track"] = api_error()
        await self.tick("A", "A", "A")
        del self.client.errors["add_track"]
        self.sm.store.decrement("A")
        await self.tick()
        self.assertEqual(self.sm.state.pending_promotions, [])
        self.assertEqual(self.client.count("add_track"), 1)

class TestEviction(TickProcessorTestCase):
    threshold = 2
    limit = 2
    decay_threshold = 0

    async def test_decay_to_zero_removes_from_playlist(self):
        await self.tick("A", "A")
        self.assertEqual(self.client.playlist, ["A"])
        await self.tick("B")
        self.assertEqual(self.sm.store.get("A"), 1)

        report = await self.tick("B")
        self.assertEqual(report.evicted, ["A"])
        self.assertEqual(report.promoted, ["B"])
        self.assertNotIn("A", self.sm.store)
        self.assertEqual(self.client.playlist, ["B"])
        self.assertEqual(self.sm.state.stats.evictions, 1)

    async def test_failed_remove_does_not_abort(self):
        await self.tick("A")
        self.client.errors["remove_track"] = api_error()
        report = await self.tick("B", "B")
        self.assertEqual(report.evicted, ["A"])
        self.assertEqual(report.failed_writes, ["A"])
        self.assertEqual(report.promoted, ["B"])

class TestFailures(TickProcessorTestCase):
    async def test_fetch_failure_leaves_state_untouched(self):
        await self.tick("A")
        watermark = self.sm.state.after_time
        self.client.errors["get_recently_played"] = api_error()
        report = await self.tick("A")
        self.assertTrue(report.aborted)
        self.assertEqual(self.sm.state.after_time, watermark)
        self.assertEqual(self.sm.store.get("A"), 1)
        self.assertEqual(self.sm.state.stats.ticks_failed, 1)

    async def test_reconcile_failure_does_not_abort(self):
        self.client.errors["get_playlist_snapshot"] = api_error()
        report = await self.tick("A")
        self.assertIsNone(report.reconcile)
        self.assertEqual(self.sm.store.get("A"), 1)
        self.assertEqual(self.sm.state.last_snapshot, "")

    async def test_auth_error_propagates(self):
        self.client.errors["get_recently_played"] = SpotifyAuthError("expired", status_code=401)
        with self.assertRaises(SpotifyAuthError):
            await self.tick("A")
        del self.client.errors["get_recently_played"]
        report = await self.processor.run_tick()
        self.assertFalse(report.skipped)

class TestTransientFailuresThroughClient(unittest.IsolatedAsyncioTestCase):
    def make_auth(self, handler, expires_in: float = 5) -> SpotifyAuth:
        auth = SpotifyAuth("id", "secret", "http://localhost/cb",
                           http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        auth.token = TokenInfo(access_token="old", refresh_token="r", expires_at=time.time() + expires_in)
        return auth

    def make_client(self, auth: SpotifyAuth, handler) -> SpotifyClient:
        http = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
        return SpotifyClient(auth, http_client=http)

    async def test_token_endpoint_outage_aborts_only_the_tick(self):
        def unreachable(request):
            raise httpx.ConnectError("temporary DNS failure", request=request)
        api_requests = []

        def api(request):
            api_requests.append(request)
            return httpx.Response(200, json={})

        auth = self.make_auth(unreachable)
        sm = StateManager(limit=5, threshold=3)
        sm.store.increment("A")
        sm.state.after_time = 1000
        processor = TickProcessor(self.make_client(auth, api), sm, "pl", decay_threshold=2)

        report = await processor.run_tick()
        self.assertTrue(report.aborted)
        self.assertIsNone(report.reconcile)
        self.assertEqual(sm.store.as_dict(), {"A": 1})
        self.assertEqual(sm.state.after_time, 1000)
        self.assertEqual(sm.state.last_snapshot, "")
        self.assertEqual(api_requests, [])

        # Endpoint is back on the next tick
        auth.client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
        ))
        report = await processor.run_tick()
        self.assertFalse(report.aborted)
        self.assertEqual(auth.token.access_token, "new")

    async def test_malformed_remove_response_keeps_the_tick_going(self):
        def api(request):
            path = request.url.path
            if request.method == "DELETE":
                return httpx.Response(200, text="<html>oops</html>")
            if request.method == "POST":
                return httpx.Response(201, json={"snapshot_id": "s2"})
            if path.endswith("/recently-played"):
                return httpx.Response(200, json={"items": [
                    {"played_at": f"2024-05-01T10:00:0{i}.000Z", "track": {"id": "B", "name": "B", "artists": []}}
                    for i in range(3)
                ]})
            if path.endswith("/tracks"):
                return httpx.Response(200, json={"items": []})
            return httpx.Response(200, json={"snapshot_id": "s1"})

        auth = self.make_auth(lambda request: httpx.Response(500), expires_in=3600)
        sm = StateManager(limit=5, threshold=3)
        sm.store.increment("A")
        processor = TickProcessor(self.make_client(auth, api), sm, "pl", decay_threshold=2)

        report = await processor.run_tick()
        self.assertEqual(report.evicted, ["A"])
        self.assertEqual(report.failed_writes, ["A"])
        self.assertEqual(report.promoted, ["B"])
        self.assertEqual(sm.store.get("B"), 3)
        self.assertEqual(sm.state.after_time, parse_played_at("2024-05-01T10:00:02.000Z"))

class TestWatermark(TickProcessorTestCase):
    async def test_advances_to_newest_play(self):
        await self.tick("A", "B")
        newest = self.client.clock
        self.assertEqual(self.sm.state.after_time, newest)
        await self.tick()
        self.assertEqual(self.client.calls[-1], ("get_recently_played", newest, 50))

    async def test_never_moves_backward(self):
        self.sm.state.after_time = 2_000_000_000_000
        self.client.batches.append([PlayEvent(track_id="A", played_at_ms=1_000)])
        report = await self.tick()
        self.assertEqual(report.watermark, 2_000_000_000_000)
        self.assertEqual(self.sm.store.get("A"), 1)

class TestReentrancy(TickProcessorTestCase):
    async def test_overlapping_tick_is_skipped(self):
        self.client.gate = asyncio.Event()
        first = asyncio.create_task(self.processor.run_tick())
        await asyncio.sleep(0)

        second = await self.processor.run_tick()
        self.assertTrue(second.skipped)

        self.client.gate.set()
        report = await first
        self.assertFalse(report.skipped)
        self.assertEqual(self.client.count("get_playlist_snapshot"), 1)

if __name__ == '__main__':
    unittest.main()
