import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int, int], Awaitable[List[Optional[str]]]]

class PlaylistTrackPager:
    """
    Async iterable over every track id in a playlist.

    Each `async for` starts again from offset 0, so one pager can be reused
    across cycles. Iteration stops on a short page (fewer than page_size
    items), an empty page, or after max_pages pages.
    """

    def __init__(self, fetch_page: PageFetcher, page_size: int = 50, max_pages: int = 200):
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.max_pages = max_pages

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        offset = 0
        for _ in range(self.max_pages):
            items = await self.fetch_page(self.page_size, offset)
            # Local files and unavailable items carry no id
            for track_id in items:
                if track_id:
                    yield track_id
            if len(items) < self.page_size:
                return
            offset += self.page_size
        logger.warning(f"Stopped playlist scan after {self.max_pages} pages")

    async def collect(self) -> List[str]:
        return [track_id async for track_id in self]
