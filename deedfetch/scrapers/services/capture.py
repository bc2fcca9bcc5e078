"""
Buffered collection of document pages delivered as network responses.

Viewers that stream page images or tiles fire responses asynchronously and
out of order. The collector keys every captured body by its page index and
only hands back an ordered page list once a completion condition holds.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from ...errors import IncompleteDocument, TimeoutFailure
from ...models import RawPage

logger = logging.getLogger(__name__)

PageIndexFn = Callable[[str, int], Optional[int]]


def arrival_order(url: str, arrival: int) -> Optional[int]:
    """Fallback index for viewers whose URLs carry no page number."""
    return arrival


class ResponseCollector:
    """
    Collect page bodies from intercepted responses until complete.

    Completion:
        - ``expected`` given: as soon as that many distinct pages are held.
          Reaching the deadline short of it raises IncompleteDocument (or
          TimeoutFailure if nothing arrived at all).
        - ``expected`` unknown: once at least one page is held and no new
          page arrived for ``quiet_seconds``.
    """

    def __init__(
        self,
        session,
        url_predicate: Callable[[str], bool],
        page_index_of: PageIndexFn = arrival_order,
        expected: Optional[int] = None,
        quiet_seconds: float = 5.0,
        deadline_seconds: float = 60.0,
        mime_prefixes: Tuple[str, ...] = ("image/",),
    ):
        self.session = session
        self.url_predicate = url_predicate
        self.page_index_of = page_index_of
        self.expected = expected
        self.quiet_seconds = quiet_seconds
        self.deadline_seconds = deadline_seconds
        self.mime_prefixes = mime_prefixes
        self.source_url: Optional[str] = None
        self._pages: Dict[int, RawPage] = {}
        self._arrivals = 0
        self._last_arrival: Optional[float] = None
        self._changed = asyncio.Event()

    def start(self) -> "ResponseCollector":
        self.session.on_response(self.url_predicate, self._on_response)
        return self

    async def _on_response(self, response):
        content_type = response.headers.get("content-type", "")
        if self.mime_prefixes and not content_type.startswith(self.mime_prefixes):
            return
        body = await response.body()
        self.record(response.url, body, content_type)

    def record(self, url: str, body: bytes, content_type: str):
        """Store one captured body; a later capture of the same page replaces the earlier."""
        if not body:
            return
        index = self.page_index_of(url, self._arrivals)
        self._arrivals += 1
        if index is None or index < 0:
            logger.debug(f"Ignoring response without a page index: {url}")
            return

        if index in self._pages:
            logger.debug(f"Replacing page {index} with a later capture")
        self._pages[index] = RawPage(
            bytes=body,
            mime_type=content_type.split(";")[0].strip() or "application/octet-stream",
            page_index=index,
        )
        self.source_url = self.source_url or url
        self._last_arrival = asyncio.get_running_loop().time()
        logger.info(f"🖼️ Captured page {index + 1} ({len(body)} bytes)")
        self._changed.set()

    @property
    def count(self) -> int:
        return len(self._pages)

    def __contains__(self, index: int) -> bool:
        return index in self._pages

    def get(self, index: int) -> Optional[RawPage]:
        return self._pages.get(index)

    def discard(self, index: int):
        self._pages.pop(index, None)

    def pages(self) -> List[RawPage]:
        return [self._pages[i] for i in sorted(self._pages)]

    def _complete(self, now: float) -> bool:
        if self.expected:
            return len(self._pages) >= self.expected
        return bool(self._pages) and now - self._last_arrival >= self.quiet_seconds

    async def wait(self) -> List[RawPage]:
        """Suspend until the completion condition holds, then return pages sorted by index."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline_seconds

        while True:
            now = loop.time()
            if self._complete(now):
                logger.info(f"✅ Capture complete with {self.count} page(s)")
                return self.pages()

            if now >= deadline:
                if self._pages and self.expected:
                    raise IncompleteDocument(
                        f"Captured {self.count} of {self.expected} pages before the deadline"
                    )
                raise TimeoutFailure(
                    f"No document pages captured within {self.deadline_seconds:.0f}s"
                )

            wake_in = deadline - now
            if self._pages and not self.expected:
                wake_in = min(wake_in, self._last_arrival + self.quiet_seconds - now)
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=max(wake_in, 0.01))
            except asyncio.TimeoutError:
                pass
