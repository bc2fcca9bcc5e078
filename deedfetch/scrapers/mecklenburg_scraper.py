import asyncio
import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from ..errors import IncompleteDocument, Stage
from ..models import BookPage, DocumentHandle, Instrument, SearchQuery, SearchResult
from .address import parse_address
from .base import NO_RESULTS_PHRASES, JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor
from .services.capture import ResponseCollector

logger = logging.getLogger(__name__)

PARCEL_PATTERN = re.compile(r"\b\d{8}\b")
BOOK_PAGE_LINK_PATTERN = re.compile(r"^(\d{4,5})-(\d{1,5})$")
DEED_TYPE_PATTERN = re.compile(r"DEED|QUIT|CLAIM|TRUST|AFFIDAVIT|WILL|ESTATE", re.IGNORECASE)
TILE_URL_PATTERN = re.compile(r"ImageHandler|GetImage|ViewImage|PageImage", re.IGNORECASE)
TILE_MIME_TYPES = ("image/png", "image/jpeg", "image/tiff", "image/gif")
MAX_VIEWER_PAGES = 200


def parse_parcel_id(html: str) -> Optional[str]:
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    match = re.search(r"Parcel\s*(?:ID|#)?:?\s*(\d{8})", text, re.IGNORECASE)
    if match:
        return match.group(1)
    match = PARCEL_PATTERN.search(text)
    return match.group(0) if match else None


def parse_deed_links(html: str) -> List[Instrument]:
    """Book-page links from the "Deeds and Sale Price" table, one per row."""
    soup = BeautifulSoup(html, "html.parser")
    instruments = []

    for link in soup.find_all("a"):
        match = BOOK_PAGE_LINK_PATTERN.match(clean_text(link.get_text()))
        if not match:
            continue

        row = link.find_parent("tr")
        document_type = "DEED"
        row_text = ""
        if row is not None:
            row_text = clean_text(row.get_text(" "))
            for cell in row.find_all("td"):
                cell_text = clean_text(cell.get_text())
                if DEED_TYPE_PATTERN.search(cell_text) and not BOOK_PAGE_LINK_PATTERN.match(cell_text):
                    document_type = cell_text
                    break

        instruments.append(
            Instrument(
                document_type=document_type,
                book_page=BookPage(book=match.group(1), page=match.group(2)),
                recorded_date=parse_date(row_text),
                url=link.get("href") or None,
            )
        )

    return instruments


def parse_image_page_count(text: str) -> Optional[int]:
    match = re.search(r"#\s*Pages\s*in\s*Image:\s*(\d+)", text, re.IGNORECASE)
    return int(match.group(1)) if match else None


class MecklenburgScraper(JurisdictionAdapter):
    """
    Mecklenburg County, NC. Polaris lists deeds by book-page; each link opens
    the Register of Deeds viewer in a new tab. The viewer streams one image
    per page, so pages are captured from network responses while the viewer
    is stepped through the document.
    """

    name = "mecklenburg"
    next_page_wait_s = 8.0

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        street = parse_address(query.raw_address).street or query.raw_address

        await self.open_portal(session)
        await self.fill(session, "address", street, typed=True)
        await self.pause(1500, 2500)

        suggestion = await self.find(session, "suggestions", timeout_ms=8000)
        if suggestion is None:
            logger.info(f"⚠️ No address suggestion for {street}")
            return []
        await session.act(suggestion, Action.click(), "address suggestion")
        await session.wait_for(WaitFor.network_idle())
        await self.pause(2000, 3000)

        parcel_id = parse_parcel_id(await session.snapshot())
        if not parcel_id:
            if await self.page_says(session, *NO_RESULTS_PHRASES):
                logger.info(f"⚠️ Property not found: {street}")
            return []

        logger.info(f"✅ Parcel {parcel_id}")
        return [SearchResult(parcel_id=parcel_id, detail_url=session.current_url)]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        await self.click(session, "deeds_tab", text=r"^\s*Deeds and Sale Price\s*$")
        await session.wait_for(WaitFor.network_idle())

        chosen = self.select(parse_deed_links(await session.snapshot()))

        with self.stage(Stage.ACQUIRE):
            return await self._capture_pages(session, chosen)

    async def _capture_pages(self, session: Session, chosen: Instrument) -> DocumentHandle:
        viewer_page = {"index": 0}
        collector = ResponseCollector(
            session,
            url_predicate=lambda url: bool(TILE_URL_PATTERN.search(url)),
            page_index_of=lambda url, arrival: viewer_page["index"],
            mime_prefixes=TILE_MIME_TYPES,
            quiet_seconds=8.0,
            deadline_seconds=self.timeout_ms / 1000,
        ).start()

        book_page = chosen.book_page
        link = self.query("book_page_link", text=rf"^\s*{book_page.book}-{book_page.page}\s*$")
        logger.info(f"🔗 Opening book {book_page.book} page {book_page.page} at the Register of Deeds")
        await session.follow_popup(link, timeout_ms=30000)
        await self.clear_gate(session)
        await session.wait_for(WaitFor.network_idle())

        page_text = BeautifulSoup(await session.snapshot(), "html.parser").get_text(" ")
        collector.expected = parse_image_page_count(page_text)
        logger.info(f"📄 Document has {collector.expected or 'an unknown number of'} page(s)")

        if collector.expected:
            for index in range(1, collector.expected):
                await self._wait_for_page(collector, index - 1)
                viewer_page["index"] = index
                await self.click(session, "next_page")
        else:
            collector.expected = await self._page_to_the_end(session, collector, viewer_page)
            # Responses arriving after paging stopped belong to no page
            viewer_page["index"] = -1

        pages = await collector.wait()
        return DocumentHandle(
            kind="image-sequence",
            pages=pages,
            source_url=collector.source_url or session.current_url,
            identifier=f"{book_page.book}_{book_page.page}",
        )

    async def _page_to_the_end(self, session: Session, collector: ResponseCollector, viewer_page: dict) -> Optional[int]:
        """
        Step through a viewer that does not say how many pages it holds.

        Paging stops when the Next control goes away, when a click brings no
        new page within the wait, or when it brings back the page already
        shown. Returns the page count, or None if the first page never came.
        """
        if not await self._wait_for_page(collector, 0):
            return None

        for index in range(1, MAX_VIEWER_PAGES):
            next_button = await self.find(session, "next_page", timeout_ms=2000)
            if next_button is None:
                return index

            viewer_page["index"] = index
            await session.act(next_button, Action.click(), "next page")
            if not await self._wait_for_page(collector, index, timeout_s=self.next_page_wait_s):
                return index
            if collector.get(index).bytes == collector.get(index - 1).bytes:
                collector.discard(index)
                return index

        logger.warning(f"⚠️ Viewer still paging after {MAX_VIEWER_PAGES} pages")
        raise IncompleteDocument(f"Viewer still had a Next page after {MAX_VIEWER_PAGES} pages")

    async def _wait_for_page(self, collector: ResponseCollector, index: int, timeout_s: float = 20.0) -> bool:
        """Hold off paging until the viewer has delivered ``index``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while index not in collector and loop.time() < deadline:
            await asyncio.sleep(0.25)
        return index in collector
