import asyncio
import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from ..errors import ElementNotFound, IncompleteDocument, InvalidDocumentSignature, Stage
from ..models import BookPage, DocumentHandle, Instrument, RawPage, SearchQuery, SearchResult
from .address import parse_address
from .base import NO_RESULTS_PHRASES, JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor
from .services.client import Client

logger = logging.getLogger(__name__)

PCN_PATTERN = re.compile(r"\b\d{2}-\d{2}-\d{2}-\d{2}-\d{2}-\d{3}-\d{4}\b")
OR_BOOK_PAGE_PATTERN = re.compile(r"(\d{4,6})\s*/\s*(\d{3,6})")
SALE_TYPE_PATTERN = re.compile(r"DEED|QUIT|CLAIM|CERTIFICATE|TITLE|TRUST|AFFIDAVIT", re.IGNORECASE)
DOCUMENT_ID_PATTERNS = (
    re.compile(r"GetDocumentImage[^\"']*?documentId=(\d{7,})"),
    re.compile(r"documentId[\"']?\s*[:=]\s*[\"']?(\d{7,})"),
)
MAX_UNCOUNTED_PAGES = 200


def parse_pcn(html: str) -> Optional[str]:
    match = PCN_PATTERN.search(BeautifulSoup(html, "html.parser").get_text(" "))
    return match.group(0) if match else None


def parse_sales_information(html: str) -> List[Instrument]:
    """
    Read OR Book/Page links out of the appraiser's Sales Information rows.

    Page numbers lose their zero padding ("33358 / 01920" is book 33358
    page 1920); the clerk does not accept the padded form.
    """
    soup = BeautifulSoup(html, "html.parser")
    instruments = []
    seen = set()

    for link in soup.find_all("a"):
        match = OR_BOOK_PAGE_PATTERN.search(clean_text(link.get_text()))
        if not match:
            continue
        book, page = match.group(1), match.group(2).lstrip("0") or "0"
        if (book, page) in seen:
            continue
        seen.add((book, page))

        row = link.find_parent("tr")
        sale_type = "DEED"
        row_text = ""
        if row is not None:
            row_text = clean_text(row.get_text(" "))
            for cell in row.find_all("td"):
                cell_text = clean_text(cell.get_text())
                if SALE_TYPE_PATTERN.search(cell_text):
                    sale_type = cell_text
                    break

        instruments.append(
            Instrument(
                document_type=sale_type,
                book_page=BookPage(book=book, page=page),
                recorded_date=parse_date(row_text),
                url=link.get("href") or None,
            )
        )

    return instruments


def parse_page_count(text: str) -> Optional[int]:
    match = re.search(r"Page \d+ of (\d+)", text, re.IGNORECASE) or re.search(r"(\d+) pages", text, re.IGNORECASE)
    return int(match.group(1)) if match else None


def find_document_id(*sources: str) -> Optional[str]:
    """First clerk documentId found in request URLs or page scripts."""
    for source in sources:
        for pattern in DOCUMENT_ID_PATTERNS:
            match = pattern.search(source or "")
            if match:
                return match.group(1)
    return None


class PalmBeachScraper(JurisdictionAdapter):
    """
    Palm Beach County, FL. The appraiser's Sales Information links each sale
    to the Clerk's eRecording viewer, which renders every page as a PNG from
    a ``GetDocumentImage`` endpoint. Pages are downloaded one by one with the
    browser's cookies and assembled later.
    """

    name = "palm_beach"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        street = parse_address(query.raw_address).street or query.raw_address
        cleaned = clean_text(street.replace("#", " "))
        if cleaned != street:
            logger.info(f'Cleaned address: "{street}" -> "{cleaned}" (removed #)')

        await self.open_portal(session)
        await self.fill(session, "address", cleaned, typed=True)
        await self.pause(1500, 2500)

        suggestion = await self.find(session, "suggestions", timeout_ms=5000)
        if suggestion is not None:
            await session.act(suggestion, Action.click(), "address suggestion")
        else:
            logger.info("No autocomplete found, pressing Enter")
            await session.act_on(self.query("address"), Action.press("Enter"))
        await session.wait_for(WaitFor.network_idle())
        await self.pause(2000, 3000)

        pcn = parse_pcn(await session.snapshot())
        if not pcn:
            if await self.page_says(session, *NO_RESULTS_PHRASES):
                logger.info(f"⚠️ Property not found: {cleaned}")
            return []

        logger.info(f"✅ Property found: PCN {pcn}")
        return [SearchResult(parcel_id=pcn, detail_url=session.current_url)]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        chosen = self.select(parse_sales_information(await session.snapshot()))
        if not chosen.url:
            raise ElementNotFound(f"OR Book/Page {chosen.book_page} has no clerk link")

        with self.stage(Stage.ACQUIRE):
            return await self._download_pages(session, chosen)

    async def _download_pages(self, session: Session, chosen: Instrument) -> DocumentHandle:
        requested: List[str] = []

        async def remember(response):
            requested.append(response.url)

        session.on_response(lambda url: "GetDocumentImage" in url or "documentId=" in url, remember)

        await session.navigate(chosen.url, wait=WaitFor.network_idle(), timeout_ms=self.timeout_ms)
        await self.clear_gate(session)
        await self.pause(3000, 5000)

        html = await session.snapshot()
        page_text = BeautifulSoup(html, "html.parser").get_text(" ")
        page_count = parse_page_count(page_text)
        document_id = find_document_id(*requested, session.current_url, html)
        if not document_id:
            raise ElementNotFound(f"No clerk document ID on {session.current_url}")
        logger.info(f"📋 Document ID {document_id}, {page_count or 'unknown'} page(s)")

        client = Client(cookies=await session.cookies())
        try:
            pages = await asyncio.to_thread(
                self._fetch_page_images, client, document_id, page_count, session.current_url
            )
        finally:
            client.close()

        identifier = f"{chosen.book_page.book}_{chosen.book_page.page}"
        return DocumentHandle(kind="image-sequence", pages=pages, source_url=chosen.url, identifier=identifier)

    def _fetch_page_images(
        self, client: Client, document_id: str, page_count: Optional[int], referer: str
    ) -> List[RawPage]:
        """
        Download page images in order. With no known page count, pages are
        requested until the clerk stops answering with an image.
        """
        pages = []
        limit = page_count or MAX_UNCOUNTED_PAGES
        for page_num in range(limit):
            url = self.config.url("page_image").format(document_id=document_id, page_num=page_num)
            response = client.get(url, headers={"Referer": referer})
            content_type = response.headers.get("content-type", "").split(";")[0].strip()

            if response.status_code != 200 or not content_type.startswith("image/"):
                if page_count is None and pages:
                    break
                raise InvalidDocumentSignature(
                    f"Page {page_num + 1} of document {document_id} returned {response.status_code} {content_type or 'no content type'}"
                )

            logger.info(f"  Page {page_num + 1}/{page_count or '?'}: {len(response.content) / 1024:.2f} KB")
            pages.append(RawPage(bytes=response.content, mime_type=content_type, page_index=page_num))

        if page_count is None and len(pages) == MAX_UNCOUNTED_PAGES:
            logger.warning(f"⚠️ Document {document_id} still serving images after {MAX_UNCOUNTED_PAGES} pages")
            raise IncompleteDocument(f"Stopped reading document {document_id} at {MAX_UNCOUNTED_PAGES} pages")
        return pages
