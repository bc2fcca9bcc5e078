import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from ..errors import Stage
from ..models import BookPage, DocumentHandle, Instrument, SearchQuery, SearchResult
from .address import parse_address
from .base import NO_RESULTS_PHRASES, JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor

logger = logging.getLogger(__name__)

FOLIO_PATTERN = re.compile(r"\b\d{2}-\d{4}-\d{3}-\d{4}\b")
ORB_PATTERN = re.compile(r"ORB:?\s*(\d+)\s+PG:?\s*(\d+)", re.IGNORECASE)
BOOK_PAGE_PATTERN = re.compile(r"Book:?\s*(\d+)\s+Page:?\s*(\d+)", re.IGNORECASE)
SALE_ROW_PATTERN = re.compile(r"\b(\d{5,})[\s\-/]+(\d{3,})\b")
CFN_PATTERN = re.compile(r"(?:Instrument|CFN|Doc(?:ument)?)\s*(?:Number|#)?:?\s*(\d{8,})", re.IGNORECASE)


def parse_folio(html: str) -> Optional[str]:
    match = FOLIO_PATTERN.search(BeautifulSoup(html, "html.parser").get_text(" "))
    return match.group(0) if match else None


def _sale_label(text: str) -> str:
    # Every appraiser sale is a deed transfer; the qualification note rides along
    note = re.sub(r"[\d$,./:\-]+", " ", text)
    note = clean_text(re.sub(r"\b(ORB|PG|Book|Page|CFN|Instrument|Sale|Price)\b", " ", note, flags=re.IGNORECASE))
    return f"DEED ({note})" if note else "DEED"


def parse_sales(html: str) -> List[Instrument]:
    """
    Collect sale records from the appraiser's Sales Information section.

    Rows are recognized by an ORB/PG reference, a "Book .. Page .." pair, a
    bare "book page" pair in a row that mentions a sale, or a clerk file
    number (CFN). Each distinct book/page or CFN is returned once.
    """
    soup = BeautifulSoup(html, "html.parser")
    instruments: List[Instrument] = []
    seen = set()

    def add(text: str, book_page: Optional[BookPage], cfn: Optional[str]):
        key = cfn or str(book_page)
        if key in seen:
            return
        seen.add(key)
        instruments.append(
            Instrument(
                document_type=_sale_label(text),
                instrument_number=cfn,
                book_page=book_page,
                recorded_date=parse_date(text),
            )
        )

    for row in soup.find_all("tr"):
        text = clean_text(row.get_text(" "))
        match = ORB_PATTERN.search(text) or BOOK_PAGE_PATTERN.search(text)
        if not match and "sale" in text.lower():
            match = SALE_ROW_PATTERN.search(text)
        cfn_match = CFN_PATTERN.search(text)
        if match or cfn_match:
            book_page = BookPage(book=match.group(1), page=match.group(2)) if match else None
            add(text, book_page, cfn_match.group(1) if cfn_match else None)

    if not instruments:
        for line in soup.get_text("\n").split("\n"):
            text = clean_text(line)
            match = ORB_PATTERN.search(text) or BOOK_PAGE_PATTERN.search(text)
            cfn_match = CFN_PATTERN.search(text)
            if match or cfn_match:
                book_page = BookPage(book=match.group(1), page=match.group(2)) if match else None
                add(text, book_page, cfn_match.group(1) if cfn_match else None)

    return instruments


class MiamiDadeScraper(JurisdictionAdapter):
    """
    Miami-Dade County, FL. The property appraiser supplies the folio and the
    sale history (ORB book/page or CFN); the Clerk's official records search
    opens the recorded image as a PDF in a new window.
    """

    name = "miami_dade"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        street = parse_address(query.raw_address).street or query.raw_address

        await self.open_portal(session)
        await self.fill(session, "address", street, typed=True)
        await self.pause(1500, 2500)

        suggestion = await self.find(session, "suggestions", timeout_ms=5000)
        if suggestion is not None:
            await session.act(suggestion, Action.click(), "address suggestion")
        else:
            await session.act_on(self.query("address"), Action.press("Enter"))
        await session.wait_for(WaitFor.network_idle())
        await self.pause(2000, 3000)

        html = await session.snapshot()
        folio = parse_folio(html)
        if not folio:
            if await self.page_says(session, *NO_RESULTS_PHRASES):
                logger.info(f"⚠️ No property matched {street}")
            return []

        logger.info(f"✅ Folio {folio}")
        return [SearchResult(parcel_id=folio, detail_url=session.current_url)]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        tab = await self.find(session, "sales_tab", text=r"^\s*Sales( Information)?\s*$", timeout_ms=5000)
        if tab is not None:
            await session.act(tab, Action.click(), "Sales tab")
            await session.wait_for(WaitFor.network_idle())
        else:
            logger.info("No Sales tab found, reading the current page")

        chosen = self.select(parse_sales(await session.snapshot()))

        with self.stage(Stage.ACQUIRE):
            return await self._download(session, chosen)

    async def _download(self, session: Session, chosen: Instrument) -> DocumentHandle:
        logger.info("📄 Searching the Clerk's official records")
        await self.open_portal(session, "clerk")

        if chosen.instrument_number:
            await self.fill(session, "instrument", chosen.instrument_number)
        else:
            await self.fill(session, "book", chosen.book_page.book)
            await self.fill(session, "page", chosen.book_page.page)
        await self.click(session, "clerk_submit")
        await session.wait_for(WaitFor.network_idle())

        await session.follow_popup(self.query("view_link"), timeout_ms=30000)
        identifier = chosen.instrument_number or f"{chosen.book_page.book}_{chosen.book_page.page}"
        return await self.fetch_pdf(session, session.current_url, identifier)
