import logging
import re
from typing import List, Optional
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from ..errors import ElementNotFound, Stage
from ..models import BookPage, DocumentHandle, Instrument, SearchQuery, SearchResult
from .address import parse_address
from .base import NO_RESULTS_PHRASES, JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor
from .services.consent import ConsentGate

logger = logging.getLogger(__name__)

PARCEL_PATTERN = re.compile(r"\b\d{2}-\d{2}-\d{2}-\d{4}-\d{2}-\d{3}\b")
INSTRUMENT_PATTERN = re.compile(r"^\d{10,12}$")


def parse_parcel_id(html: str) -> Optional[str]:
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    match = PARCEL_PATTERN.search(text)
    return match.group(0) if match else None


def parse_sales_table(html: str) -> List[Instrument]:
    """
    Parse the appraiser's Sales history table.

    Columns are located by header text (Sale Date, Instrument #, Book/Page,
    Deed Code) so a reordering on the portal does not shift values.
    """
    soup = BeautifulSoup(html, "html.parser")
    instruments = []

    for table in soup.find_all("table"):
        headers = [clean_text(th.get_text()).lower() for th in table.find_all("th")]
        if not any("instrument" in h for h in headers):
            continue

        def column(*names):
            for i, header in enumerate(headers):
                if any(name in header for name in names):
                    return i
            return None

        date_col = column("sale date", "date")
        instrument_col = column("instrument")
        book_page_col = column("book/page", "book")
        code_col = column("deed code", "deed", "code")

        for row in table.find_all("tr"):
            cells = row.find_all("td")
            if not cells or instrument_col is None or instrument_col >= len(cells):
                continue

            instrument = clean_text(cells[instrument_col].get_text())
            if not INSTRUMENT_PATTERN.match(instrument):
                continue

            def cell_text(index):
                if index is None or index >= len(cells):
                    return ""
                return clean_text(cells[index].get_text())

            book_page = None
            bp_match = re.search(r"(\d+)\s*/\s*(\d+)", cell_text(book_page_col))
            if bp_match:
                book_page = BookPage(book=bp_match.group(1), page=bp_match.group(2))

            link = cells[instrument_col].find("a")
            instruments.append(
                Instrument(
                    document_type=cell_text(code_col),
                    instrument_number=instrument,
                    book_page=book_page,
                    recorded_date=parse_date(cell_text(date_col)),
                    url=link.get("href") if link else None,
                )
            )
        if instruments:
            break

    return instruments


def clerk_pdf_url(viewer_src: str, clerk_base: str) -> Optional[str]:
    """Turn the clerk viewer's ``?file=`` parameter into an absolute PDF URL."""
    values = parse_qs(urlparse(viewer_src or "").query).get("file")
    if not values:
        return None
    return urljoin(clerk_base.rstrip("/") + "/", values[0])


class OrangeCountyScraper(JurisdictionAdapter):
    """
    Orange County, FL. The property appraiser's Sales tab lists instruments;
    each links through a "Continue to site" hop to the Comptroller's
    self-service site, which sits behind a disclaimer (and sometimes a
    reCAPTCHA) and serves the deed as a PDF inside a viewer iframe.
    """

    name = "orange"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        parsed = parse_address(query.raw_address)
        street = parsed.street or query.raw_address
        logger.info(f"🏠 Using street address for search: {street}")

        await self.open_portal(session)
        await self.fill(session, "address", street, typed=True)

        button = await self.find(session, "search_button", timeout_ms=3000)
        if button is not None:
            await session.act(button, Action.click(), "search button")
        else:
            await session.act_on(self.query("address"), Action.press("Enter"))
        await session.wait_for(WaitFor.network_idle())
        await self.pause(2000, 3000)

        if await self.page_says(session, *NO_RESULTS_PHRASES):
            logger.info(f"⚠️ Property not found: {street}")
            return []

        parcel_id = parse_parcel_id(await session.snapshot())
        if not parcel_id:
            return []
        logger.info(f"✅ Property found: parcel {parcel_id}")
        return [SearchResult(parcel_id=parcel_id, detail_url=session.current_url)]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        logger.info("📋 Opening the Sales tab")
        await self.click(session, "sales_tab", text=r"^\s*SALES\s*$")
        await session.wait_for(WaitFor.network_idle())

        chosen = self.select(parse_sales_table(await session.snapshot()))

        with self.stage(Stage.ACQUIRE):
            return await self._download(session, chosen)

    async def _download(self, session: Session, chosen: Instrument) -> DocumentHandle:
        number = chosen.instrument_number
        logger.info(f"🔗 Clicking instrument # link {number}")
        await self.click(session, "instrument_link", text=rf"^\s*{re.escape(number)}\s*$")

        continue_link = await self.find(session, "continue_link", timeout_ms=15000)
        href = await continue_link.get_attribute("href") if continue_link is not None else None
        if not href:
            raise ElementNotFound(f"No 'Continue to site' link for instrument {number}")

        await session.navigate(href, wait=WaitFor.network_idle(), timeout_ms=self.timeout_ms)
        await self.clear_gate(session)

        yes = await self.find(session, "continue_button", text=r"^\s*Yes\s*-\s*Continue\s*$", timeout_ms=5000)
        if yes is not None:
            await session.act(yes, Action.click(), "Yes - Continue")
            await session.wait_for(WaitFor.dom_ready())

        if "/user/disclaimer" in session.current_url:
            # Still gated: either a challenge appeared or the portal changed
            await ConsentGate(self.config.gate).check_captcha(session)
            raise ElementNotFound("Still on the clerk disclaimer after accepting it")

        viewer = await self.find(session, "document_frame", timeout_ms=30000, visible=False)
        src = await viewer.get_attribute("src") if viewer is not None else None
        pdf_url = clerk_pdf_url(src, self.config.url("clerk"))
        if not pdf_url:
            raise ElementNotFound(f"No PDF viewer frame on {session.current_url}")

        self.charge(session, f"document {number}")
        return await self.fetch_pdf(session, pdf_url, number)
