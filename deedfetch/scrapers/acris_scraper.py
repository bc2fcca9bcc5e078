import logging
import re
from typing import List

from bs4 import BeautifulSoup

from ..errors import ElementNotFound, Stage
from ..models import DocumentHandle, Instrument, RawPage, SearchQuery, SearchResult, fold_name
from .address import parse_address
from .base import JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, ElementQuery, Session, WaitFor

logger = logging.getLogger(__name__)

BOROUGH_CODES = {
    "manhattan": "1",
    "new york": "1",
    "bronx": "2",
    "brooklyn": "3",
    "kings": "3",
    "queens": "4",
    "staten island": "5",
    "richmond": "5",
}


def parse_property_details(html: str) -> dict:
    """
    Read borough, block, lot and unit from the "Current Search Criteria" box.

    Returns:
        dict: Keys borough, block, lot, unit; values are None when absent
    """
    soup = BeautifulSoup(html, "html.parser")

    font_element = soup.find("font", string=re.compile("Borough:"))
    if not font_element:
        bold = soup.find("b", string=re.compile("Borough:"))
        font_element = bold.parent if bold else None

    property_text = font_element.get_text(" ") if font_element else ""

    borough_match = re.search(r"Borough:\s*(.*?)(?=Block:|$)", property_text, re.DOTALL)
    block_match = re.search(r"Block:\s*(.*?)(?=Lot:|$)", property_text, re.DOTALL)
    lot_match = re.search(r"Lot:\s*(.*?)(?=Unit:|$)", property_text, re.DOTALL)
    unit_match = re.search(r"Unit:\s*(.*?)(?=Date Range:|$)", property_text, re.DOTALL)

    def value(match):
        return clean_text(match.group(1)) or None if match else None

    return {
        "borough": value(borough_match),
        "block": value(block_match),
        "lot": value(lot_match),
        "unit": value(unit_match),
    }


def parse_records_table(html: str, document_url: str) -> List[Instrument]:
    """
    Parse the document search results grid.

    Args:
        html: Results page HTML
        document_url: Viewer URL template with a ``{doc_id}`` placeholder

    Returns:
        list: One Instrument per row, in listing order
    """
    soup = BeautifulSoup(html, "html.parser")
    results = []

    for row in soup.select('table table tr[style^="background-color"]'):
        img_button = row.select_one('input[name="IMG"]')
        if not img_button:
            continue

        id_match = re.search(r'go_image\("([^"]+)"\)', img_button.get("onclick") or "")
        if not id_match:
            continue
        doc_id = id_match.group(1)

        cells = row.find_all("td")
        if len(cells) < 14:
            continue

        def extract_text(cell):
            font_tag = cell.find("font")
            return clean_text(font_tag.get_text()) if font_tag else ""

        crfn = extract_text(cells[2])
        recorded = parse_date(extract_text(cells[6])) or parse_date(extract_text(cells[5]))
        results.append(
            Instrument(
                document_type=extract_text(cells[7]),
                instrument_number=crfn or doc_id,
                recorded_date=recorded,
                url=document_url.format(doc_id=doc_id),
            )
        )

    return results


class AcrisScraper(JurisdictionAdapter):
    """
    NYC ACRIS. Address lookup resolves a borough/block/lot, the document
    search lists every recorded instrument for it, and the image viewer saves
    the chosen one as a PDF download.
    """

    name = "acris"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        parsed = parse_address(query.raw_address)
        if not parsed.street_number or not parsed.street_name:
            logger.warning(f"⚠️ Could not parse address components for ACRIS: {query.raw_address}")
            return []

        street_name = " ".join(p for p in (parsed.street_name, parsed.street_suffix) if p).upper()
        borough = BOROUGH_CODES.get(fold_name(parsed.city or ""), "1")

        await self.open_portal(session)
        await session.act_on(self.query("borough"), Action.select(borough))
        await self.fill(session, "street_number", parsed.street_number)
        await self.fill(session, "street_name", street_name)
        await self.click(session, "lookup_submit")
        await session.wait_for(WaitFor.network_idle())

        if await session.exists(self.query("lookup_error", text="TAX LOT NOT FOUND")):
            logger.info(f"Tax lot not found for {query.raw_address}")
            return []

        await self.click(session, "document_search", timeout_ms=15000)
        await session.wait_for(WaitFor.network_idle())
        await self.click(session, "search_submit", timeout_ms=30000)
        await session.wait_for(WaitFor.network_idle())

        details = parse_property_details(await session.snapshot())
        if not details["block"] or not details["lot"]:
            return []

        parcel_id = f"{details['borough'] or borough}-{details['block']}-{details['lot']}"
        logger.info(f"🏙️ Resolved BBL {parcel_id}")
        return [SearchResult(parcel_id=parcel_id)]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        if await self.page_says(session, "No Records Found"):
            instruments = []
        else:
            await session.act_on(self.query("max_rows"), Action.select("99"))
            await session.wait_for(WaitFor.network_idle())
            await self.settle_rows(session, self.config.selector_candidates("result_rows")[0])
            instruments = parse_records_table(await session.snapshot(), self.config.url("document"))

        chosen = self.select(instruments)

        with self.stage(Stage.ACQUIRE):
            body = await self._save_from_viewer(session, chosen.url)

        return DocumentHandle(
            kind="pdf",
            pages=[RawPage(bytes=body, mime_type="application/pdf", page_index=0)],
            source_url=chosen.url,
            identifier=chosen.instrument_number or result.identifier,
        )

    async def _save_from_viewer(self, session: Session, url: str) -> bytes:
        frame = self.config.selector_candidates("viewer_frame")[0]
        await session.navigate(url, timeout_ms=self.timeout_ms)
        viewer = await session.locate(ElementQuery.of(f'iframe[name="{frame}"]'), timeout_ms=30000)
        if viewer is None:
            raise ElementNotFound(f"Image viewer frame '{frame}' never appeared")

        logger.info("💾 Clicking Save in the image viewer")
        await session.act_on(self.query("save_button", frame=frame), Action.click(), timeout_ms=30000)
        await self.pause(1500, 2500)

        confirm = self.query("save_confirm", text=r"^\s*OK\s*$", frame=frame)
        return await session.download(confirm, timeout_ms=300000)

