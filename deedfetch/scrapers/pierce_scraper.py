import logging
import re
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..errors import ElementNotFound, Stage
from ..models import DocumentHandle, Instrument, SearchQuery, SearchResult
from .address import parse_address
from .base import JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor

logger = logging.getLogger(__name__)

PARCEL_PATTERN = re.compile(r"\b\d{10}\b")
INSTRUMENT_PATTERN = re.compile(r"^\d{7,}$")
DOCUMENT_TYPE_PATTERN = re.compile(
    r"^[A-Z][A-Z\s&/.,'-]*\b(DEED|AFFIDAVIT|MORTGAGE|TRUST|RELEASE|LIEN|EASEMENT|RECONVEYANCE|"
    r"ASSIGNMENT|AGREEMENT|CERTIFICATE|NOTICE|SATISFACTION|JUDGMENT)\b[A-Z\s&/.,'-]*$"
)
PDF_FRAME_MARKERS = (".pdf", "GetFile", "ViewImage", "GetImage")


def parse_document_grid(html: str) -> List[Instrument]:
    """
    Parse the search results grid.

    The portal renders every document as a run of cells in one long row. A
    cell reading "View" with a link starts a document; the instrument number
    follows within a few cells and the document type within about fifteen.
    """
    soup = BeautifulSoup(html, "html.parser")
    cells = soup.find_all("td")
    instruments = []

    for i, cell in enumerate(cells):
        view_link = cell.find("a")
        if clean_text(cell.get_text()) != "View" or view_link is None:
            continue

        number = None
        link = view_link.get("href")
        for candidate in cells[i + 1 : i + 5]:
            text = clean_text(candidate.get_text())
            if INSTRUMENT_PATTERN.match(text):
                number = text
                instrument_link = candidate.find("a")
                if instrument_link is not None and instrument_link.get("href"):
                    link = instrument_link.get("href")
                break
        if not number:
            continue

        document_type = None
        recorded = None
        for candidate in cells[i + 1 : i + 15]:
            text = clean_text(candidate.get_text())
            if recorded is None:
                recorded = parse_date(text)
            if document_type is None and DOCUMENT_TYPE_PATTERN.match(text):
                document_type = text

        instruments.append(
            Instrument(
                document_type=document_type or "",
                instrument_number=number,
                recorded_date=recorded,
                url=link,
            )
        )

    return instruments


def find_parcel_number(raw_address: str) -> Optional[str]:
    match = PARCEL_PATTERN.search(raw_address or "")
    return match.group(0) if match else None


class PierceCountyScraper(JurisdictionAdapter):
    """
    Pierce County, WA (Auditor's recorded documents). Excise tax affidavits
    are recorded alongside every deed and are skipped by the classifier.
    The image opens in a popup whose LTViewer frame produces the PDF after
    "Get Image Now".
    """

    name = "pierce"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        parcel = find_parcel_number(query.raw_address)

        await self.open_portal(session)
        if parcel:
            logger.info(f"🔍 Searching by parcel number {parcel}")
            field = "parcel"
            await self.fill(session, field, parcel)
        else:
            field = "address"
            await self.fill(session, field, parse_address(query.raw_address).street.upper())
        await session.act_on(self.query(field), Action.press("Enter"))
        await session.wait_for(WaitFor.network_idle())
        await self.pause(1000, 2000)

        instruments = parse_document_grid(await session.snapshot())
        logger.info(f"Found {len(instruments)} recorded document(s)")
        return [inst.to_result(parcel_id=parcel) for inst in instruments]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        chosen = self.select(parse_document_grid(await session.snapshot()))
        if not chosen.url:
            raise ElementNotFound(f"No link for instrument {chosen.instrument_number}")

        with self.stage(Stage.ACQUIRE):
            await session.navigate(urljoin(session.current_url, chosen.url), wait=WaitFor.network_idle())
            await self.pause(2000, 3000)

            logger.info("🖼️ Opening the image viewer")
            await session.follow_popup(self.query("image_link"), timeout_ms=15000)
            await self.pause(3000, 4000)

            frame = self.config.selector_candidates("viewer_frame")[0]
            button = await session.locate(self.query("get_image", frame=frame), timeout_ms=10000)
            if button is None:
                button = await self.find(session, "get_image", timeout_ms=5000)
            await session.act(button, Action.click(), "Get Image Now")

            pdf_url = await session.wait_for_frame_url(
                lambda url: any(marker in url for marker in PDF_FRAME_MARKERS), timeout_ms=30000
            )
            return await self.fetch_pdf(session, pdf_url, chosen.instrument_number)
