import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..errors import ElementNotFound, InvalidDocumentSignature, Stage
from ..models import BookPage, DocumentHandle, Instrument, RawPage, SearchQuery, SearchResult
from .address import parse_address, strip_street_suffix
from .base import JurisdictionAdapter, clean_text, parse_date
from .services.browser import Action, Session, WaitFor

logger = logging.getLogger(__name__)

VIEWER_SOURCE_MARKERS = ("viewimage", "getimage", ".tif", ".pdf")


def parse_parcel_links(html: str) -> List[Tuple[str, str]]:
    """(parcel number, href) for every numeric parcel link in the results list."""
    soup = BeautifulSoup(html, "html.parser")
    parcels = []
    for link in soup.find_all("a"):
        text = clean_text(link.get_text())
        if re.fullmatch(r"\d{3,}", text) and link.get("href"):
            parcels.append((text, link.get("href")))
    return parcels


def parse_deeds_table(html: str) -> List[Instrument]:
    """
    Rows of the parcel's Deeds table. The "Deed Type" cell links to the
    Register of Deeds image; date and book/page columns are read when present.
    """
    soup = BeautifulSoup(html, "html.parser")

    for table in soup.find_all("table"):
        rows = table.find_all("tr")
        headers = None
        header_row = 0
        for i, row in enumerate(rows):
            texts = [clean_text(th.get_text()).lower() for th in row.find_all("th")]
            if "deed type" in texts:
                headers = texts
                header_row = i
                break
        if headers is None:
            continue

        def column(*names):
            for index, header in enumerate(headers):
                if header in names:
                    return index
            return None

        type_col = headers.index("deed type")
        date_col = column("sale date", "deed date", "date", "recorded date")
        book_col = column("book", "deed book")
        page_col = column("page", "deed page")

        instruments = []
        for row in rows[header_row + 1 :]:
            cells = row.find_all("td")
            if len(cells) <= type_col:
                continue
            link = cells[type_col].find("a")
            if link is None:
                continue

            def cell_text(index):
                return clean_text(cells[index].get_text()) if index is not None and index < len(cells) else ""

            book, page = cell_text(book_col), cell_text(page_col)
            href = link.get("href") or ""
            if href.startswith("https://rdlxweb"):
                href = "http://" + href[len("https://") :]
            instruments.append(
                Instrument(
                    document_type=clean_text(link.get_text()),
                    book_page=BookPage(book=book, page=page) if book and page else None,
                    recorded_date=parse_date(cell_text(date_col)),
                    url=href or None,
                )
            )
        return instruments

    return []


def viewer_source(html: str, base_url: str) -> Optional[str]:
    """Absolute URL of the image embedded in a Register of Deeds viewer page."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["iframe", "frame", "embed", "img", "object"]):
        src = tag.get("src") or tag.get("data") or ""
        if any(marker in src.lower() for marker in VIEWER_SOURCE_MARKERS):
            return urljoin(base_url, src)
    return None


def detect_kind(body: bytes) -> Optional[str]:
    if body.startswith(b"%PDF"):
        return "pdf"
    if body[:4] in (b"II*\x00", b"MM\x00*"):
        return "tiff"
    return None


class GuilfordScraper(JurisdictionAdapter):
    """
    Guilford County, NC. The tax portal's Deeds tab links each deed type to
    the Register of Deeds image service, which answers with a multi-page TIFF
    (occasionally a PDF, or an HTML viewer wrapping either).
    """

    name = "guilford"

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        parsed = parse_address(query.raw_address)
        if not parsed.street_number or not parsed.street_name:
            logger.warning(f"⚠️ Could not parse street number and name from {query.raw_address}")
            return []
        street_name = strip_street_suffix(parsed.street_name).upper()
        logger.info(f"  Street Number: {parsed.street_number}")
        logger.info(f"  Street Name: {street_name}")

        await self.open_portal(session)
        await self.click(session, "location_tab")
        await self.fill(session, "street_number", parsed.street_number)
        await self.fill(session, "street_name", street_name)
        await session.act_on(self.query("street_name"), Action.press("Enter"))
        await session.wait_for(WaitFor.network_idle())
        await self.pause(2000, 3000)

        base = session.current_url
        parcels = parse_parcel_links(await session.snapshot())
        return [SearchResult(parcel_id=number, detail_url=urljoin(base, href)) for number, href in parcels]

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        logger.info(f"🖱️ Opening parcel {result.parcel_id}")
        await session.navigate(result.detail_url, wait=WaitFor.network_idle())
        await self.click(session, "deeds_tab", text=r"^\s*Deeds\s*$")
        await session.wait_for(WaitFor.network_idle())

        chosen = self.select(parse_deeds_table(await session.snapshot()))
        if not chosen.url:
            raise ElementNotFound(f"Deed '{chosen.document_type}' has no image link")

        with self.stage(Stage.ACQUIRE):
            return await self._download(session, urljoin(session.current_url, chosen.url), chosen, result)

    async def _download(self, session: Session, url: str, chosen: Instrument, result: SearchResult) -> DocumentHandle:
        logger.info(f"📥 Requesting deed image from {url}")
        body, content_type = await session.fetch(url)
        source_url = url

        if detect_kind(body) is None and "html" in content_type.lower():
            inner = viewer_source(body.decode("utf-8", errors="replace"), url)
            if inner is None:
                raise InvalidDocumentSignature(f"Register of Deeds returned an HTML page without an image: {url}")
            logger.info(f"Following viewer source {inner}")
            body, content_type = await session.fetch(inner, headers={"Referer": url})
            source_url = inner

        kind = detect_kind(body)
        if kind is None:
            raise InvalidDocumentSignature(
                f"Expected a TIFF or PDF from {source_url}, got {content_type or 'unknown'} starting {body[:8]!r}"
            )
        logger.info(f"✅ {kind.upper()} downloaded: {len(body) / 1024:.2f} KB")

        identifier = f"{chosen.book_page.book}_{chosen.book_page.page}" if chosen.book_page else result.identifier
        mime_type = "application/pdf" if kind == "pdf" else "image/tiff"
        return DocumentHandle(
            kind=kind,
            pages=[RawPage(bytes=body, mime_type=mime_type, page_index=0)],
            source_url=source_url,
            identifier=identifier,
        )
