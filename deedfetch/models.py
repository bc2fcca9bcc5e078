"""
Data models for jurisdiction routing, search results and recorded documents.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional


STATE_CODES = {
    "alabama": "al", "alaska": "ak", "arizona": "az", "arkansas": "ar",
    "california": "ca", "colorado": "co", "connecticut": "ct", "delaware": "de",
    "district of columbia": "dc", "florida": "fl", "georgia": "ga", "hawaii": "hi",
    "idaho": "id", "illinois": "il", "indiana": "in", "iowa": "ia",
    "kansas": "ks", "kentucky": "ky", "louisiana": "la", "maine": "me",
    "maryland": "md", "massachusetts": "ma", "michigan": "mi", "minnesota": "mn",
    "mississippi": "ms", "missouri": "mo", "montana": "mt", "nebraska": "ne",
    "nevada": "nv", "new hampshire": "nh", "new jersey": "nj", "new mexico": "nm",
    "new york": "ny", "north carolina": "nc", "north dakota": "nd", "ohio": "oh",
    "oklahoma": "ok", "oregon": "or", "pennsylvania": "pa", "rhode island": "ri",
    "south carolina": "sc", "south dakota": "sd", "tennessee": "tn", "texas": "tx",
    "utah": "ut", "vermont": "vt", "virginia": "va", "washington": "wa",
    "west virginia": "wv", "wisconsin": "wi", "wyoming": "wy",
}


@dataclass(frozen=True)
class JurisdictionKey:
    """Normalized (county, state) pair; build with ``JurisdictionKey.normalize``."""

    county: str
    state: str

    @classmethod
    def normalize(cls, county: str, state: str, aliases: Optional[dict] = None) -> "JurisdictionKey":
        """
        Fold case, punctuation, a trailing "county" and known aliases.

        Args:
            county: Raw county name, e.g. "Miami-Dade County" or "MIAMI DADE"
            state: Raw state code or name, e.g. "fl" or "FL"
            aliases: Optional mapping of folded alias -> canonical folded county

        Returns:
            JurisdictionKey: The canonical key
        """
        folded = fold_name(county)
        folded = re.sub(r"\s+(county|parish|borough)$", "", folded)
        if aliases:
            folded = aliases.get(folded, folded)
        state = fold_name(state)
        return cls(county=folded, state=STATE_CODES.get(state, state))

    @property
    def slug(self) -> str:
        return f"{self.county.replace(' ', '-')}-{self.state}"

    def __str__(self):
        return f"{self.county}, {self.state}"


def fold_name(value: str) -> str:
    """Lower-case, turn punctuation into spaces and collapse whitespace."""
    value = (value or "").lower().replace(".", "")
    value = re.sub(r"[^a-z0-9]+", " ", value)
    return " ".join(value.split())


@dataclass(frozen=True)
class SearchQuery:
    raw_address: str


@dataclass(frozen=True)
class BookPage:
    book: str
    page: str

    def __str__(self):
        return f"{self.book}-{self.page}"


@dataclass(frozen=True)
class SearchResult:
    """A parcel or instrument located in a jurisdiction's results listing."""

    parcel_id: Optional[str] = None
    instrument_number: Optional[str] = None
    book_page: Optional[BookPage] = None
    document_type: Optional[str] = None
    detail_url: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.parcel_id or self.instrument_number or self.book_page)

    @property
    def identifier(self) -> str:
        if self.instrument_number:
            return self.instrument_number
        if self.book_page:
            return f"{self.book_page.book}_{self.book_page.page}"
        return self.parcel_id or "unknown"


@dataclass(frozen=True)
class Instrument:
    """One recorded document listed for a parcel, before selection."""

    document_type: str
    instrument_number: Optional[str] = None
    book_page: Optional[BookPage] = None
    recorded_date: Optional[date] = None
    url: Optional[str] = None

    def to_result(self, parcel_id: Optional[str] = None) -> SearchResult:
        return SearchResult(
            parcel_id=parcel_id,
            instrument_number=self.instrument_number,
            book_page=self.book_page,
            document_type=self.document_type,
            detail_url=self.url,
        )


DOCUMENT_KINDS = ("pdf", "tiff", "image-sequence")


@dataclass(frozen=True)
class RawPage:
    bytes: bytes
    mime_type: str
    page_index: int


@dataclass
class DocumentHandle:
    """Whatever an adapter managed to retrieve, before normalization."""

    kind: str
    pages: List[RawPage]
    source_url: str
    identifier: str = "unknown"

    def __post_init__(self):
        if self.kind not in DOCUMENT_KINDS:
            raise ValueError(f"Unknown document kind: {self.kind}")

    @property
    def page_indexes(self) -> List[int]:
        return [p.page_index for p in self.pages]


@dataclass(frozen=True)
class NormalizedDeed:
    pdf_bytes: bytes = field(repr=False)
    filename: str
    size_bytes: int
    page_count: int
    captcha_encountered: bool
    source_url: str
    duration_ms: int

    def to_dict(self, include_pdf: bool = False) -> dict:
        data = {
            "filename": self.filename,
            "sizeBytes": self.size_bytes,
            "pageCount": self.page_count,
            "captchaEncountered": self.captcha_encountered,
            "sourceUrl": self.source_url,
            "durationMs": self.duration_ms,
        }
        if include_pdf:
            data["pdfBase64"] = base64.b64encode(self.pdf_bytes).decode("ascii")
        return data
