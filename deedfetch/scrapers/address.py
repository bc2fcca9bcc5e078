import re
from dataclasses import dataclass
from typing import Optional

from ..models import STATE_CODES

STREET_SUFFIXES = {
    "st": "Street",
    "str": "Street",
    "street": "Street",
    "ave": "Avenue",
    "av": "Avenue",
    "avenue": "Avenue",
    "dr": "Drive",
    "drive": "Drive",
    "rd": "Road",
    "road": "Road",
    "blvd": "Boulevard",
    "boulevard": "Boulevard",
    "ln": "Lane",
    "lane": "Lane",
    "ct": "Court",
    "court": "Court",
    "pl": "Place",
    "place": "Place",
    "cir": "Circle",
    "circle": "Circle",
    "way": "Way",
    "wy": "Way",
    "pkwy": "Parkway",
    "parkway": "Parkway",
    "ter": "Terrace",
    "terrace": "Terrace",
    "trl": "Trail",
    "trail": "Trail",
    "hwy": "Highway",
    "highway": "Highway",
    "sq": "Square",
    "square": "Square",
    "cv": "Cove",
    "cove": "Cove",
    "loop": "Loop",
}

UNIT_PATTERN = re.compile(r"\s*(?:#|\b(?:apt|apartment|unit|ste|suite)\b\.?)\s*([\w-]+)\s*$", re.IGNORECASE)
STATE_ZIP_PATTERN = re.compile(r"^(?P<state>[A-Za-z][A-Za-z .]*?)\s*(?P<zip>\d{5}(?:-\d{4})?)?$")
STREET_PATTERN = re.compile(r"^(?P<number>\d+[A-Za-z]?(?:-\d+)?)\s+(?P<rest>.+)$")


@dataclass(frozen=True)
class ParsedAddress:
    raw: str
    street_number: Optional[str] = None
    street_name: Optional[str] = None
    street_suffix: Optional[str] = None
    unit: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    @property
    def street(self) -> str:
        """Street line without the unit, e.g. "798 Lexington Avenue"."""
        parts = [self.street_number, self.street_name, self.street_suffix]
        return " ".join(p for p in parts if p)


def _state_code(value: str) -> Optional[str]:
    folded = " ".join(value.lower().replace(".", "").split())
    if len(folded) == 2 and folded in STATE_CODES.values():
        return folded
    return STATE_CODES.get(folded)


def parse_address(raw: str) -> ParsedAddress:
    """
    Split a free-form US street address into its parts.

    Example: "12729 Hawkstone Dr, Windermere, FL 34786" gives number "12729",
    name "Hawkstone", suffix "Drive", city "Windermere", state "fl" and zip
    "34786". Missing parts are left as None.
    """
    text = " ".join((raw or "").split())
    parts = [p.strip() for p in text.split(",") if p.strip()]
    if not parts:
        return ParsedAddress(raw=raw or "")

    street_line = parts[0]
    city = state = zip_code = None

    tail = parts[1:]
    if tail:
        match = STATE_ZIP_PATTERN.match(tail[-1])
        if match and _state_code(match.group("state")):
            state = _state_code(match.group("state"))
            zip_code = match.group("zip")
            tail = tail[:-1]
        elif re.fullmatch(r"\d{5}(?:-\d{4})?", tail[-1]):
            zip_code = tail[-1]
            tail = tail[:-1]
            if tail and _state_code(tail[-1]):
                state = _state_code(tail[-1])
                tail = tail[:-1]
        if tail:
            city = tail[-1]
    else:
        # "123 Main St Orlando FL 32801" without commas: peel state/zip off the end
        match = re.search(r"\s([A-Za-z]{2})\s*(\d{5}(?:-\d{4})?)?$", street_line)
        if match and _state_code(match.group(1)):
            state = _state_code(match.group(1))
            zip_code = match.group(2)
            street_line = street_line[: match.start()].strip()

    unit = None
    unit_match = UNIT_PATTERN.search(street_line)
    if unit_match:
        unit = unit_match.group(1)
        street_line = street_line[: unit_match.start()].strip()

    street_number = street_name = street_suffix = None
    street_match = STREET_PATTERN.match(street_line)
    if street_match:
        street_number = street_match.group("number")
        words = street_match.group("rest").split()
    else:
        words = street_line.split()

    if len(words) > 1 and words[-1].lower().rstrip(".") in STREET_SUFFIXES:
        street_suffix = STREET_SUFFIXES[words[-1].lower().rstrip(".")]
        words = words[:-1]
    street_name = " ".join(words) or None

    return ParsedAddress(
        raw=raw,
        street_number=street_number,
        street_name=street_name,
        street_suffix=street_suffix,
        unit=unit,
        city=city,
        state=state,
        zip_code=zip_code,
    )


def strip_street_suffix(street: str) -> str:
    """Drop a trailing suffix for portals that match on the bare name: "Main Street" -> "Main"."""
    words = street.split()
    if len(words) > 1 and words[-1].lower().rstrip(".") in STREET_SUFFIXES:
        words = words[:-1]
    return " ".join(words)
