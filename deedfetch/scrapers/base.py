"""
Shared scaffolding for jurisdiction adapters.

An adapter instance is created once per jurisdiction and reused across
requests, so it holds configuration only. Everything request-scoped lives on
the ``Session`` passed into each call.
"""

import asyncio
import logging
import random
import re
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import JurisdictionConfig, Settings, get_settings
from ..errors import ConfigurationError, DeedFetchError, NavigationFailed, NoResults, Stage, TimeoutFailure
from ..models import DocumentHandle, Instrument, JurisdictionKey, RawPage, SearchQuery, SearchResult
from .services.browser import Action, ElementQuery, Session, SessionConfig, WaitFor
from .services.consent import ConsentGate, GateOutcome

logger = logging.getLogger(__name__)

NO_RESULTS_PHRASES = ("no results", "no records found", "not found", "0 results")

DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y-%m-%d", "%m-%d-%Y", "%b %d, %Y", "%B %d, %Y", "%d-%b-%Y")


def parse_date(text: Optional[str]) -> Optional[date]:
    """Parse the first date found in portal text; None when there is none."""
    if not text:
        return None
    candidates = re.findall(
        r"\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2}|\d{1,2}-\d{1,2}-\d{4}|[A-Z][a-z]{2,8}\.? \d{1,2}, \d{4}|\d{1,2}-[A-Z][a-z]{2}-\d{4}",
        text,
    )
    for candidate in candidates:
        candidate = candidate.replace(".", "")
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
    return None


def clean_text(value: Optional[str]) -> str:
    return " ".join((value or "").split())


class DeedClassifier:
    """Decides whether a jurisdiction's document-type label is a qualifying deed."""

    def __init__(self, include: Iterable[str], exclude: Iterable[str] = ()):
        self.include = [re.compile(p, re.IGNORECASE) for p in include]
        self.exclude = [re.compile(p, re.IGNORECASE) for p in exclude]

    def is_deed(self, document_type: Optional[str]) -> bool:
        label = clean_text(document_type).upper()
        if not label:
            return False
        if any(p.search(label) for p in self.exclude):
            return False
        return any(p.search(label) for p in self.include)


def select_instrument(instruments: Sequence[Instrument], classifier: DeedClassifier) -> Instrument:
    """
    Pick the most recent qualifying deed.

    Dated instruments rank by recorded date; undated ones rank after every
    dated one; listing order breaks ties.

    Raises:
        NoResults: No instrument qualifies as a deed
    """
    qualifying = [(i, inst) for i, inst in enumerate(instruments) if classifier.is_deed(inst.document_type)]
    if not qualifying:
        types = sorted({clean_text(inst.document_type) for inst in instruments if inst.document_type})
        raise NoResults(
            f"No qualifying deed among {len(instruments)} instrument(s)"
            + (f" (types: {', '.join(types)})" if types else "")
        )

    dated = [(i, inst) for i, inst in qualifying if inst.recorded_date]
    if dated:
        # Latest date wins; earliest listing position wins among equal dates
        _, chosen = max(dated, key=lambda pair: (pair[1].recorded_date, -pair[0]))
    else:
        _, chosen = qualifying[0]

    logger.info(
        f"📄 Selected {chosen.document_type} "
        f"({chosen.instrument_number or chosen.book_page or 'no id'}, {chosen.recorded_date or 'undated'})"
    )
    return chosen


def to_deed_error(exc: BaseException, stage: Stage) -> DeedFetchError:
    """Convert raw automation exceptions into the shared taxonomy."""
    if isinstance(exc, DeedFetchError):
        if exc.stage is None:
            exc.stage = stage
        return exc
    if isinstance(exc, (PlaywrightTimeoutError, asyncio.TimeoutError)):
        error = TimeoutFailure(f"Timed out during {stage.value}: {exc}", stage=stage)
    elif isinstance(exc, PlaywrightError):
        error = NavigationFailed(f"Browser error during {stage.value}: {exc.message}", stage=stage)
    else:
        raise exc
    error.__cause__ = exc
    return error


class JurisdictionAdapter:
    """
    Base class for one county's portal.

    Subclasses implement ``search`` and ``locate_document``; this class
    provides session lifecycle, consent handling, stage tagging and a few
    selector-driven helpers.
    """

    name = "base"

    def __init__(self, config: JurisdictionConfig, settings: Optional[Settings] = None):
        self.config = config
        self.settings = settings or get_settings()
        self.classifier = DeedClassifier(config.deed_include, config.deed_exclude)

    @property
    def key(self) -> JurisdictionKey:
        return JurisdictionKey.normalize(self.config.county, self.config.state)

    @property
    def timeout_ms(self) -> int:
        return self.config.timeout_ms or self.settings.navigation_timeout_ms

    def __repr__(self):
        return f"{type(self).__name__}({self.key})"

    # Lifecycle

    def session_config(self) -> SessionConfig:
        return SessionConfig(headless=self.settings.headless, timeout_ms=self.timeout_ms)

    async def initialize(self) -> Session:
        session = Session(self.session_config())
        try:
            await session.start()
        except PlaywrightError as e:
            await session.close()
            raise NavigationFailed(f"Could not launch browser: {e.message}", stage=Stage.CONSENT) from e
        return session

    async def teardown(self, session: Session):
        await session.close()

    # Contract

    async def search(self, session: Session, query: SearchQuery) -> List[SearchResult]:
        raise NotImplementedError

    async def locate_document(self, session: Session, result: SearchResult) -> DocumentHandle:
        raise NotImplementedError

    async def fetch_document(self, session: Session, query: SearchQuery) -> Tuple[SearchResult, DocumentHandle]:
        """Run search then locate_document, surfacing every failure as a DeedFetchError."""
        logger.info(f"🔍 [{self.config.display_name}] Searching for {query.raw_address}")
        session.stage = Stage.SEARCH
        with self.stage(Stage.SEARCH):
            results = await self.search(session, query)
        if not results:
            raise NoResults(f"No listings matched '{query.raw_address}'", stage=Stage.SEARCH)

        result = results[0]
        if len(results) > 1:
            logger.info(f"Found {len(results)} listings, using the first ({result.identifier})")

        session.stage = Stage.LOCATE
        with self.stage(Stage.LOCATE):
            handle = await self.locate_document(session, result)
        return result, handle

    @contextmanager
    def stage(self, stage: Stage):
        try:
            yield
        except (DeedFetchError, PlaywrightError, asyncio.TimeoutError) as e:
            error = to_deed_error(e, stage)
            if error is e:
                raise
            raise error from e

    # Helpers for subclasses

    async def open_portal(self, session: Session, url_name: str = "search", wait: Optional[WaitFor] = None) -> GateOutcome:
        """Navigate to a configured portal URL and clear its consent gate."""
        await session.navigate(self.config.url(url_name), wait=wait, timeout_ms=self.timeout_ms)
        return await self.clear_gate(session)

    async def clear_gate(self, session: Session) -> GateOutcome:
        gate = ConsentGate(self.config.gate, self.config.credentials())
        return await gate.clear(session)

    def query(
        self, name: str, text: Optional[str] = None, visible: bool = True, frame: Optional[str] = None
    ) -> ElementQuery:
        selectors = self.config.selector_candidates(name)
        if not selectors:
            raise ConfigurationError(f"{self.config.name}: no '{name}' selectors configured")
        return ElementQuery(selectors=selectors, text=text, visible=visible, frame=frame)

    async def find(
        self, session: Session, name: str, timeout_ms: int = 10000, text: Optional[str] = None, visible: bool = True
    ):
        return await session.locate(self.query(name, text=text, visible=visible), timeout_ms=timeout_ms)

    async def fill(self, session: Session, name: str, value: str, typed: bool = False, timeout_ms: int = 10000):
        action = Action.type(value) if typed else Action.fill(value)
        await session.act_on(self.query(name), action, timeout_ms=timeout_ms)

    async def click(self, session: Session, name: str, text: Optional[str] = None, timeout_ms: int = 10000):
        await session.act_on(self.query(name, text=text), Action.click(), timeout_ms=timeout_ms)

    async def pause(self, min_ms: int = 500, max_ms: int = 1500):
        await asyncio.sleep(random.uniform(min_ms, max_ms) / 1000)

    async def settle_rows(self, session: Session, selector: str, max_checks: int = 10, interval_ms: int = 1000) -> int:
        """
        Wait until the number of rows matching ``selector`` stops changing.

        Results tables on postback portals fill in over several paints; three
        consecutive identical non-zero counts are taken as loaded.
        """
        previous_count = 0
        stable_count = 0
        current_count = 0
        for _ in range(max_checks):
            current_count = await session.evaluate("sel => document.querySelectorAll(sel).length", selector)
            if current_count == previous_count and current_count > 0:
                stable_count += 1
                if stable_count >= 3:
                    break
            else:
                stable_count = 0
            previous_count = current_count
            await asyncio.sleep(interval_ms / 1000)
        return current_count

    async def page_says(self, session: Session, *phrases: str) -> bool:
        """True if the visible page text contains any of the phrases (case-insensitive)."""
        text = (await session.evaluate("() => document.body ? document.body.innerText : ''") or "").lower()
        return any(p.lower() in text for p in phrases)

    def charge(self, session: Session, reason: str):
        """Record a paid lookup for portals that bill per query."""
        if self.config.charges_per_query:
            session.mark_side_effect(f"{self.config.name}: {reason}")

    async def fetch_pdf(self, session: Session, url: str, identifier: str) -> DocumentHandle:
        logger.info(f"📥 Downloading PDF from {url}")
        body, content_type = await session.fetch(url)
        return DocumentHandle(
            kind="pdf",
            pages=[RawPage(bytes=body, mime_type=content_type.split(";")[0] or "application/pdf", page_index=0)],
            source_url=url,
            identifier=identifier,
        )

    def select(self, instruments: Sequence[Instrument]) -> Instrument:
        logger.info(f"📋 {len(instruments)} instrument(s) listed")
        return select_instrument(instruments, self.classifier)
