import asyncio

import pytest

from conftest import FakeSession, image_pages, make_pdf
from deedfetch.config import JurisdictionConfig, Settings
from deedfetch.errors import (
    CaptchaBlocked,
    ElementNotFound,
    ErrorKind,
    FailureRecord,
    NoResults,
    Stage,
    TimeoutFailure,
)
from deedfetch.main import DeedFetchPool, DeedRetrievalGraph
from deedfetch.models import DocumentHandle, JurisdictionKey, NormalizedDeed, RawPage, SearchResult
from deedfetch.scrapers.base import JurisdictionAdapter
from deedfetch.scrapers.registry import Registry

STUB_CONFIG = JurisdictionConfig(
    name="stub_vt",
    adapter="stub",
    county="Stub",
    state="VT",
    display_name="Stub County, VT",
    cities=("stubville",),
    zip_prefixes=("059",),
)
HINTS = {"county": "Stub County", "state": "Vermont"}
ADDRESS = "1 Main St, Stubville, VT 05999"


class StubAdapter(JurisdictionAdapter):
    """Adapter whose attempts follow a script; ``None`` means the search lists nothing."""

    name = "stub"

    def __init__(self, steps, settings=None):
        super().__init__(STUB_CONFIG, settings)
        self.steps = list(steps)
        self.sessions = []
        self.step = None

    async def initialize(self):
        session = FakeSession()
        self.sessions.append(session)
        return session

    async def search(self, session, query):
        self.step = self.steps.pop(0)
        if self.step is None:
            return []
        return [SearchResult(parcel_id="STUB-1")]

    async def locate_document(self, session, result):
        return await self.step(session)


def deliver(pages: int = 2):
    async def step(session):
        return DocumentHandle(
            kind="image-sequence",
            pages=image_pages(range(pages)),
            source_url="https://stub.example/doc",
            identifier="STUB-1",
        )

    return step


def fail(error):
    async def step(session):
        raise error

    return step


async def hang(session):
    await asyncio.sleep(30)


async def pay_then_time_out(session):
    session.mark_side_effect("paid image request")
    raise TimeoutFailure("viewer never loaded")


async def corrupt_parts(session):
    return DocumentHandle(
        kind="pdf",
        pages=[
            RawPage(bytes=make_pdf(), mime_type="application/pdf", page_index=0),
            RawPage(bytes=b"%PDF-1.4 truncated garbage", mime_type="application/pdf", page_index=1),
        ],
        source_url="https://stub.example/doc.pdf",
    )


async def error_page(session):
    return DocumentHandle(
        kind="pdf",
        pages=[RawPage(bytes=b"<html><body>Session expired</body></html>", mime_type="text/html", page_index=0)],
        source_url="https://stub.example/doc.pdf",
    )


def build(steps, **settings):
    adapter = StubAdapter(steps)
    registry = Registry()
    registry.register(JurisdictionKey.normalize("Stub", "VT"), lambda: adapter, config=STUB_CONFIG)
    graph = DeedRetrievalGraph(registry=registry, settings=Settings(**settings))
    return graph, adapter


@pytest.mark.asyncio
async def test_successful_retrieval():
    graph, adapter = build([deliver(pages=2)])

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert isinstance(outcome, NormalizedDeed)
    assert outcome.page_count == 2
    assert outcome.filename == "stub-vt_deed_STUB-1.pdf"
    assert outcome.source_url == "https://stub.example/doc"
    assert len(adapter.sessions) == 1
    assert adapter.sessions[0].closed


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_a_fresh_session():
    graph, adapter = build([fail(TimeoutFailure("slow portal")), deliver()], max_retries=1)

    state = await graph.run(ADDRESS, county="Stub", state="VT")

    assert isinstance(state["deed"], NormalizedDeed)
    assert state["attempt"] == 2
    assert len(state["errors"]) == 1
    assert "Timeout" in state["errors"][0]
    assert len(adapter.sessions) == 2
    assert adapter.sessions[0] is not adapter.sessions[1]
    assert all(s.closed for s in adapter.sessions)


@pytest.mark.asyncio
async def test_retries_are_bounded():
    graph, adapter = build(
        [fail(ElementNotFound("results grid missing"))] * 3,
        max_retries=1,
    )

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome == FailureRecord(
        stage=Stage.LOCATE, kind=ErrorKind.ELEMENT_NOT_FOUND, retryable=True, detail="results grid missing"
    )
    assert len(adapter.sessions) == 2


@pytest.mark.asyncio
async def test_captcha_is_not_retried():
    graph, adapter = build([fail(CaptchaBlocked("challenge", stage=Stage.CONSENT))], max_retries=3)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.CAPTCHA_BLOCKED
    assert outcome.stage == Stage.CONSENT
    assert outcome.retryable is False
    assert len(adapter.sessions) == 1


@pytest.mark.asyncio
async def test_side_effect_disables_retry():
    graph, adapter = build([pay_then_time_out, deliver()], max_retries=3)

    state = await graph.run(ADDRESS, county="Stub", state="VT")

    assert state["failure"].kind == ErrorKind.TIMEOUT
    assert state["failure"].retryable is True
    assert state["side_effect_committed"] is True
    assert len(adapter.sessions) == 1


@pytest.mark.asyncio
async def test_no_listings_is_a_search_failure():
    graph, adapter = build([None], max_retries=3)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.NO_RESULTS
    assert outcome.stage == Stage.SEARCH
    assert len(adapter.sessions) == 1


@pytest.mark.asyncio
async def test_no_qualifying_deed_is_not_retried():
    graph, adapter = build([fail(NoResults("only mortgages listed"))], max_retries=3)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.NO_RESULTS
    assert outcome.stage == Stage.LOCATE
    assert len(adapter.sessions) == 1


@pytest.mark.asyncio
async def test_unsupported_jurisdiction_never_opens_a_browser():
    graph, adapter = build([deliver()])

    outcome = await graph.resolve_and_fetch("1 Main St, Chicago, IL", {"county": "Cook", "state": "IL"})

    assert outcome.kind == ErrorKind.UNSUPPORTED_JURISDICTION
    assert outcome.stage == Stage.SEARCH
    assert outcome.retryable is False
    assert adapter.sessions == []


@pytest.mark.asyncio
async def test_jurisdiction_is_inferred_from_the_address():
    graph, adapter = build([deliver(pages=1)])

    outcome = await graph.resolve_and_fetch(ADDRESS)

    assert isinstance(outcome, NormalizedDeed)
    assert outcome.page_count == 1


@pytest.mark.asyncio
async def test_address_outside_every_jurisdiction():
    graph, adapter = build([deliver()])

    outcome = await graph.resolve_and_fetch("1 Main St, Springfield, IL 62701")

    assert outcome.kind == ErrorKind.UNSUPPORTED_JURISDICTION
    assert adapter.sessions == []


@pytest.mark.asyncio
async def test_request_timeout_releases_the_session():
    graph, adapter = build([hang], request_timeout_s=0.05, max_retries=0)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.TIMEOUT
    assert outcome.stage == Stage.LOCATE
    assert outcome.retryable is True
    assert adapter.sessions[0].closed


@pytest.mark.asyncio
async def test_invalid_document_is_retried_then_reported_from_normalize():
    graph, adapter = build([error_page, error_page], max_retries=1)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.INVALID_DOCUMENT_SIGNATURE
    assert outcome.stage == Stage.NORMALIZE
    assert "HTML" in outcome.detail
    assert len(adapter.sessions) == 2


@pytest.mark.asyncio
async def test_corrupt_pdf_part_is_reported_not_raised():
    graph, adapter = build([corrupt_parts], max_retries=0)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.INVALID_DOCUMENT_SIGNATURE
    assert outcome.stage == Stage.NORMALIZE


@pytest.mark.asyncio
async def test_unexpected_normalize_bug_is_reported_not_raised(monkeypatch):
    from deedfetch.nodes import document_processor_node

    def broken(*args, **kwargs):
        raise ZeroDivisionError("scale")

    monkeypatch.setattr(document_processor_node, "normalize", broken)
    graph, adapter = build([deliver()], max_retries=3)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.NAVIGATION_FAILED
    assert outcome.stage == Stage.NORMALIZE
    assert outcome.retryable is False
    assert len(adapter.sessions) == 1


@pytest.mark.asyncio
async def test_unexpected_adapter_bug_is_reported_not_raised():
    graph, adapter = build([fail(KeyError("cells"))], max_retries=3)

    outcome = await graph.resolve_and_fetch(ADDRESS, HINTS)

    assert outcome.kind == ErrorKind.NAVIGATION_FAILED
    assert outcome.retryable is False
    assert adapter.sessions[0].closed


def test_initial_state_requires_an_address():
    graph, _ = build([])
    with pytest.raises(ValueError):
        graph.create_initial_state({"address": ""})


class RecordingGraph:
    """Stands in for the retrieval graph and tracks how many requests overlap."""

    def __init__(self, delays):
        self.delays = delays
        self.active = 0
        self.peak = 0

    async def resolve_and_fetch(self, address, hints=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(self.delays[address])
        self.active -= 1
        return f"deed for {address}"


@pytest.mark.asyncio
async def test_pool_keeps_input_order_and_caps_concurrency():
    delays = {"a": 0.05, "b": 0.01, "c": 0.03, "d": 0.0}
    graph = RecordingGraph(delays)
    pool = DeedFetchPool(size=2, graph=graph)

    outcomes = await pool.fetch_many(["a", "b", "c", "d"])

    assert outcomes == ["deed for a", "deed for b", "deed for c", "deed for d"]
    assert graph.peak == 2


@pytest.mark.asyncio
async def test_pool_of_one_runs_requests_one_at_a_time():
    graph = RecordingGraph({"a": 0.01, "b": 0.01})
    await DeedFetchPool(size=1, graph=graph).fetch_many(["a", "b"])
    assert graph.peak == 1


@pytest.mark.asyncio
async def test_process_addresses_saves_pdfs(monkeypatch, tmp_path):
    import run

    deed = NormalizedDeed(
        pdf_bytes=make_pdf(),
        filename="stub-vt_deed_STUB-1.pdf",
        size_bytes=100,
        page_count=1,
        captcha_encountered=False,
        source_url="https://stub.example/doc",
        duration_ms=10,
    )
    failure = FailureRecord(stage=Stage.SEARCH, kind=ErrorKind.NO_RESULTS, retryable=False, detail="none")

    class FakePool:
        size = 1

        def __init__(self, size=None):
            pass

        async def fetch_many(self, addresses, hints=None):
            return [deed, failure]

    monkeypatch.setattr(run, "DeedFetchPool", FakePool)
    monkeypatch.setattr(run, "get_settings", lambda: Settings(download_path=str(tmp_path)))

    results = await run.process_addresses(["1 Main St", "2 Main St"])

    assert [address for address, _ in results] == ["1 Main St", "2 Main St"]
    assert (tmp_path / "stub-vt_deed_STUB-1.pdf").read_bytes() == deed.pdf_bytes
