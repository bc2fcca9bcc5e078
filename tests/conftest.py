import io
import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

import fitz
import pytest
from bs4 import BeautifulSoup
from PIL import Image

from deedfetch.config import GateOverrides, load_jurisdictions
from deedfetch.errors import ElementNotFound, Stage
from deedfetch.models import RawPage
from deedfetch.scrapers.base import JurisdictionAdapter
from deedfetch.scrapers.services.browser import Action


@dataclass
class FakeElement:
    selector: str
    text: str = ""
    visible: bool = True
    frame: Optional[str] = None
    on_click: Optional[Callable] = None
    value: Optional[str] = None


class FakeResponse:
    def __init__(self, url: str, body: bytes, content_type: str):
        self.url = url
        self.headers = {"content-type": content_type}
        self._body = body

    async def body(self) -> bytes:
        return self._body


class FakeSession:
    """
    Stand-in for the browser session with the same public surface.

    Elements are matched by exact selector string; text patterns and
    visibility filter them the way the real driver does.
    """

    def __init__(
        self,
        elements=(),
        html: str = "<html><body></body></html>",
        url: str = "https://portal.example/",
        fetch_responses: Optional[Dict[str, Tuple[bytes, str]]] = None,
    ):
        self.elements: List[FakeElement] = list(elements)
        self.html = html
        self.url = url
        self.fetch_responses = fetch_responses or {}
        self.actions: List[Tuple[str, str, Optional[str]]] = []
        self.navigations: List[str] = []
        self.fetched: List[str] = []
        self.side_effects: List[str] = []
        self.captcha_encountered = False
        self.stage = Stage.CONSENT
        self.closed = False
        self._observers = []

    @property
    def current_url(self) -> str:
        return self.url

    @property
    def side_effect_committed(self) -> bool:
        return bool(self.side_effects)

    def add(self, *elements: FakeElement):
        self.elements.extend(elements)

    def remove(self, selector: str):
        self.elements = [e for e in self.elements if e.selector != selector]

    def _match(self, query) -> Optional[FakeElement]:
        for selector in query.selectors:
            for element in self.elements:
                if element.selector != selector or element.frame != query.frame:
                    continue
                if query.visible and not element.visible:
                    continue
                if query.text and not re.search(query.text, element.text, re.IGNORECASE):
                    continue
                return element
        return None

    async def locate(self, query, timeout_ms: int = 0):
        return self._match(query)

    async def exists(self, query) -> bool:
        return self._match(query) is not None

    async def act(self, element, action, description: str = "element"):
        if element is None:
            raise ElementNotFound(f"No element matched {description}")
        self.actions.append((element.selector, action.kind, action.value))
        if action.kind in ("fill", "type", "select"):
            element.value = action.value
        if action.kind == "click" and element.on_click is not None:
            element.on_click(self)

    async def act_on(self, query, action, timeout_ms: int = 5000):
        await self.act(self._match(query), action, description=query.describe())

    async def follow_popup(self, trigger, timeout_ms=None):
        await self.act_on(trigger, Action.click())

    async def navigate(self, url, wait=None, timeout_ms=None):
        self.navigations.append(url)
        self.url = url

    async def wait_for(self, wait, timeout_ms=None):
        return None

    async def snapshot(self) -> str:
        return self.html

    async def evaluate(self, expression: str, arg=None):
        if "innerText" in expression:
            return BeautifulSoup(self.html, "html.parser").get_text(" ")
        if "querySelectorAll" in expression:
            return len(BeautifulSoup(self.html, "html.parser").select(arg))
        return None

    def on_response(self, url_predicate, handler):
        self._observers.append((url_predicate, handler))

    async def emit(self, url: str, body: bytes, content_type: str = "image/png"):
        """Deliver a network response to every matching observer."""
        for predicate, handler in list(self._observers):
            if predicate(url):
                await handler(FakeResponse(url, body, content_type))

    async def fetch(self, url: str, headers=None):
        self.fetched.append(url)
        if url not in self.fetch_responses:
            raise AssertionError(f"Unexpected fetch of {url}")
        return self.fetch_responses[url]

    async def cookies(self):
        return []

    def mark_side_effect(self, reason: str):
        self.side_effects.append(reason)

    async def close(self):
        self.closed = True


def make_image(width: int = 80, height: int = 100, mode: str = "RGB", fmt: str = "PNG", color=128) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_tiff(frames: int = 1, width: int = 800, height: int = 1000) -> bytes:
    images = [Image.new("L", (width, height), 255 - i * 40) for i in range(frames)]
    buffer = io.BytesIO()
    images[0].save(buffer, format="TIFF", save_all=True, append_images=images[1:])
    return buffer.getvalue()


def make_pdf(pages: int = 1) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"Deed page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def image_pages(indexes, mime_type: str = "image/png") -> List[RawPage]:
    return [RawPage(bytes=make_image(color=40 + i * 20), mime_type=mime_type, page_index=i) for i in indexes]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture(scope="session")
def jurisdiction_configs():
    return {config.name: config for config in load_jurisdictions()}


@pytest.fixture
def quick_config(jurisdiction_configs):
    """Jurisdiction config by name with the consent detection window shortened to one pass."""

    def build(name: str, **changes):
        config = jurisdiction_configs[name]
        gate = replace(config.gate, detect_ms=0)
        return replace(config, gate=gate, **changes)

    return build


@pytest.fixture
def no_pauses(monkeypatch):
    async def pause(self, min_ms=0, max_ms=0):
        return None

    monkeypatch.setattr(JurisdictionAdapter, "pause", pause)


@pytest.fixture
def instant_gate():
    return GateOverrides(detect_ms=0)
