"""
Consent/gate handling shared by every jurisdiction.

Walks Disclaimer -> OptionalLogin -> CaptchaCheck -> Clear once per session.
The handler is generic; each jurisdiction only supplies candidate selectors
and text patterns through ``GateOverrides``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from ...config import Credentials, GateOverrides
from ...errors import AuthenticationFailed, CaptchaBlocked, DeedFetchError, Stage
from .browser import Action, ElementQuery, WaitFor

logger = logging.getLogger(__name__)

DEFAULT_DISCLAIMER_SELECTORS = (
    "#submitDisclaimerAccept",
    "#btnAccept",
    "input[type='submit'][value='I Accept']",
    "input[type='button'][value='I Accept']",
    "input[type='submit'][value='I Agree']",
)

DEFAULT_DISCLAIMER_TEXTS = (
    r"^\s*I\s+(Accept|Agree)\s*$",
    r"^\s*Accept(\s+(&|and)\s+Continue)?\s*$",
    r"^\s*Acknowledge\s*$",
)

CLICKABLE = ("button", "a", "input[type='submit']", "input[type='button']", "[role='button']")

DEFAULT_PASSWORD_SELECTORS = ("input[type='password']",)
DEFAULT_USERNAME_SELECTORS = (
    "input[type='email']",
    "input[name*='user' i]",
    "input[id*='user' i]",
    "input[name*='login' i]",
)
DEFAULT_SUBMIT_SELECTORS = (
    "button[type='submit']",
    "input[type='submit']",
    "button:has-text('Sign In')",
    "button:has-text('Log In')",
)
DEFAULT_LOGIN_ERRORS = (r"invalid (user|login|password|credentials)", r"login failed", r"incorrect password")

# (selector, must be visible). Challenge scripts count even though they never render.
DEFAULT_CAPTCHA_MARKERS: Tuple[Tuple[str, bool], ...] = (
    ("iframe[src*='recaptcha/api2/bframe']", True),
    ("iframe[src*='recaptcha'][title*='challenge' i]", True),
    ("iframe[src*='hcaptcha']", True),
    (".g-recaptcha", True),
    (".h-captcha", True),
    ("#challenge-form", True),
    ("iframe[src*='challenges.cloudflare.com']", True),
    ("script[src*='challenges.cloudflare.com/cdn-cgi/challenge-platform']", False),
)

# Invisible scoring widgets that do not block the page but are worth reporting.
PASSIVE_CAPTCHA_MARKERS = (
    ".grecaptcha-badge",
    "iframe[src*='recaptcha/api2/anchor']",
    "script[src*='recaptcha/api.js']",
)

POLL_INTERVAL_S = 0.25


class GateState(str, Enum):
    DISCLAIMER = "Disclaimer"
    OPTIONAL_LOGIN = "OptionalLogin"
    CAPTCHA_CHECK = "CaptchaCheck"
    CLEAR = "Clear"


@dataclass
class GateOutcome:
    state: GateState = GateState.DISCLAIMER
    path: List[GateState] = field(default_factory=lambda: [GateState.DISCLAIMER])
    mutations: int = 0
    disclaimer_accepted: bool = False
    logged_in: bool = False


class ConsentGate:
    """Clears disclaimer, login and CAPTCHA obstacles on the session's current page."""

    def __init__(self, overrides: Optional[GateOverrides] = None, credentials: Optional[Credentials] = None):
        self.overrides = overrides or GateOverrides()
        self.credentials = credentials

    async def clear(self, session) -> GateOutcome:
        """
        Run the gate state machine to Clear.

        Raises:
            AuthenticationFailed: A required login could not be completed
            CaptchaBlocked: A CAPTCHA challenge is present (never retryable)
        """
        outcome = GateOutcome()
        try:
            while outcome.state != GateState.CLEAR:
                if outcome.state == GateState.DISCLAIMER:
                    await self._disclaimer(session, outcome)
                    self._advance(outcome, GateState.OPTIONAL_LOGIN)
                elif outcome.state == GateState.OPTIONAL_LOGIN:
                    await self._login(session, outcome)
                    self._advance(outcome, GateState.CAPTCHA_CHECK)
                elif outcome.state == GateState.CAPTCHA_CHECK:
                    await self.check_captcha(session)
                    self._advance(outcome, GateState.CLEAR)
        except DeedFetchError as e:
            # Session errors raised inside the gate belong to it
            if e.stage is None:
                e.stage = Stage.CONSENT
            raise

        logger.info(f"🚪 Gate cleared ({' -> '.join(s.value for s in outcome.path)})")
        return outcome

    @staticmethod
    def _advance(outcome: GateOutcome, state: GateState):
        outcome.state = state
        outcome.path.append(state)

    def _disclaimer_queries(self) -> List[ElementQuery]:
        queries = []
        selectors = self.overrides.disclaimer_selectors + DEFAULT_DISCLAIMER_SELECTORS
        queries.append(ElementQuery(selectors=selectors))
        for pattern in self.overrides.disclaimer_texts + DEFAULT_DISCLAIMER_TEXTS:
            queries.append(ElementQuery(selectors=CLICKABLE, text=pattern))
        return queries

    async def _detect(self, session, queries: List[ElementQuery], window_ms: int):
        """Poll every query until one matches or the detection window closes (always one pass)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window_ms / 1000
        while True:
            for query in queries:
                element = await session.locate(query)
                if element is not None:
                    return element, query
            if loop.time() >= deadline:
                return None, None
            await asyncio.sleep(POLL_INTERVAL_S)

    async def _disclaimer(self, session, outcome: GateOutcome):
        element, query = await self._detect(session, self._disclaimer_queries(), self.overrides.detect_ms)
        if element is None:
            return

        logger.info("📜 Accepting disclaimer")
        await session.act(element, Action.click(), description=query.describe())
        outcome.mutations += 1
        outcome.disclaimer_accepted = True
        await session.wait_for(WaitFor.dom_ready())

    async def _login(self, session, outcome: GateOutcome):
        if not self.overrides.login_required:
            return

        password_selectors = self.overrides.password_selectors + DEFAULT_PASSWORD_SELECTORS
        form_query = ElementQuery(selectors=self.overrides.login_form_selectors + password_selectors)
        form, _ = await self._detect(session, [form_query], self.overrides.detect_ms)
        if form is None:
            logger.info("No login form present, continuing")
            return

        if self.credentials is None:
            raise AuthenticationFailed(
                "Login is required but no credentials are configured", stage=Stage.CONSENT
            )

        logger.info("🔑 Submitting credentials")
        username = ElementQuery(selectors=self.overrides.username_selectors + DEFAULT_USERNAME_SELECTORS)
        password = ElementQuery(selectors=password_selectors)
        submit = ElementQuery(selectors=self.overrides.submit_selectors + DEFAULT_SUBMIT_SELECTORS)

        await session.act(await session.locate(username), Action.fill(self.credentials.username), username.describe())
        await session.act(await session.locate(password), Action.fill(self.credentials.password), password.describe())
        await session.act(await session.locate(submit), Action.click(), submit.describe())
        outcome.mutations += 3
        await session.wait_for(WaitFor.dom_ready())

        for pattern in self.overrides.login_error_texts + DEFAULT_LOGIN_ERRORS:
            if await session.exists(ElementQuery(selectors=("body *",), text=pattern)):
                raise AuthenticationFailed(f"Login rejected (matched /{pattern}/)", stage=Stage.CONSENT)
        if await session.exists(password):
            raise AuthenticationFailed("Login form still present after submitting", stage=Stage.CONSENT)

        outcome.logged_in = True

    async def check_captcha(self, session):
        """
        Raise CaptchaBlocked if any known challenge marker is on the page.

        Passive widgets only set ``session.captcha_encountered``.
        """
        markers = tuple((m, True) for m in self.overrides.captcha_markers) + DEFAULT_CAPTCHA_MARKERS
        for selector, visible in markers:
            if await session.exists(ElementQuery(selectors=(selector,), visible=visible)):
                logger.warning(f"🤖 CAPTCHA detected ({selector})")
                session.captcha_encountered = True
                raise CaptchaBlocked(
                    f"CAPTCHA challenge present on {session.current_url} ({selector})",
                    retryable=False,
                    stage=Stage.CONSENT,
                )

        if await session.exists(ElementQuery(selectors=PASSIVE_CAPTCHA_MARKERS, visible=False)):
            logger.info("Passive CAPTCHA widget present, continuing")
            session.captcha_encountered = True
