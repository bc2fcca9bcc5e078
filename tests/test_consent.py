import pytest

from conftest import FakeElement, FakeSession
from deedfetch.classifier import to_failure
from deedfetch.config import Credentials, GateOverrides
from deedfetch.errors import AuthenticationFailed, CaptchaBlocked, ElementNotFound, ErrorKind, FailureRecord, Stage
from deedfetch.scrapers.services.consent import ConsentGate, GateState

LOGIN_GATE = GateOverrides(login_required=True, detect_ms=0)
CREDENTIALS = Credentials(username="clerk-user", password="s3cret")


def login_form():
    return [
        FakeElement("input[type='email']"),
        FakeElement("input[type='password']"),
        FakeElement("button[type='submit']"),
    ]


@pytest.mark.asyncio
async def test_nothing_present_clears_in_one_pass_without_mutations(instant_gate):
    session = FakeSession()
    outcome = await ConsentGate(instant_gate).clear(session)

    assert outcome.state == GateState.CLEAR
    assert outcome.path == [
        GateState.DISCLAIMER,
        GateState.OPTIONAL_LOGIN,
        GateState.CAPTCHA_CHECK,
        GateState.CLEAR,
    ]
    assert outcome.mutations == 0
    assert session.actions == []
    assert session.captcha_encountered is False


@pytest.mark.asyncio
async def test_disclaimer_is_accepted(instant_gate):
    session = FakeSession([FakeElement("#submitDisclaimerAccept")])
    outcome = await ConsentGate(instant_gate).clear(session)

    assert outcome.disclaimer_accepted is True
    assert outcome.mutations == 1
    assert session.actions == [("#submitDisclaimerAccept", "click", None)]


@pytest.mark.asyncio
async def test_disclaimer_found_by_text_override():
    gate = GateOverrides(disclaimer_texts=("click here to acknowledge",), detect_ms=0)
    session = FakeSession([FakeElement("a", text="Click Here to Acknowledge the disclaimer")])
    outcome = await ConsentGate(gate).clear(session)
    assert outcome.disclaimer_accepted is True


@pytest.mark.asyncio
async def test_hidden_disclaimer_is_ignored(instant_gate):
    session = FakeSession([FakeElement("#btnAccept", visible=False)])
    outcome = await ConsentGate(instant_gate).clear(session)
    assert outcome.mutations == 0


@pytest.mark.asyncio
async def test_login_submits_credentials():
    def accept_login(session):
        session.remove("input[type='password']")

    elements = login_form()
    elements[2].on_click = accept_login
    session = FakeSession(elements)

    outcome = await ConsentGate(LOGIN_GATE, CREDENTIALS).clear(session)

    assert outcome.logged_in is True
    assert ("input[type='email']", "fill", "clerk-user") in session.actions
    assert ("input[type='password']", "fill", "s3cret") in session.actions
    assert outcome.state == GateState.CLEAR


@pytest.mark.asyncio
async def test_login_required_without_credentials():
    session = FakeSession(login_form())
    with pytest.raises(AuthenticationFailed) as excinfo:
        await ConsentGate(LOGIN_GATE).clear(session)
    assert excinfo.value.retryable is False
    assert excinfo.value.stage == Stage.CONSENT


@pytest.mark.asyncio
async def test_rejected_login():
    session = FakeSession(login_form())
    with pytest.raises(AuthenticationFailed):
        await ConsentGate(LOGIN_GATE, CREDENTIALS).clear(session)


@pytest.mark.asyncio
async def test_missing_login_field_fails_at_the_gate():
    session = FakeSession(login_form()[1:])
    with pytest.raises(ElementNotFound) as excinfo:
        await ConsentGate(LOGIN_GATE, CREDENTIALS).clear(session)

    assert excinfo.value.stage == Stage.CONSENT
    assert to_failure(excinfo.value, Stage.SEARCH).stage == Stage.CONSENT


@pytest.mark.asyncio
async def test_captcha_after_login_is_a_non_retryable_consent_failure():
    def login_then_challenge(session):
        session.remove("input[type='password']")
        session.add(FakeElement("iframe[src*='recaptcha/api2/bframe']"))

    elements = login_form()
    elements[2].on_click = login_then_challenge
    session = FakeSession(elements)

    with pytest.raises(CaptchaBlocked) as excinfo:
        await ConsentGate(LOGIN_GATE, CREDENTIALS).clear(session)

    record = to_failure(excinfo.value)
    assert record == FailureRecord(
        stage=Stage.CONSENT, kind=ErrorKind.CAPTCHA_BLOCKED, retryable=False, detail=record.detail
    )
    assert session.captcha_encountered is True


@pytest.mark.asyncio
async def test_jurisdiction_captcha_marker(instant_gate):
    gate = GateOverrides(captcha_markers=("#captcha-wall",), detect_ms=0)
    session = FakeSession([FakeElement("#captcha-wall")])
    with pytest.raises(CaptchaBlocked):
        await ConsentGate(gate).clear(session)


@pytest.mark.asyncio
async def test_passive_captcha_widget_is_reported_not_blocking(instant_gate):
    session = FakeSession([FakeElement(".grecaptcha-badge", visible=False)])
    outcome = await ConsentGate(instant_gate).clear(session)
    assert outcome.state == GateState.CLEAR
    assert session.captcha_encountered is True
