import base64

import pytest
from fastapi.testclient import TestClient

import application
from conftest import make_pdf
from deedfetch.errors import ErrorKind, FailureRecord, Stage
from deedfetch.models import NormalizedDeed


@pytest.fixture
def client():
    return TestClient(application.app)


@pytest.fixture
def deed():
    pdf = make_pdf(pages=2)
    return NormalizedDeed(
        pdf_bytes=pdf,
        filename="orange-fl_deed_20210345678.pdf",
        size_bytes=len(pdf),
        page_count=2,
        captcha_encountered=True,
        source_url="https://selfservice.or.occompt.com/api/document/1/download.pdf",
        duration_ms=4200,
    )


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["jurisdictions"] == 7
    assert body["poolSize"] == application.pool.size


def test_counties(client):
    response = client.get("/api/counties")

    assert response.status_code == 200
    counties = {c["name"]: c for c in response.json()}
    assert len(counties) == 7
    assert counties["orange_fl"]["displayName"] == "Orange County, FL"
    assert "disclaimer" in counties["orange_fl"]["features"]


def test_get_prior_deed_success(client, monkeypatch, deed):
    calls = []

    async def fetch(address, hints=None):
        calls.append((address, hints))
        return deed

    monkeypatch.setattr(application.pool, "fetch", fetch)

    response = client.post(
        "/api/getPriorDeed", json={"address": "  6925 Hawkstone Dr, Windermere, FL 34786 ", "county": "Orange", "state": "FL"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["filename"] == "orange-fl_deed_20210345678.pdf"
    assert body["pageCount"] == 2
    assert body["captchaEncountered"] is True
    assert base64.b64decode(body["pdfBase64"]) == deed.pdf_bytes
    assert body["kind"] is None
    assert calls == [("6925 Hawkstone Dr, Windermere, FL 34786", {"county": "Orange", "state": "FL"})]


def test_get_prior_deed_failure(client, monkeypatch):
    async def fetch(address, hints=None):
        return FailureRecord(
            stage=Stage.CONSENT, kind=ErrorKind.CAPTCHA_BLOCKED, retryable=False, detail="reCAPTCHA challenge shown"
        )

    monkeypatch.setattr(application.pool, "fetch", fetch)

    response = client.post("/api/getPriorDeed", json={"address": "1 Main St, Orlando, FL"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == "CaptchaBlocked"
    assert body["stage"] == "consent"
    assert body["retryable"] is False
    assert body["error"] == "reCAPTCHA challenge shown"
    assert body["manualReview"] is True
    assert body["pdfBase64"] is None


def test_get_prior_deed_without_county_sends_no_hints(client, monkeypatch, deed):
    calls = []

    async def fetch(address, hints=None):
        calls.append(hints)
        return deed

    monkeypatch.setattr(application.pool, "fetch", fetch)
    client.post("/api/getPriorDeed", json={"address": "1 Main St, Orlando, FL", "state": "FL"})

    assert calls == [None]


@pytest.mark.parametrize("payload", [{"address": "   "}, {"address": ""}, {}])
def test_get_prior_deed_rejects_missing_address(client, payload):
    assert client.post("/api/getPriorDeed", json=payload).status_code == 422


def test_get_prior_deeds_keeps_order(client, monkeypatch, deed):
    failure = FailureRecord(stage=Stage.SEARCH, kind=ErrorKind.NO_RESULTS, retryable=False, detail="No listings")

    async def fetch_many(addresses, hints=None):
        return [deed if "Hawkstone" in address else failure for address in addresses]

    monkeypatch.setattr(application.pool, "fetch_many", fetch_many)

    response = client.post(
        "/api/getPriorDeeds",
        json={"addresses": ["6925 Hawkstone Dr, Windermere, FL", "1 Nowhere Ln, Orlando, FL"]},
    )

    assert response.status_code == 200
    first, second = response.json()
    assert first["success"] is True
    assert second["success"] is False
    assert second["kind"] == "NoResults"


def test_get_prior_deeds_limits_batch_size(client):
    addresses = [f"{n} Main St, Orlando, FL" for n in range(application.settings.max_addresses + 1)]
    assert client.post("/api/getPriorDeeds", json={"addresses": addresses}).status_code == 422


def test_get_prior_deeds_rejects_blank_entries(client):
    assert client.post("/api/getPriorDeeds", json={"addresses": ["1 Main St", " "]}).status_code == 422
