import pytest

from deedfetch.config import JurisdictionConfig, load_jurisdictions
from deedfetch.errors import ConfigurationError, ErrorKind, UnsupportedJurisdiction
from deedfetch.models import JurisdictionKey
from deedfetch.scrapers.guilford_scraper import GuilfordScraper
from deedfetch.scrapers.miami_dade_scraper import MiamiDadeScraper
from deedfetch.scrapers.orange_scraper import OrangeCountyScraper
from deedfetch.scrapers.registry import Registry, build_registry


@pytest.fixture
def registry():
    return build_registry(load_jurisdictions())


def test_every_configured_jurisdiction_resolves(registry):
    for config in registry.configs():
        adapter = registry.resolve(config.county, config.state)
        assert adapter is not None
        assert adapter.config is config


def test_orange_resolved_twice_is_the_same_instance(registry):
    first = registry.resolve("orange", "fl")
    second = registry.resolve("Orange County", "FL")
    assert first is second
    assert isinstance(first, OrangeCountyScraper)


@pytest.mark.parametrize(
    "county, state",
    [
        ("MIAMI-DADE", "FL"),
        ("miami-dade", "fl"),
        ("Miami Dade County", "Florida"),
        ("MiamiDade", "fl"),
        ("Dade", "FL"),
        ("  miami.dade ", " FL "),
    ],
)
def test_spelling_variants_share_the_canonical_adapter(registry, county, state):
    canonical = registry.resolve("Miami-Dade", "FL")
    assert registry.resolve(county, state) is canonical
    assert isinstance(canonical, MiamiDadeScraper)


def test_aliases_fold_to_new_york(registry):
    assert registry.resolve("Manhattan", "NY") is registry.resolve("New York County", "ny")


def test_alias_is_scoped_to_its_state(registry):
    with pytest.raises(UnsupportedJurisdiction):
        registry.resolve("Dade", "GA")


def test_unknown_jurisdiction_carries_normalized_key(registry):
    with pytest.raises(UnsupportedJurisdiction) as excinfo:
        registry.resolve("Cook County", "Illinois")

    error = excinfo.value
    assert error.key == JurisdictionKey(county="cook", state="il")
    assert error.kind == ErrorKind.UNSUPPORTED_JURISDICTION
    assert error.retryable is False


def test_register_rejects_a_second_adapter_for_a_key():
    registry = Registry()
    key = JurisdictionKey.normalize("Guilford", "NC")
    registry.register(key, lambda: None)
    with pytest.raises(ConfigurationError):
        registry.register(JurisdictionKey.normalize("guilford county", "nc"), lambda: None)


def test_factory_runs_once_per_key():
    registry = Registry()
    calls = []

    def factory():
        calls.append(1)
        return object()

    registry.register(JurisdictionKey.normalize("Pierce", "WA"), factory)
    registry.resolve("Pierce", "WA")
    registry.resolve("PIERCE COUNTY", "wa")
    assert len(calls) == 1


def test_unknown_adapter_name_is_a_configuration_error():
    config = JurisdictionConfig(
        name="cook_il", adapter="cook", county="Cook", state="IL", display_name="Cook County, IL"
    )
    with pytest.raises(ConfigurationError):
        build_registry([config])


def test_guilford_adapter_class(registry):
    assert isinstance(registry.resolve("guilford", "nc"), GuilfordScraper)


@pytest.mark.parametrize(
    "address, expected",
    [
        ("798 Lexington Avenue, New York, NY 10065", JurisdictionKey("new york", "ny")),
        ("12729 Hawkstone Dr, Windermere, FL 34786", JurisdictionKey("orange", "fl")),
        ("100 Main St, Boca Raton, FL 33432", JurisdictionKey("palm beach", "fl")),
        ("1234 Elm St, Hialeah, FL", JurisdictionKey("miami dade", "fl")),
        ("600 E 4th St, Charlotte, NC 28202", JurisdictionKey("mecklenburg", "nc")),
        ("300 W Washington St, Greensboro, NC", JurisdictionKey("guilford", "nc")),
        ("930 Tacoma Ave S, Tacoma, WA 98402", JurisdictionKey("pierce", "wa")),
    ],
)
def test_infer_jurisdiction(registry, address, expected):
    assert registry.infer_jurisdiction(address) == expected


def test_infer_jurisdiction_without_a_match(registry):
    with pytest.raises(UnsupportedJurisdiction):
        registry.infer_jurisdiction("1 Main St, Springfield, IL 62701")
