"""
Jurisdiction registry: maps a normalized (county, state) key to the adapter
that services it.

The registry is filled once at startup from the jurisdiction table and is
read-only afterwards, so concurrent requests can share it.
"""

import logging
from typing import Callable, Dict, List, Optional, Type

from ..config import JurisdictionConfig, Settings, load_jurisdictions
from ..errors import ConfigurationError, UnsupportedJurisdiction
from ..models import JurisdictionKey, fold_name
from .acris_scraper import AcrisScraper
from .address import parse_address
from .base import JurisdictionAdapter
from .guilford_scraper import GuilfordScraper
from .mecklenburg_scraper import MecklenburgScraper
from .miami_dade_scraper import MiamiDadeScraper
from .orange_scraper import OrangeCountyScraper
from .palm_beach_scraper import PalmBeachScraper
from .pierce_scraper import PierceCountyScraper

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, Type[JurisdictionAdapter]] = {
    cls.name: cls
    for cls in (
        AcrisScraper,
        OrangeCountyScraper,
        MiamiDadeScraper,
        PalmBeachScraper,
        PierceCountyScraper,
        MecklenburgScraper,
        GuilfordScraper,
    )
}


class Registry:
    """
    One adapter factory per jurisdiction key.

    ``resolve`` builds the adapter on first use and returns the same instance
    on every later lookup of that key, whatever spelling the caller used.
    """

    def __init__(self):
        self._factories: Dict[JurisdictionKey, Callable[[], JurisdictionAdapter]] = {}
        self._instances: Dict[JurisdictionKey, JurisdictionAdapter] = {}
        self._configs: Dict[JurisdictionKey, JurisdictionConfig] = {}
        self._aliases: Dict[str, Dict[str, str]] = {}

    def register(
        self,
        key: JurisdictionKey,
        factory: Callable[[], JurisdictionAdapter],
        aliases=(),
        config: Optional[JurisdictionConfig] = None,
    ):
        if key in self._factories:
            raise ConfigurationError(f"An adapter is already registered for {key}")
        self._factories[key] = factory
        if config is not None:
            self._configs[key] = config

        state_aliases = self._aliases.setdefault(key.state, {})
        for alias in aliases:
            folded = JurisdictionKey.normalize(alias, key.state).county
            state_aliases[folded] = key.county
        logger.debug(f"Registered {key}")

    def normalize(self, county: str, state: str) -> JurisdictionKey:
        plain = JurisdictionKey.normalize(county, state)
        return JurisdictionKey.normalize(county, state, aliases=self._aliases.get(plain.state))

    def resolve(self, county: str, state: str) -> JurisdictionAdapter:
        """
        Return the adapter for a raw county/state pair.

        Raises:
            UnsupportedJurisdiction: No adapter is registered for the normalized key
        """
        key = self.normalize(county, state)
        if key not in self._factories:
            raise UnsupportedJurisdiction(f"No adapter registered for {key}", key=key)
        if key not in self._instances:
            self._instances[key] = self._factories[key]()
            logger.info(f"Created adapter {self._instances[key]!r}")
        return self._instances[key]

    def __contains__(self, key: JurisdictionKey) -> bool:
        return key in self._factories

    def keys(self) -> List[JurisdictionKey]:
        return list(self._factories)

    def configs(self) -> List[JurisdictionConfig]:
        return list(self._configs.values())

    def infer_jurisdiction(self, address: str) -> JurisdictionKey:
        """
        Guess the jurisdiction of an address that came without a county.

        ZIP prefixes are tried first, then city names within the parsed state.

        Raises:
            UnsupportedJurisdiction: No configured jurisdiction matches the address
        """
        parsed = parse_address(address)

        if parsed.zip_code:
            for key, config in self._configs.items():
                if parsed.state and key.state != parsed.state:
                    continue
                if any(parsed.zip_code.startswith(prefix) for prefix in config.zip_prefixes):
                    logger.info(f"📍 ZIP {parsed.zip_code} is in {config.display_name}")
                    return key

        if parsed.city:
            city = fold_name(parsed.city)
            for key, config in self._configs.items():
                if parsed.state and key.state != parsed.state:
                    continue
                if city in (fold_name(c) for c in config.cities):
                    logger.info(f"📍 {parsed.city} is in {config.display_name}")
                    return key

        raise UnsupportedJurisdiction(
            f"Could not determine a supported county for '{address}'",
            key=JurisdictionKey(county="", state=parsed.state or ""),
        )


def build_registry(configs: List[JurisdictionConfig], settings: Optional[Settings] = None) -> Registry:
    registry = Registry()
    for config in configs:
        adapter_cls = ADAPTERS.get(config.adapter)
        if adapter_cls is None:
            raise ConfigurationError(f"Jurisdiction '{config.name}' names unknown adapter '{config.adapter}'")
        key = JurisdictionKey.normalize(config.county, config.state)
        registry.register(
            key,
            lambda cls=adapter_cls, cfg=config: cls(cfg, settings),
            aliases=config.aliases,
            config=config,
        )
    logger.info(f"Registry ready with {len(registry.keys())} jurisdiction(s)")
    return registry


_default_registry: Optional[Registry] = None


def default_registry() -> Registry:
    """The process-wide registry built from the configured jurisdiction table."""
    global _default_registry
    if _default_registry is None:
        _default_registry = build_registry(load_jurisdictions())
    return _default_registry
