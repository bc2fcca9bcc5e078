"""
Runtime settings and the static per-jurisdiction configuration table.

Process settings come from the environment (optionally a ``.env`` file).
Jurisdiction data (selectors, consent-gate overrides, deed vocabulary,
credential variable names) comes from ``jurisdictions.yaml``.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_JURISDICTIONS_FILE = Path(__file__).resolve().parent / "jurisdictions.yaml"


@dataclass(frozen=True)
class Settings:
    headless: bool = True
    navigation_timeout_ms: int = 60000
    request_timeout_s: float = 180.0
    max_retries: int = 1
    pool_size: int = 2
    download_path: str = "./downloads"
    jurisdictions_file: str = str(DEFAULT_JURISDICTIONS_FILE)
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)
    max_addresses: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            return cls(
                headless=os.getenv("HEADLESS", "true").lower() == "true",
                navigation_timeout_ms=int(os.getenv("TIMEOUT", "60000")),
                request_timeout_s=float(os.getenv("REQUEST_TIMEOUT", "180")),
                max_retries=int(os.getenv("MAX_RETRIES", "1")),
                pool_size=int(os.getenv("BROWSER_POOL_SIZE", "2")),
                download_path=os.getenv("DEED_DOWNLOAD_PATH", "./downloads"),
                jurisdictions_file=os.getenv("JURISDICTIONS_FILE", str(DEFAULT_JURISDICTIONS_FILE)),
                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
                cors_origins=tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()),
                max_addresses=int(os.getenv("MAX_ADDRESSES", "10")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting in environment: {e}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True)
class GateOverrides:
    """Candidate selectors the consent handler tries, in priority order."""

    disclaimer_selectors: Tuple[str, ...] = ()
    disclaimer_texts: Tuple[str, ...] = ()
    login_form_selectors: Tuple[str, ...] = ()
    username_selectors: Tuple[str, ...] = ()
    password_selectors: Tuple[str, ...] = ()
    submit_selectors: Tuple[str, ...] = ()
    login_error_texts: Tuple[str, ...] = ()
    login_required: bool = False
    captcha_markers: Tuple[str, ...] = ()
    detect_ms: int = 3000


@dataclass(frozen=True)
class JurisdictionConfig:
    name: str
    adapter: str
    county: str
    state: str
    display_name: str
    aliases: Tuple[str, ...] = ()
    cities: Tuple[str, ...] = ()
    zip_prefixes: Tuple[str, ...] = ()
    urls: Dict[str, str] = field(default_factory=dict)
    selectors: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    gate: GateOverrides = field(default_factory=GateOverrides)
    deed_include: Tuple[str, ...] = (r"\bDEED\b",)
    deed_exclude: Tuple[str, ...] = (r"AFFIDAVIT", r"EXCISE", r"\bTAX\b")
    charges_per_query: bool = False
    timeout_ms: Optional[int] = None
    credentials_env: Dict[str, str] = field(default_factory=dict)
    features: Tuple[str, ...] = ()

    def url(self, name: str) -> str:
        try:
            return self.urls[name]
        except KeyError:
            raise ConfigurationError(f"{self.name}: no '{name}' url configured") from None

    def selector_candidates(self, name: str) -> Tuple[str, ...]:
        return self.selectors.get(name, ())

    def credentials(self) -> Optional[Credentials]:
        """Read credentials from the environment variables named in the table."""
        if not self.credentials_env:
            return None
        username = os.getenv(self.credentials_env.get("username", ""), "")
        password = os.getenv(self.credentials_env.get("password", ""), "")
        if not username or not password:
            return None
        return Credentials(username=username, password=password)


def _as_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return (str(value),)


def _parse_gate(data: dict) -> GateOverrides:
    data = data or {}
    return GateOverrides(
        disclaimer_selectors=_as_tuple(data.get("disclaimer_selectors")),
        disclaimer_texts=_as_tuple(data.get("disclaimer_texts")),
        login_form_selectors=_as_tuple(data.get("login_form_selectors")),
        username_selectors=_as_tuple(data.get("username_selectors")),
        password_selectors=_as_tuple(data.get("password_selectors")),
        submit_selectors=_as_tuple(data.get("submit_selectors")),
        login_error_texts=_as_tuple(data.get("login_error_texts")),
        login_required=bool(data.get("login_required", False)),
        captcha_markers=_as_tuple(data.get("captcha_markers")),
        detect_ms=int(data.get("detect_ms", 3000)),
    )


def parse_jurisdiction(name: str, data: dict) -> JurisdictionConfig:
    for required in ("adapter", "county", "state"):
        if required not in data:
            raise ConfigurationError(f"Jurisdiction '{name}' is missing '{required}'")

    classification = data.get("deed_types") or {}
    kwargs = {}
    if "include" in classification:
        kwargs["deed_include"] = _as_tuple(classification["include"])
    if "exclude" in classification:
        kwargs["deed_exclude"] = _as_tuple(classification["exclude"])

    return JurisdictionConfig(
        name=name,
        adapter=data["adapter"],
        county=data["county"],
        state=data["state"],
        display_name=data.get("display_name", f"{data['county']} County, {data['state'].upper()}"),
        aliases=_as_tuple(data.get("aliases")),
        cities=_as_tuple(data.get("cities")),
        zip_prefixes=_as_tuple(data.get("zip_prefixes")),
        urls=dict(data.get("urls") or {}),
        selectors={k: _as_tuple(v) for k, v in (data.get("selectors") or {}).items()},
        gate=_parse_gate(data.get("gate")),
        charges_per_query=bool(data.get("charges_per_query", False)),
        timeout_ms=data.get("timeout_ms"),
        credentials_env=dict(data.get("credentials_env") or {}),
        features=_as_tuple(data.get("features")),
        **kwargs,
    )


def load_jurisdictions(path: Optional[str] = None) -> List[JurisdictionConfig]:
    """
    Load the static jurisdiction table.

    Args:
        path: Optional path to a YAML file; defaults to the configured file

    Returns:
        list: One JurisdictionConfig per entry, in file order
    """
    path = Path(path or get_settings().jurisdictions_file)
    if not path.exists():
        raise ConfigurationError(f"Jurisdiction table not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("jurisdictions") or {}
    configs = [parse_jurisdiction(name, entry) for name, entry in entries.items()]
    logger.info(f"Loaded {len(configs)} jurisdiction(s) from {path}")
    return configs
