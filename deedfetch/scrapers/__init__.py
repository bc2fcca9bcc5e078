"""
Jurisdiction adapters - one per county records portal.

- ACRIS: New York City's Automated City Register Information System
- Orange County, FL: Property Appraiser and Comptroller official records
- Miami-Dade County, FL: Property Appraiser and Clerk of Courts
- Palm Beach County, FL: Property Appraiser and Clerk eRecording viewer
- Pierce County, WA: Auditor recorded documents
- Mecklenburg County, NC: Polaris and the Register of Deeds viewer
- Guilford County, NC: Tax portal and Register of Deeds images
"""

from .acris_scraper import AcrisScraper
from .base import JurisdictionAdapter
from .guilford_scraper import GuilfordScraper
from .mecklenburg_scraper import MecklenburgScraper
from .miami_dade_scraper import MiamiDadeScraper
from .orange_scraper import OrangeCountyScraper
from .palm_beach_scraper import PalmBeachScraper
from .pierce_scraper import PierceCountyScraper
from .registry import ADAPTERS, Registry, build_registry, default_registry

__all__ = [
    "JurisdictionAdapter",
    "AcrisScraper",
    "OrangeCountyScraper",
    "MiamiDadeScraper",
    "PalmBeachScraper",
    "PierceCountyScraper",
    "MecklenburgScraper",
    "GuilfordScraper",
    "ADAPTERS",
    "Registry",
    "build_registry",
    "default_registry",
]
