import logging
import time

from ..classifier import log_failure, to_failure
from ..errors import Stage, UnsupportedJurisdiction
from ..scrapers.address import parse_address
from ..scrapers.registry import Registry
from ..state import DeedRetrievalState

logger = logging.getLogger(__name__)


class ResolveNode:
    """Node that decides which jurisdiction serves the address."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def run(self, state: DeedRetrievalState) -> dict:
        address = state["address"]
        logger.info(f"🔍 Starting deed retrieval for: {address}")
        update = {"started_at": time.monotonic(), "attempt": 0}

        try:
            if state.get("county"):
                raw_state = state.get("state") or parse_address(address).state or ""
                key = self.registry.resolve(state["county"], raw_state).key
            else:
                key = self.registry.infer_jurisdiction(address)
        except UnsupportedJurisdiction as e:
            record = to_failure(e, Stage.SEARCH)
            log_failure(record)
            return {
                **update,
                "failure": record,
                "errors": [record.detail],
                "current_step": "Jurisdiction not supported",
            }

        logger.info(f"📍 Jurisdiction: {key}")
        return {**update, "jurisdiction": key, "failure": None, "current_step": "Jurisdiction resolved"}
