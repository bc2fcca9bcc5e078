import logging

from ..classifier import should_retry
from ..config import Settings
from ..state import DeedRetrievalState

logger = logging.getLogger(__name__)


class ClassifyNode:
    """Node that decides whether a failed request gets a fresh attempt."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def run(self, state: DeedRetrievalState) -> dict:
        record = state["failure"]
        attempt = state.get("attempt", 0)

        retry = should_retry(
            record,
            attempt=attempt,
            max_retries=self.settings.max_retries,
            side_effect_committed=state.get("side_effect_committed", False),
        )
        if retry:
            logger.info(f"🔁 Retrying after {record.kind.value} with a fresh session ({attempt}/{self.settings.max_retries})")
            return {"retry": True, "failure": None, "document": None, "current_step": "Retrying"}

        return {"retry": False, "current_step": f"Failed with {record.kind.value}"}
