import logging
import time

from ..state import DeedRetrievalState

logger = logging.getLogger(__name__)


class FinalizeNode:
    """Node for logging the outcome of a request."""

    def run(self, state: DeedRetrievalState) -> dict:
        duration_s = time.monotonic() - state.get("started_at", time.monotonic())
        deed = state.get("deed")
        failure = state.get("failure")

        if deed is not None:
            logger.info(
                f"🏁 Retrieved {deed.filename} ({deed.page_count} page(s)) for {state['address']} in {duration_s:.1f}s"
            )
            return {"current_step": "Deed retrieved"}

        logger.info(
            f"🏁 No deed for {state['address']} after {state.get('attempt', 0)} attempt(s): "
            f"{failure.kind.value if failure else 'unknown failure'}"
        )
        return {"current_step": "Deed retrieval failed"}
