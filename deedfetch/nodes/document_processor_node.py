import logging
import time

from ..classifier import log_failure, to_failure
from ..document_processor import normalize
from ..errors import Stage
from ..state import DeedRetrievalState

logger = logging.getLogger(__name__)


class DocumentProcessorNode:
    """Node for turning the retrieved document into the canonical PDF."""

    def run(self, state: DeedRetrievalState) -> dict:
        logger.info("📑 Processing retrieved document")
        duration_ms = int((time.monotonic() - state["started_at"]) * 1000)

        try:
            deed = normalize(
                state["document"],
                captcha_encountered=state.get("captcha_encountered", False),
                duration_ms=duration_ms,
                slug=state["jurisdiction"].slug,
            )
        except Exception as e:
            record = to_failure(e, Stage.NORMALIZE)
            log_failure(record)
            return {
                "failure": record,
                "errors": [f"{record.kind.value} during normalize: {record.detail}"],
                "current_step": "Document processing failed",
            }

        return {"deed": deed, "failure": None, "current_step": "Document processing completed"}
