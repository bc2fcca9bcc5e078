import asyncio
import logging

from ..classifier import log_failure, to_failure
from ..config import Settings
from ..errors import ErrorKind, FailureRecord, Stage
from ..models import SearchQuery
from ..scrapers.registry import Registry
from ..state import DeedRetrievalState

logger = logging.getLogger(__name__)


class FetchNode:
    """
    Node that runs one adapter invocation inside one browser session.

    The whole invocation is bounded by the request timeout, and the session is
    torn down on every exit path, including that timeout.
    """

    def __init__(self, registry: Registry, settings: Settings):
        self.registry = registry
        self.settings = settings

    async def run(self, state: DeedRetrievalState) -> dict:
        key = state["jurisdiction"]
        adapter = self.registry.resolve(key.county, key.state)
        attempt = state.get("attempt", 0) + 1
        logger.info(f"📄 Fetching deed from {adapter.config.display_name} (attempt {attempt})")

        session = None
        try:
            session = await adapter.initialize()
            result, handle = await asyncio.wait_for(
                adapter.fetch_document(session, SearchQuery(raw_address=state["address"])),
                timeout=self.settings.request_timeout_s,
            )
            return {
                "attempt": attempt,
                "search_result": result,
                "document": handle,
                "captcha_encountered": state.get("captcha_encountered", False) or session.captcha_encountered,
                "side_effect_committed": state.get("side_effect_committed", False) or session.side_effect_committed,
                "failure": None,
                "current_step": "Document retrieved",
            }
        except asyncio.TimeoutError:
            record = FailureRecord(
                stage=session.stage if session else Stage.CONSENT,
                kind=ErrorKind.TIMEOUT,
                retryable=True,
                detail=f"Request exceeded {self.settings.request_timeout_s:.0f}s",
            )
        except Exception as e:
            record = to_failure(e, session.stage if session else Stage.CONSENT)
        finally:
            if session is not None:
                await adapter.teardown(session)

        log_failure(record, adapter.config.display_name)
        return {
            "attempt": attempt,
            "captcha_encountered": state.get("captcha_encountered", False) or bool(session and session.captcha_encountered),
            "side_effect_committed": state.get("side_effect_committed", False)
            or bool(session and session.side_effect_committed),
            "failure": record,
            "errors": [f"Attempt {attempt}: {record.kind.value} during {record.stage.value}: {record.detail}"],
            "current_step": "Fetch failed",
        }
