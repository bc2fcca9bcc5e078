"""
Failure classification and the retry decision.
"""

import asyncio
import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import DeedFetchError, ErrorKind, FailureRecord, Stage

logger = logging.getLogger(__name__)


def to_failure(exc: BaseException, stage: Optional[Stage] = None) -> FailureRecord:
    """
    Convert any exception raised while serving a request into a FailureRecord.

    Typed errors keep their own kind, retryability and stage. Raw browser
    errors become Timeout or NavigationFailed. Anything else is reported as a
    non-retryable NavigationFailed so the caller always gets a record.
    """
    fallback_stage = stage or Stage.SEARCH

    if isinstance(exc, DeedFetchError):
        return FailureRecord(
            stage=exc.stage or fallback_stage,
            kind=exc.kind,
            retryable=exc.retryable,
            detail=exc.detail,
        )
    if isinstance(exc, (PlaywrightTimeoutError, asyncio.TimeoutError)):
        return FailureRecord(
            stage=fallback_stage,
            kind=ErrorKind.TIMEOUT,
            retryable=True,
            detail=f"Timed out: {exc}" if str(exc) else "Timed out",
        )
    if isinstance(exc, PlaywrightError):
        return FailureRecord(
            stage=fallback_stage, kind=ErrorKind.NAVIGATION_FAILED, retryable=True, detail=exc.message
        )
    return FailureRecord(
        stage=fallback_stage,
        kind=ErrorKind.NAVIGATION_FAILED,
        retryable=False,
        detail=f"Unexpected {type(exc).__name__}: {exc}",
    )


def should_retry(record: FailureRecord, attempt: int, max_retries: int, side_effect_committed: bool = False) -> bool:
    """
    Decide whether a failed attempt gets another go with a fresh session.

    Args:
        record: The failure of the attempt that just finished
        attempt: Number of attempts made so far (1 after the first)
        max_retries: Retries allowed beyond the first attempt
        side_effect_committed: A paid or otherwise external action already happened
    """
    if side_effect_committed:
        logger.info(f"Not retrying {record.kind.value}: an external side effect was already committed")
        return False
    if not record.retryable:
        return False
    return attempt <= max_retries


def log_failure(record: FailureRecord, jurisdiction: str = ""):
    prefix = f"[{jurisdiction}] " if jurisdiction else ""
    message = f"{prefix}{record.stage.value} failed with {record.kind.value}: {record.detail}"
    if record.needs_manual_review:
        logger.error(f"🙋 {message} (needs manual follow-up)")
    elif record.retryable:
        logger.warning(f"⚠️ {message}")
    else:
        logger.error(f"❌ {message}")
