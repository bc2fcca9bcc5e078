"""
Error taxonomy shared by every layer of the deed retrieval engine.

Adapters and the browser driver raise ``DeedFetchError`` subclasses; the
failure classifier turns them into ``FailureRecord`` values at the adapter
boundary so callers only ever see a stable ``kind``.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    ELEMENT_NOT_FOUND = "ElementNotFound"
    CAPTCHA_BLOCKED = "CaptchaBlocked"
    UNSUPPORTED_JURISDICTION = "UnsupportedJurisdiction"
    NO_RESULTS = "NoResults"
    INCOMPLETE_DOCUMENT = "IncompleteDocument"
    INVALID_DOCUMENT_SIGNATURE = "InvalidDocumentSignature"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    NAVIGATION_FAILED = "NavigationFailed"


class Stage(str, Enum):
    CONSENT = "consent"
    SEARCH = "search"
    LOCATE = "locate"
    ACQUIRE = "acquire"
    NORMALIZE = "normalize"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.ELEMENT_NOT_FOUND,
        ErrorKind.NAVIGATION_FAILED,
        ErrorKind.INVALID_DOCUMENT_SIGNATURE,
    }
)

# Failures a person has to look at before the address is tried again
MANUAL_REVIEW_KINDS = frozenset({ErrorKind.CAPTCHA_BLOCKED, ErrorKind.AUTHENTICATION_FAILED})


@dataclass(frozen=True)
class FailureRecord:
    """Terminal description of a failed request, returned to the caller."""

    stage: Stage
    kind: ErrorKind
    retryable: bool
    detail: str

    @property
    def needs_manual_review(self) -> bool:
        return self.kind in MANUAL_REVIEW_KINDS

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stage"] = self.stage.value
        data["kind"] = self.kind.value
        data["needs_manual_review"] = self.needs_manual_review
        return data


class ConfigurationError(Exception):
    """Raised at startup when settings or the jurisdiction table are unusable"""
    pass


class DeedFetchError(Exception):
    """Base exception for every failure with a known ErrorKind"""

    kind: ErrorKind = ErrorKind.NAVIGATION_FAILED

    def __init__(
        self,
        detail: str,
        retryable: Optional[bool] = None,
        stage: Optional[Stage] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.retryable = self.kind in RETRYABLE_KINDS if retryable is None else retryable
        self.stage = stage

    def __repr__(self):
        return f"{type(self).__name__}(kind={self.kind.value}, detail={self.detail!r})"


class TimeoutFailure(DeedFetchError):
    """Raised when a page or capture condition is not met before its deadline"""
    kind = ErrorKind.TIMEOUT


class ElementNotFound(DeedFetchError):
    """Raised when an element query matches nothing"""
    kind = ErrorKind.ELEMENT_NOT_FOUND


class CaptchaBlocked(DeedFetchError):
    """Raised when a CAPTCHA challenge is detected; never solved automatically"""
    kind = ErrorKind.CAPTCHA_BLOCKED


class UnsupportedJurisdiction(DeedFetchError):
    """Raised when no adapter is registered for a normalized jurisdiction key"""

    kind = ErrorKind.UNSUPPORTED_JURISDICTION

    def __init__(self, detail: str, key=None, **kwargs):
        super().__init__(detail, **kwargs)
        self.key = key


class NoResults(DeedFetchError):
    """Raised when no qualifying recorded instrument exists for a parcel"""
    kind = ErrorKind.NO_RESULTS


class IncompleteDocument(DeedFetchError):
    """Raised when a multi-page document is missing pages"""
    kind = ErrorKind.INCOMPLETE_DOCUMENT


class InvalidDocumentSignature(DeedFetchError):
    """Raised when bytes that should be a PDF or image are something else"""
    kind = ErrorKind.INVALID_DOCUMENT_SIGNATURE


class AuthenticationFailed(DeedFetchError):
    """Raised when a jurisdiction login wall rejects (or lacks) credentials"""
    kind = ErrorKind.AUTHENTICATION_FAILED


class NavigationFailed(DeedFetchError):
    """Raised for transient navigation or automation-engine failures"""
    kind = ErrorKind.NAVIGATION_FAILED
