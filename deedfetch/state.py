from typing import List, Optional, TypedDict, Annotated
from typing_extensions import Required
import operator

from .errors import FailureRecord
from .models import DocumentHandle, JurisdictionKey, NormalizedDeed, SearchResult


class InputState(TypedDict, total=False):
    """
    Input state for one deed retrieval request.

    Attributes:
        address: Required property street address
        county: Optional county hint, e.g. "Miami-Dade"
        state: Optional state hint, e.g. "FL"
    """

    address: Required[str]
    county: Optional[str]
    state: Optional[str]


class DeedRetrievalState(InputState):
    """
    Complete state for one request as it moves through the retrieval graph.

    Exactly one of ``deed`` and ``failure`` is set when the graph finishes.
    """

    address: Annotated[str, lambda x, y: x or y]
    """Property address being retrieved"""

    jurisdiction: Optional[JurisdictionKey]
    """Normalized key of the jurisdiction serving this address"""

    attempt: int
    """Number of fetch attempts made so far"""

    started_at: float
    """Monotonic clock reading when the request began"""

    search_result: Optional[SearchResult]
    """Listing the adapter picked in the jurisdiction's results"""

    document: Optional[DocumentHandle]
    """Raw pages retrieved by the adapter"""

    captcha_encountered: bool
    """Whether any attempt's session saw a CAPTCHA marker"""

    side_effect_committed: bool
    """Whether an attempt triggered an action with external consequences"""

    deed: Optional[NormalizedDeed]
    """The verified PDF, once normalization succeeds"""

    failure: Optional[FailureRecord]
    """Failure of the latest step; cleared when a retry is granted"""

    retry: bool
    """Decision of the classify node"""

    # Process tracking
    current_step: Annotated[str, lambda x, y: y]  # Take the latest step
    """Current step in the retrieval process"""

    errors: Annotated[List[str], operator.add]  # Combine error lists
    """Every failure seen, including ones that were retried"""
