"""
Deed Retrieval - Fetch the most recent recorded deed for a property as one PDF.

Given a street address, the package picks the county that records it, drives
that county's public records portal in a browser, and normalizes whatever the
portal delivers (PDF, TIFF or page images) into a single verified PDF.
"""

from .errors import ErrorKind, FailureRecord, Stage
from .models import JurisdictionKey, NormalizedDeed

__all__ = ["ErrorKind", "FailureRecord", "Stage", "JurisdictionKey", "NormalizedDeed"]
