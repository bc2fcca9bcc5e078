"""
Turn whatever an adapter retrieved into one verified PDF.

PDFs pass through untouched. TIFF frames and page images are decoded with
Pillow, re-encoded as PNG and laid out one per letter-size page with img2pdf.
Every result is re-opened with PyMuPDF before it is returned.
"""

import io
import logging
import os
import re
from typing import List, Optional

import fitz  # pymupdf
import img2pdf
from PIL import Image, ImageSequence, UnidentifiedImageError

from .errors import IncompleteDocument, InvalidDocumentSignature, Stage
from .models import DocumentHandle, NormalizedDeed, RawPage

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"
HTML_MARKERS = (b"<html", b"<!doctype", b"<head", b"<body", b"notice</b>", b"error</b>")
LETTER = (img2pdf.in_to_pt(8.5), img2pdf.in_to_pt(11))
LAYOUT = img2pdf.get_layout_fun(pagesize=LETTER, fit=img2pdf.FitMode.into, auto_orient=True)


def is_pdf(data: bytes) -> bool:
    return data[:4] == PDF_SIGNATURE


def looks_like_html(data: bytes) -> bool:
    """True for error and login pages served where a document was expected."""
    head = data[:1024].lstrip().lower()
    return any(marker in head for marker in HTML_MARKERS)


def pdf_page_count(data: bytes) -> int:
    """
    Count pages from the PDF's own page tree.

    Raises:
        InvalidDocumentSignature: The bytes cannot be opened as a PDF
    """
    if not is_pdf(data):
        raise InvalidDocumentSignature("Bytes do not start with %PDF", stage=Stage.NORMALIZE)
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            return doc.page_count
    except (RuntimeError, ValueError) as e:
        raise InvalidDocumentSignature(f"Unreadable PDF: {e}", stage=Stage.NORMALIZE) from e


def _reject(data: bytes, expected: str, source_url: str):
    if looks_like_html(data):
        detail = f"Expected {expected} from {source_url} but the portal returned an HTML page"
    else:
        detail = f"Expected {expected} from {source_url}, got bytes starting {data[:8]!r}"
    raise InvalidDocumentSignature(detail, stage=Stage.NORMALIZE)


def check_page_sequence(pages: List[RawPage]) -> List[RawPage]:
    """
    Order pages by index and insist on 0..n-1 with nothing missing or repeated.

    Raises:
        IncompleteDocument: The sequence is empty, has a gap, or repeats an index
    """
    if not pages:
        raise IncompleteDocument("Document has no pages", stage=Stage.NORMALIZE)

    ordered = sorted(pages, key=lambda p: p.page_index)
    indexes = [p.page_index for p in ordered]
    if len(set(indexes)) != len(indexes):
        repeated = sorted({i for i in indexes if indexes.count(i) > 1})
        raise IncompleteDocument(f"Page index repeated: {repeated}", stage=Stage.NORMALIZE)

    missing = sorted(set(range(max(indexes) + 1)) - set(indexes))
    if missing:
        raise IncompleteDocument(
            f"Missing page(s) {[i + 1 for i in missing]} of {max(indexes) + 1}", stage=Stage.NORMALIZE
        )
    return ordered


def _open_image(page: RawPage, source_url: str) -> Image.Image:
    try:
        return Image.open(io.BytesIO(page.bytes))
    except UnidentifiedImageError:
        _reject(page.bytes, f"an image for page {page.page_index + 1}", source_url)
    except Image.DecompressionBombError as e:
        raise InvalidDocumentSignature(
            f"Page {page.page_index + 1} from {source_url} is too large to decode: {e}", stage=Stage.NORMALIZE
        ) from e


def _to_png(frame: Image.Image) -> bytes:
    # img2pdf rejects alpha channels and palette transparency
    if frame.mode == "1":
        frame = frame.convert("L")
    elif frame.mode not in ("L", "RGB"):
        frame = frame.convert("RGB")
    buffer = io.BytesIO()
    frame.save(buffer, format="PNG")
    return buffer.getvalue()


def tiff_frames(page: RawPage, source_url: str) -> List[bytes]:
    """Every frame of a (multi-page) TIFF, re-encoded as PNG."""
    with _open_image(page, source_url) as image:
        try:
            frames = [_to_png(frame.copy()) for frame in ImageSequence.Iterator(image)]
        except OSError as e:
            raise InvalidDocumentSignature(f"Corrupt TIFF from {source_url}: {e}", stage=Stage.NORMALIZE) from e
    logger.info(f"🖼️ TIFF has {len(frames)} frame(s)")
    return frames


def page_image(page: RawPage, source_url: str) -> bytes:
    with _open_image(page, source_url) as image:
        try:
            return _to_png(image.copy())
        except OSError as e:
            raise InvalidDocumentSignature(
                f"Corrupt image for page {page.page_index + 1} from {source_url}: {e}", stage=Stage.NORMALIZE
            ) from e


def images_to_pdf(images: List[bytes]) -> bytes:
    """Embed each PNG on its own letter page, scaled to fit with aspect ratio kept."""
    try:
        return img2pdf.convert(images, layout_fun=LAYOUT)
    except (img2pdf.ImageOpenError, img2pdf.AlphaChannelError, ValueError, OSError) as e:
        raise InvalidDocumentSignature(f"Could not lay out page images: {e}", stage=Stage.NORMALIZE) from e


def merge_pdfs(parts: List[bytes]) -> bytes:
    with fitz.open() as merged:
        for number, part in enumerate(parts, 1):
            try:
                with fitz.open(stream=part, filetype="pdf") as doc:
                    merged.insert_pdf(doc)
            except (RuntimeError, ValueError) as e:
                raise InvalidDocumentSignature(f"Unreadable PDF part {number}: {e}", stage=Stage.NORMALIZE) from e
        return merged.tobytes()


def deed_filename(identifier: str, slug: Optional[str] = None) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]+", "_", identifier or "unknown").strip("_") or "unknown"
    return f"{slug}_deed_{safe}.pdf" if slug else f"deed_{safe}.pdf"


def normalize(
    handle: DocumentHandle,
    captcha_encountered: bool = False,
    duration_ms: int = 0,
    slug: Optional[str] = None,
) -> NormalizedDeed:
    """
    Build the canonical PDF for a retrieved document.

    Args:
        handle: Raw pages and their shape as retrieved by an adapter
        captcha_encountered: Whether the session saw a CAPTCHA marker
        duration_ms: Time spent retrieving, carried through as metadata
        slug: Jurisdiction slug used as the filename prefix

    Returns:
        NormalizedDeed: The verified PDF and its metadata

    Raises:
        IncompleteDocument: Pages are missing or repeated
        InvalidDocumentSignature: Bytes are not the document type they claim to be
    """
    pages = check_page_sequence(handle.pages)
    logger.info(f"📄 Normalizing {handle.kind} document with {len(pages)} raw page(s)")

    if handle.kind == "pdf":
        for page in pages:
            if not is_pdf(page.bytes):
                _reject(page.bytes, "a PDF", handle.source_url)
        pdf_bytes = pages[0].bytes if len(pages) == 1 else merge_pdfs([p.bytes for p in pages])
    elif handle.kind == "tiff":
        images = []
        for page in pages:
            images.extend(tiff_frames(page, handle.source_url))
        pdf_bytes = images_to_pdf(images)
    else:
        pdf_bytes = images_to_pdf([page_image(page, handle.source_url) for page in pages])

    page_count = pdf_page_count(pdf_bytes)
    if page_count < 1:
        raise InvalidDocumentSignature("Normalized PDF has no pages", stage=Stage.NORMALIZE)

    deed = NormalizedDeed(
        pdf_bytes=pdf_bytes,
        filename=deed_filename(handle.identifier, slug),
        size_bytes=len(pdf_bytes),
        page_count=page_count,
        captcha_encountered=captcha_encountered,
        source_url=handle.source_url,
        duration_ms=duration_ms,
    )
    logger.info(f"✅ {deed.filename}: {page_count} page(s), {deed.size_bytes / 1024:.2f} KB")
    return deed


def save_deed(deed: NormalizedDeed, directory: str) -> str:
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, deed.filename)
    with open(path, "wb") as f:
        f.write(deed.pdf_bytes)
    logger.info(f"💾 Saved {path}")
    return path
