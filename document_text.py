"""Best-effort text extraction for reference documents attached to assessments."""

import io
import logging
from typing import Optional

import requests
from pypdf import PdfReader

from env_validation import get_env_int

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 20000
MAX_DOCUMENT_BYTES = 20 * 1024 * 1024


def _pdf_text(payload: bytes) -> str:
    reader = PdfReader(io.BytesIO(payload))
    parts = []
    for number, page in enumerate(reader.pages, 1):
        try:
            text = page.extract_text() or ""
        except Exception as exc:
            logger.debug("Could not extract text from page %s: %s", number, exc)
            continue
        if text.strip():
            parts.append(text.strip())
    return "\n\n".join(parts)


def extract_text(document_url: Optional[str], timeout: Optional[int] = None) -> Optional[str]:
    """Return the document's text, or ``None`` when it cannot be read.

    Failures are never raised: a missing reference document simply means
    the scorer works without supporting text.
    """
    if not document_url:
        return None

    timeout = timeout if timeout is not None else get_env_int("DOCUMENT_FETCH_TIMEOUT", 20)
    try:
        response = requests.get(document_url, timeout=timeout)
        response.raise_for_status()
        payload = response.content
    except requests.RequestException as exc:
        logger.debug("Reference document download failed for %s: %s", document_url, exc)
        return None

    if not payload or len(payload) > MAX_DOCUMENT_BYTES:
        logger.debug("Reference document at %s is empty or too large", document_url)
        return None
    if not payload.lstrip().startswith(b"%PDF"):
        logger.debug("Reference document at %s is not a PDF", document_url)
        return None

    try:
        text = _pdf_text(payload)
    except Exception as exc:
        logger.debug("Reference document at %s could not be parsed: %s", document_url, exc)
        return None

    text = text.strip()
    return text[:MAX_DOCUMENT_CHARS] or None
