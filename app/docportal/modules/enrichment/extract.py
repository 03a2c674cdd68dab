"""Text extraction for uploaded documents."""
from __future__ import annotations

import logging
from io import BytesIO

from app.docportal.errors import EnrichmentError

logger = logging.getLogger(__name__)

PDF_TYPES = {"application/pdf"}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}


def _extract_pdf(data: bytes) -> str:
    import pdfplumber

    text = []
    with pdfplumber.open(BytesIO(data)) as pdf:
        for page in pdf.pages:
            text.append(page.extract_text() or "")
    return "\n".join(text)


def _extract_docx(data: bytes) -> str:
    from docx import Document as DocxDocument

    d = DocxDocument(BytesIO(data))
    return "\n".join(p.text for p in d.paragraphs)


def extract_text(data: bytes, *, content_type: str, filename: str = "") -> str | None:
    """
    Return the document's text, or None for formats we do not read (images, archives).
    Raises EnrichmentError when a supported format cannot be parsed.
    """
    ct = (content_type or "").split(";")[0].strip().lower()
    name = (filename or "").lower()
    try:
        if ct in PDF_TYPES or name.endswith(".pdf"):
            return _extract_pdf(data).strip()
        if ct in DOCX_TYPES or name.endswith(".docx"):
            return _extract_docx(data).strip()
        if ct.startswith("text/") or name.endswith((".txt", ".md", ".csv")):
            return data.decode("utf-8", errors="replace").strip()
    except EnrichmentError:
        raise
    except Exception as e:
        logger.warning("Text extraction failed (filename=%s content_type=%s): %s", filename, ct, e)
        raise EnrichmentError(f"Text extraction failed: {e}") from e
    return None
