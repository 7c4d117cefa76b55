"""
Plain-text extraction for PDF and DOCX templates with OCR support.

PDF pages are read with PyMuPDF; a page without a text layer is rendered and
run through Tesseract.  DOCX files are read with python-docx, covering body
paragraphs, tables and headers/footers.  When python-docx cannot open the
package but ``word/document.xml`` is present, a degraded XML-stripping pass is
used instead and logged at WARNING.
"""
from __future__ import annotations

import io
import logging
import re
import zipfile
from typing import Iterable, List, Optional

import fitz  # PyMuPDF
import pytesseract
from docx import Document as DocxDocument
from PIL import Image

from formgen.config import settings
from formgen.exceptions import ExtractionError, FormGenError, UnsupportedFormatError

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("pdf", "docx")

_XML_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&amp;", "&"),  # last, so "&amp;lt;" decodes to "&lt;"
)


def normalize_file_type(file_type: Optional[str]) -> str:
    """``".PDF"`` -> ``"pdf"``."""
    return (file_type or "").strip().lower().lstrip(".")


class DocumentTextExtractor:
    """Turns template bytes into plain text.  No I/O beyond the given bytes."""

    def __init__(self) -> None:
        if settings.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    async def extract_text(self, file_bytes: bytes, file_type: str) -> str:
        """
        Extract the text of a PDF or DOCX file.

        Args:
            file_bytes: Raw file content.
            file_type:  ``pdf`` or ``docx``, with or without a leading dot.

        Raises:
            UnsupportedFormatError: Any other type.  The bytes are not inspected.
            ExtractionError:        Corrupt, encrypted, or unreadable file.
        """
        ft = normalize_file_type(file_type)
        if ft not in SUPPORTED_TYPES:
            raise UnsupportedFormatError(
                f"Unsupported file type {file_type!r}. Accepted: {', '.join(SUPPORTED_TYPES)}"
            )

        try:
            if ft == "pdf":
                return self._extract_pdf(file_bytes)
            return self._extract_docx(file_bytes)
        except FormGenError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Cannot extract text from {ft} file: {exc}", original_error=exc) from exc

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def _extract_pdf(self, file_bytes: bytes) -> str:
        try:
            doc = fitz.open(stream=file_bytes, filetype="pdf")
        except Exception as exc:
            raise ExtractionError(f"Cannot open PDF file: {exc}", original_error=exc) from exc

        try:
            if doc.needs_pass:
                raise ExtractionError("PDF is password-protected. Please provide an unlocked copy.")

            page_texts: List[str] = []
            for page in doc:
                text = page.get_text("text").strip()
                if not text:
                    # Image-only page
                    text = self._ocr_page(page).strip()
                if text:
                    page_texts.append(text)
        finally:
            doc.close()

        return "\n\n".join(page_texts)

    def _ocr_page(self, page: fitz.Page) -> str:
        """Render a page at 2x scale and run Tesseract OCR.  Failure yields empty text."""
        try:
            pix = page.get_pixmap(matrix=fitz.Matrix(2, 2))
            img = Image.open(io.BytesIO(pix.tobytes("png")))
            text = pytesseract.image_to_string(img)
        except Exception as exc:
            logger.warning("OCR failed on page %d: %s", page.number + 1, exc)
            return ""
        if text.strip():
            logger.warning("Page %d has no text layer; used OCR text", page.number + 1)
        return text

    # ------------------------------------------------------------------
    # DOCX
    # ------------------------------------------------------------------

    def _extract_docx(self, file_bytes: bytes) -> str:
        try:
            document = DocxDocument(io.BytesIO(file_bytes))
        except Exception as exc:
            fallback = extract_docx_xml_text(file_bytes)
            if fallback is None:
                raise ExtractionError(f"Cannot open DOCX file: {exc}", original_error=exc) from exc
            logger.warning(
                "python-docx could not open the package (%s); using degraded XML text extraction",
                exc,
            )
            return fallback

        parts: List[str] = []
        parts.extend(_paragraph_texts(document.paragraphs))
        for table in document.tables:
            parts.extend(_table_texts(table))

        seen_parts = set()
        for section in document.sections:
            for part in (section.header, section.footer):
                if part.is_linked_to_previous:
                    continue
                for text in _paragraph_texts(part.paragraphs):
                    if text not in seen_parts:
                        seen_parts.add(text)
                        parts.append(text)
                for table in part.tables:
                    parts.extend(_table_texts(table))

        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def _paragraph_texts(paragraphs: Iterable) -> List[str]:
    return [p.text.strip() for p in paragraphs if p.text.strip()]


def _table_texts(table) -> List[str]:
    """One line per row, cells joined by `` | ``; nested tables follow their row."""
    lines: List[str] = []
    for row in table.rows:
        cells = [cell.text.strip() for cell in row.cells]
        non_empty = [c for c in cells if c]
        if non_empty:
            lines.append(" | ".join(non_empty))
        for cell in row.cells:
            for nested in cell.tables:
                lines.extend(_table_texts(nested))
    return lines


def extract_docx_xml_text(file_bytes: bytes) -> Optional[str]:
    """
    Degraded DOCX extraction straight from ``word/document.xml``.

    Paragraph ends become newlines, tags are stripped, the five standard XML
    entities are decoded and whitespace is collapsed.  Returns ``None`` when
    the bytes are not a ZIP package holding ``word/document.xml``.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(file_bytes)) as package:
            if "word/document.xml" not in package.namelist():
                return None
            xml = package.read("word/document.xml").decode("utf-8", errors="replace")
    except zipfile.BadZipFile:
        return None

    xml = re.sub(r"</w:p>", "\n", xml)
    xml = re.sub(r"<w:tab\s*/>", " ", xml)
    text = re.sub(r"<[^>]+>", "", xml)
    for entity, char in _XML_ENTITIES:
        text = text.replace(entity, char)

    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)
