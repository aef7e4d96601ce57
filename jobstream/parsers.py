"""Document validation and text extraction for résumé files.

Supports PDF (pdfplumber with a pypdf fallback), DOCX, HTML and plain text.
File types are detected from magic bytes, not from the claimed name.
"""
from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import docx2txt
import pdfplumber
from pypdf import PdfReader

from jobstream.errors import DocumentError, ErrorKind
from jobstream.pipelines.normalization import clean_html, looks_like_html

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
ZIP_MAGIC = b"PK\x03\x04"


class FileType(str, Enum):
    """Supported file types."""
    PDF = "pdf"
    DOCX = "docx"
    HTML = "html"
    TEXT = "text"
    UNKNOWN = "unknown"


@dataclass
class ParsedDocument:
    """Result of document parsing."""
    text: str
    file_type: FileType
    metadata: dict[str, Any] = field(default_factory=dict)
    page_count: int | None = None


def _is_docx(content: bytes) -> bool:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            return "word/document.xml" in archive.namelist()
    except zipfile.BadZipFile:
        return False


def _decode_text(content: bytes) -> str | None:
    for encoding in ("utf-8", "utf-16"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def detect_file_type(content: bytes) -> FileType:
    """Detect file type from magic bytes.

    Args:
        content: File content

    Returns:
        Detected FileType (UNKNOWN for binary data that is none of the above)
    """
    if content.startswith(PDF_MAGIC):
        return FileType.PDF
    if content.startswith(ZIP_MAGIC):
        return FileType.DOCX if _is_docx(content) else FileType.UNKNOWN

    head = content[:4096]
    if b"\x00" in head and not head.startswith((b"\xff\xfe", b"\xfe\xff")):
        return FileType.UNKNOWN
    try:
        text = head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut off by the slice is still text
        if e.start < len(head) - 3:
            text = _decode_text(head) if head.startswith((b"\xff\xfe", b"\xfe\xff")) else None
        else:
            text = head[:e.start].decode("utf-8")
    if text is None:
        return FileType.UNKNOWN
    return FileType.HTML if looks_like_html(text) else FileType.TEXT


def validate_document(content: bytes, *, max_size_mb: int) -> FileType:
    """Check size and type of a raw document.

    Raises:
        DocumentError: Empty, TooLarge or Unsupported
    """
    if not content:
        raise DocumentError(ErrorKind.EMPTY_DOCUMENT, "File is empty")
    max_bytes = max_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise DocumentError(
            ErrorKind.DOCUMENT_TOO_LARGE,
            f"File size ({len(content) / 1024 / 1024:.1f}MB) exceeds maximum allowed size ({max_size_mb}MB)",
        )
    file_type = detect_file_type(content)
    if file_type == FileType.UNKNOWN:
        raise DocumentError(
            ErrorKind.UNSUPPORTED_DOCUMENT,
            "File type is not allowed. Accepted types: PDF, DOCX, HTML, TXT",
        )
    return file_type


def extract_text_from_pdf(content: bytes) -> tuple[str, int]:
    """Extract text from a PDF, trying pdfplumber first, then pypdf.

    Returns:
        Tuple of (extracted_text, page_count)
    """
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            parts = [page.extract_text() or "" for page in pdf.pages]
            text = "\n\n".join(p for p in parts if p)
            if text.strip():
                return text, len(pdf.pages)
            logger.info("pdfplumber found no text, trying pypdf")
    except Exception as e:
        logger.warning(f"pdfplumber extraction failed: {e}, trying pypdf")

    try:
        reader = PdfReader(io.BytesIO(content))
        parts = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(p for p in parts if p), len(reader.pages)
    except Exception as e:
        logger.error(f"pypdf extraction also failed: {e}")
        raise DocumentError(ErrorKind.UNSUPPORTED_DOCUMENT, f"Failed to read PDF: {e}") from e


def extract_text_from_docx(content: bytes) -> str:
    try:
        return docx2txt.process(io.BytesIO(content)) or ""
    except (zipfile.BadZipFile, KeyError) as e:
        raise DocumentError(ErrorKind.UNSUPPORTED_DOCUMENT, f"Failed to read DOCX: {e}") from e


def parse_document(content: bytes, *, filename: str | None = None, max_size_mb: int = 10) -> ParsedDocument:
    """Validate a raw document and extract its text.

    Args:
        content: Raw file bytes
        filename: Original filename (metadata only)
        max_size_mb: Upper size limit

    Returns:
        ParsedDocument with extracted text

    Raises:
        DocumentError: If the file is empty, too large, unsupported or has no text
    """
    file_type = validate_document(content, max_size_mb=max_size_mb)
    page_count = None

    if file_type == FileType.PDF:
        text, page_count = extract_text_from_pdf(content)
    elif file_type == FileType.DOCX:
        text = extract_text_from_docx(content)
    elif file_type == FileType.HTML:
        text = clean_html(_decode_text(content) or "")
    else:
        text = _decode_text(content) or ""

    if not text.strip():
        raise DocumentError(ErrorKind.EMPTY_DOCUMENT, f"No text could be extracted from {file_type.value} document")

    logger.info(f"Extracted {len(text)} chars from {file_type.value} document {filename or ''}".rstrip())
    return ParsedDocument(
        text=text,
        file_type=file_type,
        page_count=page_count,
        metadata={"filename": filename, "size_bytes": len(content)},
    )
