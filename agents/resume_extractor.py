"""Turn an uploaded resume (PDF, Markdown or plain text) into plain text."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

import anyio
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from core.errors import ErrorKind, ParseError
from core.models import ResumeDocument

logger = logging.getLogger(__name__)

MIN_TEXT_CHARS = 50
LARGE_DOCUMENT_PAGES = 10


@dataclass(frozen=True, slots=True)
class ExtractedText:
    text: str
    page_count: int
    source_type: str
    warnings: tuple[str, ...] = field(default_factory=tuple)


def detect_source_type(document: ResumeDocument) -> str:
    mime = (document.content_type or "").lower()
    name = (document.filename or "").lower()
    if mime == "application/pdf" or name.endswith(".pdf"):
        return "pdf"
    if mime == "text/markdown" or name.endswith((".md", ".markdown")):
        return "markdown"
    if mime == "text/plain" or name.endswith(".txt"):
        return "text"
    return "unknown"


def _read_pdf(data: bytes) -> tuple[str, int]:
    """Blocking pypdf extraction; run it in a worker thread."""
    if not data.startswith(b"%PDF"):
        raise ParseError("File is not a valid PDF", ErrorKind.INVALID_PDF)
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, KeyError, TypeError) as exc:
        raise ParseError(f"Could not read PDF: {exc}", ErrorKind.PARSE_FAILED) from exc
    text = "\n".join(pages).strip()
    if not text:
        # Usually a scanned/image-only PDF; another export of the same resume may work.
        raise ParseError(
            "PDF contains no extractable text (may be image-based)",
            ErrorKind.EMPTY_CONTENT,
            recoverable=True,
        )
    return text, len(pages)


class ResumeExtractor:
    async def extract_text(self, document: ResumeDocument) -> ExtractedText:
        if not document.data:
            raise ParseError("Empty document provided", ErrorKind.INVALID_PDF)

        source_type = detect_source_type(document)
        warnings: list[str] = []

        if source_type == "pdf":
            text, page_count = await anyio.to_thread.run_sync(_read_pdf, document.data)
            if page_count > LARGE_DOCUMENT_PAGES:
                warnings.append(f"Large document: {page_count} pages")
        else:
            if source_type == "unknown":
                warnings.append(
                    f"Unknown file type: {document.content_type}, attempting text extraction"
                )
            text = document.data.decode("utf-8", errors="replace").strip()
            page_count = 1

        if len(text.strip()) < MIN_TEXT_CHARS:
            raise ParseError(
                f"Insufficient content extracted from resume (minimum {MIN_TEXT_CHARS} characters)",
                ErrorKind.EMPTY_CONTENT,
                context={"chars": len(text.strip())},
            )

        logger.info(
            "resume.extracted source_type=%s pages=%s chars=%s warnings=%s",
            source_type,
            page_count,
            len(text),
            len(warnings),
        )
        return ExtractedText(
            text=text, page_count=page_count, source_type=source_type, warnings=tuple(warnings)
        )
