"""Upload inspection performed before a blueprint record or job exists."""

from __future__ import annotations

import logging

import fitz  # PyMuPDF

from .errors import DocumentRejected

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF-"
# Readers accept the header anywhere in the first KiB
PDF_HEADER_WINDOW = 1024


class DocumentValidator:
    """
    Accepts or rejects an uploaded document without side effects.

    Two stable rejection reasons exist: ``badMimeType`` when the upload does
    not claim to be a PDF, and ``invalidPdfFile`` when it claims to be one but
    cannot be opened and paged through.
    """

    def __init__(self, accepted_mime_type: str = PDF_MIME_TYPE) -> None:
        self.accepted_mime_type = accepted_mime_type

    def validate(self, data: bytes, declared_mime_type: str) -> int:
        """
        Validate an upload.

        Args:
            data: The uploaded bytes
            declared_mime_type: MIME type the client declared for them

        Returns:
            The document's page count

        Raises:
            DocumentRejected: With reason ``badMimeType`` or ``invalidPdfFile``
        """
        if (declared_mime_type or "").lower() != self.accepted_mime_type:
            raise DocumentRejected(
                DocumentRejected.BAD_MIME_TYPE,
                f"Expected {self.accepted_mime_type}, got {declared_mime_type or 'nothing'}",
            )

        if PDF_MAGIC not in data[:PDF_HEADER_WINDOW]:
            raise DocumentRejected(DocumentRejected.INVALID_PDF_FILE, "Missing PDF header")

        try:
            with fitz.open(stream=data, filetype="pdf") as document:
                if document.needs_pass:
                    raise DocumentRejected(DocumentRejected.INVALID_PDF_FILE, "Document is password protected")
                page_count = document.page_count
                for page in document:
                    if page.rect.is_empty:
                        raise DocumentRejected(DocumentRejected.INVALID_PDF_FILE, f"Page {page.number + 1} has no area")
        except (RuntimeError, ValueError) as exc:
            logger.info(f"Rejected unreadable PDF upload: {exc}")
            raise DocumentRejected(DocumentRejected.INVALID_PDF_FILE, str(exc)) from exc

        if page_count == 0:
            raise DocumentRejected(DocumentRejected.INVALID_PDF_FILE, "Document has no pages")
        return page_count
