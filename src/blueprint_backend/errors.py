"""
Domain exceptions raised by the ingestion pipeline.

Route handlers translate these into HTTP errors whose body is
``{"message": <code>}``; ``code`` is the stable, machine-readable reason a
client can switch on.
"""

from __future__ import annotations


class BlueprintError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    code = "internalError"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class DocumentRejected(BlueprintError):
    """An upload failed validation; no record or job was created."""

    BAD_MIME_TYPE = "badMimeType"
    INVALID_PDF_FILE = "invalidPdfFile"

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.code = reason
        super().__init__(message or reason)


class RecordNotFound(BlueprintError):
    code = "notFound"


class ImmutableField(BlueprintError):
    """An update tried to touch a field owned by the conversion job."""

    code = "immutableField"


class DeletionBlocked(BlueprintError):
    code = "existingRelativeTasks"


class InvalidTaskLocation(BlueprintError):
    code = "invalidLocation"


class RecordGone(BlueprintError):
    """A job-owned write was rejected: the record is deleted or not leased to this job."""

    code = "recordGone"


class ConversionAlreadyScheduled(BlueprintError):
    code = "conversionAlreadyScheduled"


class ConversionTimeout(BlueprintError):
    code = "conversionTimeout"


class RenderError(BlueprintError):
    code = "renderError"


class ObjectNotFound(BlueprintError):
    code = "objectNotFound"


class ConversionFailed(BlueprintError):
    code = "conversionFailed"
