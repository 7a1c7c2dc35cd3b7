"""
Ingestion error hierarchy.

Collaborator failures are caught at the narrowest scope (one batch, one file)
and converted into empty results. Only StoreError on a core write and request
validation problems are allowed to reach the HTTP layer.
"""


class IngestionError(Exception):
    """Base class for every pipeline error."""


class CompletionError(IngestionError):
    """The completion service failed, timed out, or returned unusable JSON."""

    def __init__(self, operation: str, message: str, retryable: bool = False):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.retryable = retryable


class MalformedResponseError(CompletionError):
    """The completion service answered, but not with the JSON shape asked for."""

    def __init__(self, operation: str, message: str):
        super().__init__(operation, message, retryable=False)


class ProcedureError(IngestionError):
    """A learned extraction procedure is invalid or produced an unusable result."""


class DuplicateFormatError(IngestionError):
    """A learned format already exists for this fingerprint."""

    def __init__(self, fingerprint: str):
        super().__init__(f"format already learned for fingerprint {fingerprint[:24]}...")
        self.fingerprint = fingerprint


class StoreError(IngestionError):
    """The persistence layer rejected or failed a write."""


class UnsupportedDocumentError(IngestionError):
    """The uploaded file has an extension the pipeline does not handle."""
