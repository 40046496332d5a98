"""Error taxonomy for the analysis pipeline.

Only ConfigurationError is fatal to a run. Everything else is recorded on the
smallest unit it affects (one conversation, one row) so the batch proceeds.
"""

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Why an analysis produced the canonical empty result instead of real data."""

    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    MALFORMED_RESPONSE = "malformed_response"


class SalesIntelError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SalesIntelError):
    """Missing credential or unusable setup. Aborts the run before loading."""


class SourceReadError(SalesIntelError):
    """Reading one conversation from the source store failed."""

    def __init__(self, conversation_id: str, cause: Exception):
        self.conversation_id = conversation_id
        self.cause = cause
        super().__init__(f"Failed to read {conversation_id}: {cause}")


class AnalysisError(SalesIntelError):
    """Per-item failure of the AI classifier."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class QuotaExceeded(AnalysisError):
    """The AI account has exhausted its allotted usage. Retry after it resets."""

    kind = FailureKind.QUOTA_EXCEEDED


class TransientServiceError(AnalysisError):
    """Timeout, connection problem or server-side error from the AI service."""

    kind = FailureKind.TRANSIENT


class MalformedResponse(AnalysisError):
    """The AI service answered, but not with a usable JSON object."""

    kind = FailureKind.MALFORMED_RESPONSE


class PersistenceConstraintError(SalesIntelError):
    """A single result row was rejected by the result store."""

    def __init__(self, conversation_id: str, message: str, code: Optional[str] = None):
        self.conversation_id = conversation_id
        self.code = code
        super().__init__(f"Row {conversation_id} rejected: {message}")
