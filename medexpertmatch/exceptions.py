"""Exception hierarchy for the matching core.

Every error carries a stable code and a details dict so callers can report
failures without parsing messages.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes with a short description."""

    GRAPH_QUERY_FAILED = "Apache AGE query execution failed"
    GRAPH_NOT_EXISTS = "Apache AGE graph does not exist"
    GRAPH_CONNECTION_ERROR = "Failed to connect to Apache AGE"
    GRAPH_INVALID_QUERY = "Invalid Cypher query syntax"
    DATABASE_QUERY_FAILED = "Database query execution failed"
    DATA_NOT_FOUND = "Requested data not found in database"
    VALIDATION_FAILED = "Input validation failed"
    VALIDATION_MISSING_REQUIRED_FIELD = "Required field missing"
    PERSISTENCE_FAILED = "Failed to persist consultation matches"
    CONFIG_INVALID = "Invalid configuration"

    @property
    def code(self) -> str:
        return self.name

    def full_message(self, context: Optional[str] = None) -> str:
        if context and context.strip():
            return f"{self.name}: {self.value} - {context}"
        return f"{self.name}: {self.value}"


class MedExpertMatchError(Exception):
    """Base exception for all matching-core errors."""

    def __init__(
        self,
        message: str,
        code: str = "MED_EXPERT_MATCH_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @classmethod
    def from_code(cls, error_code: ErrorCode, context: Optional[str] = None, **details):
        return cls(error_code.full_message(context), code=error_code.code, details=details)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(MedExpertMatchError):
    """Blank or malformed input (case id, query text, graph label)."""

    def __init__(self, message: str, field: str = "unknown", details: Optional[dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_FAILED.code,
            details={"field": field, **(details or {})},
        )
        self.field = field


class NotFoundError(MedExpertMatchError):
    """A case, doctor or facility that the caller referenced does not exist."""

    def __init__(self, message: str, entity: str = "unknown", entity_id: Optional[str] = None):
        super().__init__(
            message=message,
            code=ErrorCode.DATA_NOT_FOUND.code,
            details={"entity": entity, "entity_id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class BackendUnavailableError(MedExpertMatchError):
    """Graph extension missing or the connection failed.

    Raised inside the graph layer only; GraphRepository converts it into an
    empty result so it never reaches the scoring pipeline.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.GRAPH_CONNECTION_ERROR.code,
            details=details,
        )


class PersistenceError(MedExpertMatchError):
    """Consultation match delete/insert failed."""

    def __init__(self, message: str, case_id: Optional[str] = None):
        super().__init__(
            message=message,
            code=ErrorCode.PERSISTENCE_FAILED.code,
            details={"case_id": case_id},
        )
        self.case_id = case_id
