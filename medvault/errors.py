"""
Error taxonomy for consent and record access.

Every business-rule rejection is a ConsentError (a ValueError) carrying a
stable ``code`` the API layer and UI can switch on. Store-layer faults are
StorageFailure and are never mistaken for a rejection.
"""

from typing import Any, Dict, Optional


class ConsentError(ValueError):
    """Base class for recoverable, caller-facing rejections."""

    code = "ConsentError"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class AlreadyConnected(ConsentError):
    code = "AlreadyConnected"


class NoActiveConnection(ConsentError):
    code = "NoActiveConnection"


class DuplicateRequest(ConsentError):
    code = "DuplicateRequest"


class EmptyFieldSet(ConsentError):
    code = "EmptyFieldSet"


class UnknownField(ConsentError):
    code = "UnknownField"


class InvalidFieldPath(ConsentError):
    code = "InvalidFieldPath"


class InvalidDecision(ConsentError):
    code = "InvalidDecision"


class NotFound(ConsentError):
    code = "NotFound"


class NotOwner(ConsentError):
    code = "NotOwner"


class NotPending(ConsentError):
    code = "NotPending"


class AlreadyResolved(ConsentError):
    code = "AlreadyResolved"


class AlreadyRevoked(ConsentError):
    code = "AlreadyRevoked"


class NoRecordUploaded(ConsentError):
    code = "NoRecordUploaded"


class NoApprovedFields(ConsentError):
    code = "NoApprovedFields"


class RecordUnavailable(ConsentError):
    code = "RecordUnavailable"


class StorageFailure(RuntimeError):
    """Unexpected fault in the persistence or record-store collaborator."""

    code = "StorageFailure"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


HTTP_STATUS = {
    "AlreadyConnected": 409,
    "DuplicateRequest": 409,
    "NoActiveConnection": 403,
    "NoApprovedFields": 403,
    "NotOwner": 403,
    "EmptyFieldSet": 400,
    "UnknownField": 400,
    "InvalidFieldPath": 400,
    "InvalidDecision": 400,
    "NotPending": 400,
    "AlreadyResolved": 409,
    "AlreadyRevoked": 409,
    "NotFound": 404,
    "NoRecordUploaded": 404,
    "RecordUnavailable": 502,
    "StorageFailure": 500,
}


def http_status_for(error: Exception) -> int:
    """Map an error to the HTTP status the API layer responds with."""
    return HTTP_STATUS.get(getattr(error, "code", ""), 500)
