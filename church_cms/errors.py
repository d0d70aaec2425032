"""Request pipeline error taxonomy.

Each stage raises only its own error class; the app maps them to JSON
responses of the form ``{"success": false, "message": ...}``.
"""
from typing import Optional


class ChurchCMSError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_response(self) -> dict:
        return {"success": False, "message": self.message}


class AuthenticationError(ChurchCMSError):
    """Missing, malformed, expired or invalid bearer credential."""
    status_code = 401
    default_message = "Invalid token"

    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID = "invalid"

    def __init__(self, message: Optional[str] = None, reason: str = INVALID):
        super().__init__(message)
        self.reason = reason


class AuthorizationError(ChurchCMSError):
    status_code = 403
    default_message = "You do not have permission to perform this action."


class ValidationError(ChurchCMSError):
    """One or more field or cross-field violations; carries all of them."""
    status_code = 400
    default_message = "Validation error"

    def __init__(self, result, message: Optional[str] = None):
        super().__init__(message)
        self.result = result

    def to_response(self) -> dict:
        body = super().to_response()
        body["errors"] = self.result.as_list()
        return body


class UploadError(ChurchCMSError):
    """Missing required file, disallowed type or oversized file."""
    status_code = 400
    default_message = "Error uploading file"


class ProcessingError(UploadError):
    """Image could not be decoded or re-encoded."""
    default_message = "Failed to process image"
