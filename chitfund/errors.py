"""
Domain error taxonomy.

Services raise these; the API layer turns them into structured JSON
responses through a single exception handler registered in main.py.
"""


class ErrorCode:
    INVALID_STATE = "INVALID_STATE"
    NOT_YET_CLOSABLE = "NOT_YET_CLOSABLE"
    NO_WINNER = "NO_WINNER"
    INELIGIBLE = "INELIGIBLE"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    CANCELLED = "CANCELLED"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class ChitFundError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidState(ChitFundError):
    """Operation attempted against an entity in the wrong lifecycle state."""
    code = ErrorCode.INVALID_STATE
    status_code = 409


class NotYetClosable(ChitFundError):
    """Auction resolution attempted before its end time."""
    code = ErrorCode.NOT_YET_CLOSABLE
    status_code = 409


class NoWinner(ChitFundError):
    """Auction closed with no eligible bids."""
    code = ErrorCode.NO_WINNER
    status_code = 409


class Ineligible(ChitFundError):
    code = ErrorCode.INELIGIBLE
    status_code = 422


class NotFound(ChitFundError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class Conflict(ChitFundError):
    """A concurrent writer won the race for the same entity."""
    code = ErrorCode.CONFLICT
    status_code = 409


class Cancelled(ChitFundError):
    code = ErrorCode.CANCELLED
    status_code = 408


class ValidationFailed(ChitFundError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


def error_response(error: ChitFundError) -> dict:
    """Create a structured error response dict."""
    resp = {
        "error": True,
        "error_code": error.code,
        "message": error.message,
    }
    if error.details:
        resp["details"] = error.details
    return resp
