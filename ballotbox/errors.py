# ballotbox/errors.py

from enum import Enum

# Error taxonomy shared by the voting workflow and the HTTP layer


class ErrorCode(Enum):
    INVALID_ID = "INVALID_ID"
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_BALLOT = "INVALID_BALLOT"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_VOTER = "UNKNOWN_VOTER"
    ID_ALREADY_USED = "ID_ALREADY_USED"
    DUPLICATE_ID = "DUPLICATE_ID"
    ALREADY_VOTED = "ALREADY_VOTED"
    NOT_VOTED = "NOT_VOTED"
    INCOMPLETE_BALLOT = "INCOMPLETE_BALLOT"
    STORE_ERROR = "STORE_ERROR"
    NOTIFICATION_ERROR = "NOTIFICATION_ERROR"


class ElectionError(Exception):
    """Base class for every error the election workflow reports."""

    status_code = 500

    def __init__(self, code, message=None):
        self.code = code
        self.message = message or code.value
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.code.value, "message": self.message}


class ValidationError(ElectionError):
    """Bad, unknown or inactive ID, malformed email, ballot or request body. User-correctable."""

    status_code = 400


class ConflictError(ElectionError):
    """ID already used, already voted (or not yet voted), incomplete ballot."""

    status_code = 409


class StoreError(ElectionError):
    """Backend failure. Details stay in the server log."""

    status_code = 503

    def __init__(self, message="Something went wrong, please try again."):
        super().__init__(ErrorCode.STORE_ERROR, message)


class NotificationError(ElectionError):
    # never surfaced to voters
    def __init__(self, message):
        super().__init__(ErrorCode.NOTIFICATION_ERROR, message)
