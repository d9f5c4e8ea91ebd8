"""
Error taxonomy for the seller API.

Every error carries the HTTP status it maps to and a message that is safe to
hand back to the client. main.py turns them into the
``{"success": false, "error": ...}`` envelope.
"""


class SellerApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SellerApiError):
    status_code = 400
    default_message = "Invalid request"


class InvalidArgument(SellerApiError):
    status_code = 400
    default_message = "Invalid argument"


class InvalidIdentity(InvalidArgument):
    default_message = "Invalid user id"


class NotFound(SellerApiError):
    status_code = 404
    default_message = "Not found"


class StorageError(SellerApiError):
    default_message = "Storage unavailable"


class StorageTimeout(StorageError):
    default_message = "Storage timed out"


class PersistenceError(SellerApiError):
    default_message = "Failed to save"
