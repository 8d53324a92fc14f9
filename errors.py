"""
Error taxonomy for the EduStore API.

Services raise these; the handlers registered in main.py render every one
of them as ``{"error": message}`` with the matching status code.
"""


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    message = "Invalid request"


class Unauthorized(AppError):
    status_code = 401
    message = "Unauthorized"


class InvalidToken(Unauthorized):
    message = "Invalid token"


class Forbidden(AppError):
    status_code = 403
    message = "Forbidden"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class Conflict(AppError):
    status_code = 409
    message = "Conflict"


class RateLimited(AppError):
    status_code = 429
    message = "Too many requests"

    def __init__(self, message: str | None = None, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidOrExpiredCode(AppError):
    status_code = 400
    message = "Invalid or expired OTP"


# One message for every failed redemption so callers cannot probe entitlements.
class DownloadNotAvailable(AppError):
    status_code = 404
    message = "Download not found or expired"


class Internal(AppError):
    status_code = 500
    message = "Internal server error"
