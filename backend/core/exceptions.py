"""Custom exception hierarchy for LiveCaption."""
from typing import Optional


class LiveCaptionError(Exception):
    """Base error."""
    def __init__(self, message: str, code: str = "LIVECAPTION_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuthError(LiveCaptionError):
    """Authentication / authorization failures."""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="AUTH_ERROR")


class RateLimitedError(LiveCaptionError):
    """Request refused by the rate limiter."""
    def __init__(self, message: str = "Too many requests", retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(message, code="RATE_LIMITED")


class AccountLockedError(LiveCaptionError):
    """Subject is locked out after repeated failures."""
    def __init__(self, message: str = "Too many failed attempts", retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(message, code="ACCOUNT_LOCKED")


class UserNotFoundError(LiveCaptionError):
    """Authenticated user has no account record."""
    def __init__(self, message: str = "Failed to fetch user data"):
        super().__init__(message, code="USER_NOT_FOUND")


class StoreError(LiveCaptionError):
    """Session store read/write failure."""
    def __init__(self, message: str = "Session store error"):
        super().__init__(message, code="STORE_ERROR")


class DuplicateActiveSessionError(StoreError):
    """Insert rejected: the user already has an active session."""
    def __init__(self, message: str = "Active session already exists"):
        super().__init__(message)
        self.code = "DUPLICATE_ACTIVE_SESSION"


class SessionCloseError(StoreError):
    """A session could not be moved out of the active state."""
    def __init__(self, message: str = "Failed to close session"):
        super().__init__(message)
        self.code = "SESSION_CLOSE_FAILED"


class InvalidRequestError(LiveCaptionError):
    """Malformed request body or parameters."""
    def __init__(self, message: str = "Invalid request"):
        super().__init__(message, code="INVALID_REQUEST")
