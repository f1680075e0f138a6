from typing import Optional


class SyncError(Exception):
    """Base class for sync failures; ``code`` is the stable string surfaced to callers."""

    code = "SYNC_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class AccountNotFoundError(SyncError):
    code = "ACCOUNT_NOT_FOUND"


class FailedToSyncError(SyncError):
    code = "FAILED_TO_SYNC"


class TokenExpiredError(SyncError):
    """The provider rejected the access token, or no usable credentials are left.

    The connection has been moved to the unauthenticated state; the user has to
    re-authorize the mailbox.
    """

    code = "TOKEN_EXPIRED"


class ProviderError(SyncError):
    """Any other provider failure. ``status_code`` is None for network errors and timeouts."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500
