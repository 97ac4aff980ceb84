"""Typed exceptions for auth failures.

Each failure mode gets its own class so the HTTP layer can pick a status
code from the exception type alone. Messages are user-facing; never put
storage driver details in them.
"""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class InvalidCredentialsError(AuthError):
    """
    Email/password pair rejected.

    Raised for both unknown emails and wrong passwords with the same
    message so responses can't be used to enumerate accounts.
    """

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class AccountLockedError(AuthError):
    """Too many failed logins. Password authentication suspended until lock expires."""

    def __init__(self, remaining_minutes: int, message: str | None = None):
        self.remaining_minutes = remaining_minutes
        super().__init__(
            message or f"Account locked. Try again in {remaining_minutes} minutes"
        )


class AccountInactiveError(AuthError):
    """User account is deactivated. Login not permitted."""

    def __init__(self, message: str = "Account is inactive"):
        super().__init__(message)


class InvalidTokenError(AuthError):
    """Access token is malformed, badly signed, expired or for another audience."""

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class InvalidMagicLinkError(AuthError):
    """Magic link token is unknown or not valid for the requested purpose."""

    def __init__(self, message: str = "Invalid magic link token"):
        super().__init__(message)


class TokenExpiredError(AuthError):
    """Magic link token is past its expiry."""

    def __init__(self, message: str = "Token expired"):
        super().__init__(message)


class TokenAlreadyUsedError(AuthError):
    """Magic link token was already redeemed. Tokens are single-use."""

    def __init__(self, message: str = "Token already used"):
        super().__init__(message)


class InvalidRefreshTokenError(AuthError):
    """Refresh token is not known to the server."""

    def __init__(self, message: str = "Invalid refresh token"):
        super().__init__(message)


class RefreshTokenExpiredError(AuthError):
    """Refresh token is past its expiry."""

    def __init__(self, message: str = "Refresh token expired"):
        super().__init__(message)


class RefreshTokenRevokedError(AuthError):
    """Refresh token was revoked (logout or security action)."""

    def __init__(self, message: str = "Refresh token revoked"):
        super().__init__(message)


class SessionNotFoundError(AuthError):
    """No live session for the token's session id (logged out or expired)."""

    def __init__(self, message: str = "Session not found"):
        super().__init__(message)


class SessionStorageUnavailableError(AuthError):
    """Neither the cache nor an allowed fallback can hold sessions."""

    def __init__(self, message: str = "Session storage not available"):
        super().__init__(message)


class StorageUnavailableError(AuthError):
    """Credential store could not be reached."""

    def __init__(self, message: str = "Credential storage not available"):
        super().__init__(message)


class UserNotFoundError(AuthError):
    """
    No user for the given id or email.

    Note: In user-facing login responses, don't reveal whether email exists.
    This exception is for internal logic only.
    """


class UserAlreadyExistsError(AuthError):
    """Signup attempted with an email that already has credentials."""

    def __init__(self, message: str = "An account with this email already exists"):
        super().__init__(message)


class WeakPasswordError(AuthError):
    """Password doesn't meet length requirements."""


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limited. Retry after {retry_after_seconds} seconds.")
