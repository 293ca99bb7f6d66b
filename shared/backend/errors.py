"""
Backend Errors
==============

Exceptions raised by BackendService implementations.

Provider-specific failures (Cognito exception names, SQL errors, S3 client
errors) are translated into these types so callers never depend on a
particular provider SDK.

Version: 0.1.0
"""

from enum import Enum


class BackendError(Exception):
    """Base class for backend failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BackendConfigurationError(BackendError):
    """Provider configuration is missing or invalid."""


class DatabaseError(BackendError):
    """A database operation failed."""


class StorageError(BackendError):
    """An object storage operation failed."""


class FunctionError(BackendError):
    """A remote function invocation failed."""


class AuthErrorCode(str, Enum):
    """Provider-neutral authentication failure codes."""

    CODE_MISMATCH = "code_mismatch"
    EXPIRED_CODE = "expired_code"
    USER_NOT_FOUND = "user_not_found"
    NOT_AUTHORIZED = "not_authorized"
    USER_NOT_CONFIRMED = "user_not_confirmed"
    USERNAME_EXISTS = "username_exists"
    INVALID_PASSWORD = "invalid_password"
    INVALID_PARAMETER = "invalid_parameter"
    TOO_MANY_REQUESTS = "too_many_requests"
    LIMIT_EXCEEDED = "limit_exceeded"
    UNKNOWN = "unknown"


AUTH_ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.CODE_MISMATCH: "Invalid confirmation code. Please check the code and try again.",
    AuthErrorCode.EXPIRED_CODE: "Confirmation code has expired. Please request a new code.",
    AuthErrorCode.USER_NOT_FOUND: "User not found",
    AuthErrorCode.NOT_AUTHORIZED: "Incorrect email or password",
    AuthErrorCode.USER_NOT_CONFIRMED: "Email not verified",
    AuthErrorCode.USERNAME_EXISTS: "An account with this email already exists",
    AuthErrorCode.INVALID_PASSWORD: (
        "Password must be at least 8 characters long and contain uppercase, "
        "lowercase, and numbers"
    ),
    AuthErrorCode.INVALID_PARAMETER: "Invalid email format",
    AuthErrorCode.TOO_MANY_REQUESTS: "Too many failed attempts. Please wait a few minutes.",
    AuthErrorCode.LIMIT_EXCEEDED: "Attempt limit exceeded. Please try again later.",
    AuthErrorCode.UNKNOWN: "Authentication failed",
}

# Cognito exception names -> neutral codes
COGNITO_ERROR_CODES: dict[str, AuthErrorCode] = {
    "CodeMismatchException": AuthErrorCode.CODE_MISMATCH,
    "ExpiredCodeException": AuthErrorCode.EXPIRED_CODE,
    "UserNotFoundException": AuthErrorCode.USER_NOT_FOUND,
    "NotAuthorizedException": AuthErrorCode.NOT_AUTHORIZED,
    "UserNotConfirmedException": AuthErrorCode.USER_NOT_CONFIRMED,
    "UsernameExistsException": AuthErrorCode.USERNAME_EXISTS,
    "InvalidPasswordException": AuthErrorCode.INVALID_PASSWORD,
    "InvalidParameterException": AuthErrorCode.INVALID_PARAMETER,
    "TooManyRequestsException": AuthErrorCode.TOO_MANY_REQUESTS,
    "TooManyFailedAttemptsException": AuthErrorCode.TOO_MANY_REQUESTS,
    "LimitExceededException": AuthErrorCode.LIMIT_EXCEEDED,
}


class AuthError(BackendError):
    """Authentication failure carrying a user-facing message."""

    def __init__(self, code: AuthErrorCode, message: str | None = None) -> None:
        super().__init__(message or AUTH_ERROR_MESSAGES[code])
        self.code = code

    @property
    def needs_verification(self) -> bool:
        """True when the account exists but the email is unconfirmed."""
        return self.code == AuthErrorCode.USER_NOT_CONFIRMED

    @classmethod
    def from_provider(cls, error_name: str, message: str | None = None) -> "AuthError":
        """
        Build an AuthError from a provider exception name.

        Known names get the standard user-facing copy. Unknown names keep the
        provider message so nothing is lost.
        """
        code = COGNITO_ERROR_CODES.get(error_name)
        if code is None:
            return cls(AuthErrorCode.UNKNOWN, message or AUTH_ERROR_MESSAGES[AuthErrorCode.UNKNOWN])
        return cls(code)
