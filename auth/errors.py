"""
auth/errors.py -- Operational error taxonomy for the auth workflows.

Every AuthError is an expected, user-facing failure. The API layer renders
its message verbatim with the matching status code. Anything that is not an
AuthError is treated as an internal fault and surfaced as a generic 500.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for failures that are safe to show to the caller."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(AuthError):
    """Malformed input or an invalid/expired one-time code."""

    status_code = 400


class UnauthorizedError(AuthError):
    """Bad credentials, unverified login, or an unusable token."""

    status_code = 401


class NotFoundError(AuthError):
    status_code = 404


class ConflictError(AuthError):
    status_code = 409
