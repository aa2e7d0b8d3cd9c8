"""Shared error classes for the grant verification pipeline."""

from __future__ import annotations


class VerificationError(RuntimeError):
    """Base exception raised by the verification pipeline."""

    def __init__(self, message: str, code: str = "VERIFICATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


class VerificationInputError(VerificationError):
    """Raised when a verification request is missing required input."""


class GrantNotFoundError(VerificationError):
    """Raised when the requested grant has no stored record."""


class VerificationConfigurationError(VerificationError):
    """Raised when service credentials required for a run are absent."""


class GrantStoreError(VerificationError):
    """Raised when the grant store fails to read or write."""


class TrustTableError(VerificationError):
    """Raised when the domain trust tables cannot be loaded."""
