"""Typed failures raised by the ZATCA compliance engine."""

from __future__ import annotations

from typing import Any


class ZatcaError(Exception):
    """Base class for every compliance engine failure."""


class ValidationError(ZatcaError, ValueError):
    """Invoice or organization identity data is malformed or incomplete."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"ZATCA validation errors: {'; '.join(self.errors)}")


class ChainIntegrityError(ZatcaError):
    """The organization's hash chain has a missing or inconsistent link."""


class SigningError(ZatcaError):
    """Key, certificate or signing primitive failure."""


class AuthorityError(ZatcaError):
    """The ZATCA endpoint rejected the request. Carries its message verbatim."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        raw_errors: list[dict[str, Any]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.raw_errors = raw_errors
        super().__init__(message)


class TransportError(ZatcaError):
    """Network failure, timeout or 5xx reaching the authority. Always retryable."""

    retryable = True


class OnboardingStateError(ZatcaError):
    """Onboarding step requested from a state that does not allow it."""


class OnboardingConflictError(ZatcaError):
    """A concurrent onboarding step committed first; this one was discarded."""


class NotFoundError(ZatcaError, LookupError):
    """Organization, invoice or its ZATCA artifact does not exist for this tenant."""
