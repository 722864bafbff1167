from __future__ import annotations


class FacturadorError(Exception):
    """Base error. ``status_code`` mirrors the HTTP status a request surface would answer."""

    status_code: int = 500

    def __init__(self, message: str, response: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.response = response or {}


class ValidationError(FacturadorError):
    """Input or state does not allow the operation. Nothing was persisted."""

    status_code = 400


class CapacityError(ValidationError):
    """No active numbering block for the branch/type, or the block is exhausted."""


class NotFoundError(FacturadorError):
    status_code = 404


class ConflictError(FacturadorError):
    """The operation clashes with existing state (double void, credit-note cap)."""

    status_code = 409


class SigningError(FacturadorError):
    """The signing service failed or refused to sign the document."""

    status_code = 502


class TransmissionError(FacturadorError):
    """MH could not be reached or answered with an HTTP error."""

    status_code = 502


class MHAuthError(TransmissionError):
    """MH refused the credentials or the auth endpoint failed."""
