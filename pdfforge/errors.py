# pdfforge/errors.py
from typing import Optional


GENERIC_FAILURE = "An unexpected error occurred while processing your file."
CORRUPT_PDF = "The uploaded file is corrupted or not a valid PDF document."


class ConversionError(Exception):
    """
    Base error for a failed job. Carries the HTTP status and the message that
    is safe to show to the client; `detail` is for the logs only.
    """

    status_code = 500

    def __init__(self, message: str = GENERIC_FAILURE, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def public_message(self) -> str:
        return self.message


class InvalidInput(ConversionError):
    status_code = 400


class PayloadTooLarge(InvalidInput):
    status_code = 413


class BackendUnavailable(ConversionError):
    """A required external tool is missing, timed out or could not start."""

    status_code = 500
