"""Exception types raised by the confab core."""

from __future__ import annotations


class ConfabError(Exception):
    """Base class for errors raised by the orchestration core."""


class ConfigurationError(ConfabError):
    """A feature was requested that the current settings cannot serve.

    Raised before any network call so the caller can show a setup hint.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class OCRError(ConfabError):
    """OCR preprocessing failed; identifies the OCR provider that failed."""

    def __init__(self, provider_name: str, cause: BaseException) -> None:
        super().__init__(f"OCR failed ({provider_name}): {cause}")
        self.provider_name = provider_name
        self.cause = cause


class CompactionError(ConfabError):
    """Summary generation produced unusable output."""
