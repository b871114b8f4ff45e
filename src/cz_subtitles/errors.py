"""Failure taxonomy for the titulky client.

Expected conditions (captcha gate, bad credentials, a missing download link)
travel as result variants; exceptions are reserved for failures that abort
the whole request chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class FailureKind(str, Enum):
    BAD_CREDENTIALS = "bad_credentials"
    TRANSIENT_NETWORK = "transient_network"
    CAPTCHA_REQUIRED = "captcha_required"
    LINK_NOT_FOUND = "link_not_found"
    ARCHIVE_TOO_SMALL = "archive_too_small"
    NO_SUBTITLE_FILE_IN_ARCHIVE = "no_subtitle_file_in_archive"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Retryable:
    kind: FailureKind
    detail: str = ""


@dataclass(frozen=True)
class Terminal:
    kind: FailureKind
    detail: str = ""


Result = Union[Ok[Any], Retryable, Terminal]


class TitulkyError(Exception):
    """Base class for titulky client failures."""


class SessionError(TitulkyError):
    """Login could not be established; aborts the request chain."""

    kind: FailureKind = FailureKind.TRANSIENT_NETWORK


class BadCredentials(SessionError):
    kind = FailureKind.BAD_CREDENTIALS


class TransientNetworkFailure(SessionError):
    kind = FailureKind.TRANSIENT_NETWORK


class CaptchaRequired(TitulkyError):
    """The site substituted a captcha challenge for the expected page."""

    kind = FailureKind.CAPTCHA_REQUIRED

    def __init__(self, message: str = "Captcha required", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


def session_error_for(kind: FailureKind, detail: str) -> SessionError:
    if kind is FailureKind.BAD_CREDENTIALS:
        return BadCredentials(detail or "Bad credentials")
    return TransientNetworkFailure(detail or "Network failure")
