"""Error taxonomy shared by the stores, services and API layer."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    EXTERNAL_UNAVAILABLE = "external_unavailable"
    INVALID_INPUT = "invalid_input"


class TopVoicesError(Exception):
    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(TopVoicesError):
    kind = ErrorKind.NOT_FOUND


class InvalidInputError(TopVoicesError):
    kind = ErrorKind.INVALID_INPUT


class ExternalUnavailableError(TopVoicesError):
    kind = ErrorKind.EXTERNAL_UNAVAILABLE


class NotConfiguredError(ExternalUnavailableError):
    """A downstream service this call needs has no configuration."""
