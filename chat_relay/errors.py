"""Error taxonomy shared by adapters, the orchestrator and the API layer."""

from __future__ import annotations

from typing import Optional

import requests


class LLMError(Exception):
    """Base class for failures raised while talking to a model provider."""

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message
        self.cause = cause


class CancelledError(LLMError):
    """The task was cancelled by the caller; never shown as an error."""


class NetworkError(LLMError):
    """Timeout or connection failure."""


class ServerError(LLMError):
    """The provider answered with a non-success status or an error event."""

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class ProtocolError(LLMError):
    """A single stream chunk could not be decoded."""


class UnknownError(LLMError):
    """Anything that does not fit the categories above."""


class SessionBusyError(RuntimeError):
    """Raised when a session already has an active streaming task."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' already has an active generation")
        self.session_id = session_id


class ProviderNotFoundError(KeyError):
    """Raised when a provider id is not configured."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(provider_id)
        self.provider_id = provider_id

    def __str__(self) -> str:
        return f"Provider '{self.provider_id}' is not configured"


def classify(exc: BaseException) -> LLMError:
    """Map an arbitrary exception onto the LLMError taxonomy."""
    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, requests.exceptions.Timeout):
        return NetworkError("Request timed out", cause=exc)
    if isinstance(exc, requests.exceptions.ConnectionError):
        return NetworkError("Connection failed", cause=exc)
    if isinstance(exc, requests.exceptions.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return ServerError(f"HTTP {status}", status_code=status, cause=exc)
    if isinstance(exc, requests.exceptions.RequestException):
        return NetworkError(str(exc) or "Request failed", cause=exc)
    return UnknownError(str(exc) or exc.__class__.__name__, cause=exc)


def is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, CancelledError)


def user_message(error: BaseException) -> str:
    """Return the human-readable text shown in a system error turn."""
    err = classify(error)
    if isinstance(err, CancelledError):
        return ""
    if isinstance(err, NetworkError):
        return "Network connection failed. Please check your network settings."
    if isinstance(err, ServerError):
        if err.status_code in (401, 403):
            return "The API key is invalid or expired. Please check the provider settings."
        if err.status_code == 429:
            return "Too many requests. Please wait a moment and try again."
        if err.status_code is not None and 400 <= err.status_code < 500:
            return "The request was rejected by the provider. Please reset the conversation and try again."
        return "The AI provider is temporarily unavailable. Please try again later."
    if isinstance(err, ProtocolError):
        return "The provider returned a response that could not be read."
    return f"An unexpected error occurred: {err.message or err}"
