"""Error taxonomy for the relay.

``TransportError`` and ``HttpStatusError`` come out of a single HTTP attempt
and are what the retry executor inspects.  ``DecodeError`` is raised by a
strict tool-call flush.  ``ConfigError`` is raised before any network call.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by llm_relay."""


class ConfigError(RelayError):
    """Missing API key, bad base URL, unknown model or api mode."""


class TransportError(RelayError):
    """Network-level failure (connect, read, timeout)."""

    def __init__(self, message: str, url: str = "") -> None:
        self.url = url
        super().__init__(f"{message}\nURL: {url}" if url else message)


class HttpStatusError(RelayError):
    """Non-2xx HTTP response."""

    def __init__(self, status: int, body: str = "", url: str = "", label: str = "API") -> None:
        self.status = status
        self.body = body
        self.url = url
        detail = f"\n{body}" if body else ""
        super().__init__(f"{label} error: [{status}]{detail}\nURL: {url}")

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


class DecodeError(RelayError):
    """A tool call could not be completed into valid JSON."""


class RequestCancelled(RelayError):
    """The caller cancelled while a retry was waiting."""
