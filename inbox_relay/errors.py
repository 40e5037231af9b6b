"""
Error taxonomy shared by the store, reconciler, dispatcher and HTTP layer.

A lookup for an unknown conversation is not an error: store queries return
None and the HTTP queries answer with an empty result.
"""

from typing import Any, Optional


class InboxRelayError(Exception):
    """Base class for all inbox relay errors."""


class InvalidArgument(InboxRelayError):
    """A required field of an outbound send or management request is missing."""


class MalformedEvent(InboxRelayError):
    """Inbound webhook payload has an unrecognized top-level shape."""


class UpstreamError(InboxRelayError):
    """
    The messaging provider rejected or failed a send.

    `payload` is the provider's error body, kept verbatim for diagnostics.
    """

    def __init__(self, message: str, status_code: int = 502, payload: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload if payload is not None else {}
