"""Shared error codes and user-facing messages."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
INVALID_ENDPOINT = "INVALID_ENDPOINT"
STREAM_ERROR = "STREAM_ERROR"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access is required to use voice input.",
    TRANSCRIPTION_FAILED: "Could not transcribe the recording, please retry.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    INVALID_ENDPOINT: "The Concierge server is not configured.",
    STREAM_ERROR: "The response was interrupted.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
}

EMPTY_RESPONSE_MESSAGE = (
    "Sorry, I wasn't able to get a response from the Concierge Service. \n\n"
    "Please try again later."
)


def classify_exception(exc: BaseException) -> tuple[str, bool]:
    """Map a transport or SDK exception to an error code and retryable flag."""
    low = str(exc).lower()
    if "401" in low or "403" in low or "auth" in low or "api key" in low:
        return AUTH_FAILED, False
    if (
        isinstance(exc, (ConnectionError, TimeoutError))
        or "timeout" in low
        or "timed out" in low
        or "network" in low
        or "connection" in low
    ):
        return NETWORK_ERROR, True
    return STREAM_ERROR, True
