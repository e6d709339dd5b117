"""Failure kinds raised and absorbed inside the conversation loop."""

from __future__ import annotations

from typing import Optional


class ConversationError(Exception):
    """Base class for every conversation-loop failure."""


class CaptureUnsupported(ConversationError):
    """The platform offers no speech-recognition capability."""


class CaptureTransient(ConversationError):
    """Ignorable recognition error (no speech detected, aborted by caller)."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class CaptureFatal(ConversationError):
    """Recognition error worth surfacing.  The session still resumes."""

    def __init__(self, code: str, detail: str = ""):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


# Recognition error codes that never reach the user.
TRANSIENT_CAPTURE_CODES: frozenset[str] = frozenset({"no-speech", "aborted"})


def classify_capture_error(code: str, detail: str = "") -> ConversationError:
    """Map a provider error code onto CaptureTransient or CaptureFatal."""
    if code in TRANSIENT_CAPTURE_CODES:
        return CaptureTransient(code)
    return CaptureFatal(code, detail)


class StreamTransportError(ConversationError):
    """The backend request failed or the response stream broke mid-way."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamMalformedFrame(ConversationError):
    """A stream frame that is neither valid JSON nor a terminator."""


class SynthesisError(ConversationError):
    """A spoken segment failed.  Counts as completed for draining."""


class InvalidTransition(ConversationError):
    """A phase change outside the legal transition table."""
