"""
state.py — single authoritative conversation state
===================================================
Every timer, recognition and synthesis callback reads the conversation
through one ConversationState instance owned by the coordinator.  There is
no mirrored copy of any field.

Phases
------
    IDLE       conversation not started
    LISTENING  between turns, or a capture session is open
    SENDING    request issued, response headers not yet received
    THINKING   response streaming, nothing spoken yet
    SPEAKING   at least one segment queued for synthesis

Legal transitions (anything else is an InvalidTransition)
---------------------------------------------------------
    IDLE      → LISTENING   start()
    LISTENING → SENDING     submit_turn()
    SENDING   → THINKING    response headers received
    THINKING  → SPEAKING    first sentence produced
    THINKING  → LISTENING   empty / silent reply, or stream failure
    SENDING   → LISTENING   request failed before headers
    SPEAKING  → LISTENING   output drained, barge-in, or stream failure
    *         → IDLE        stop()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from apps.pipeline.errors import InvalidTransition


class ConversationPhase(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    SENDING = "SENDING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"


_LEGAL_TRANSITIONS: frozenset[tuple[ConversationPhase, ConversationPhase]] = frozenset({
    (ConversationPhase.IDLE, ConversationPhase.LISTENING),
    (ConversationPhase.LISTENING, ConversationPhase.SENDING),
    (ConversationPhase.SENDING, ConversationPhase.THINKING),
    (ConversationPhase.SENDING, ConversationPhase.LISTENING),
    (ConversationPhase.THINKING, ConversationPhase.SPEAKING),
    (ConversationPhase.THINKING, ConversationPhase.LISTENING),
    (ConversationPhase.SPEAKING, ConversationPhase.LISTENING),
})


def is_legal_transition(old: ConversationPhase, new: ConversationPhase) -> bool:
    if new is ConversationPhase.IDLE:
        return True
    return (old, new) in _LEGAL_TRANSITIONS


def check_transition(old: ConversationPhase, new: ConversationPhase) -> None:
    if not is_legal_transition(old, new):
        raise InvalidTransition(f"Invalid transition: {old.value} → {new.value}")


Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Transcript:
    """Accumulated recognition text for the open capture session."""
    final_text: str = ""
    interim_text: str = ""

    def merge(self, text: str, is_final: bool) -> None:
        if is_final:
            self.final_text = f"{self.final_text} {text.strip()}".strip()
            self.interim_text = ""
        else:
            self.interim_text = text.strip()

    @property
    def text(self) -> str:
        return f"{self.final_text} {self.interim_text}".strip()

    def reset(self) -> None:
        self.final_text = ""
        self.interim_text = ""

    def __bool__(self) -> bool:
        return bool(self.text)


@dataclass
class ConversationState:
    phase: ConversationPhase = ConversationPhase.IDLE
    active: bool = False
    request_in_flight: bool = False
    history: list[Message] = field(default_factory=list)
    transcript: Transcript = field(default_factory=Transcript)
    current_reply_text: str = ""
    ring_scale: float = 1.0
    error: str = ""
    turn_id: int = 0

    @property
    def current_user_text(self) -> str:
        return self.transcript.text

    @property
    def busy(self) -> bool:
        """True while a request is outstanding (SENDING / THINKING)."""
        return self.phase in (ConversationPhase.SENDING, ConversationPhase.THINKING)

    def reset_session(self) -> None:
        self.history.clear()
        self.transcript.reset()
        self.current_reply_text = ""
        self.ring_scale = 1.0
        self.error = ""
