"""
coordinator.py — Jia conversation state machine
================================================
ConversationCoordinator owns the one ConversationState and decides, at
every instant, whether the companion is capturing speech, waiting on the
model, or speaking.  Three asynchronous sources feed it:

  • CaptureSession          finished user speech (countdown / platform end)
  • ResponseStreamConsumer  sentences of the streamed reply
  • ProactiveMonitor        unprompted scene observations

Turn lifecycle
--------------
    LISTENING ──submit_turn──► SENDING ──headers──► THINKING
        ▲                                              │
        │                    first sentence            ▼
        └──────── speech drained / barge-in ◄──── SPEAKING
        └──────── empty or [SILENT] reply ◄─────── THINKING

Resource rules
--------------
  • At most one capture session and one outstanding request exist at a time.
    A capture session is only begun from LISTENING with no request in flight
    and nothing left to speak.
  • Every path that can legally re-enter LISTENING calls
    maybe_resume_listening(), which schedules at most one settle-delayed
    capture start and re-checks eligibility when it fires.
  • Every turn gets a token; stop() and barge-in retire it, so callbacks
    from a cancelled turn are dropped.
  • An illegal phase change is logged and handled as stop().
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from config import VoiceEngineConfig

from apps.pipeline.backend import ChatBackend
from apps.pipeline.camera import Frame, FrameSource
from apps.pipeline.capture import CaptureSession, Recognizer
from apps.pipeline.errors import (
    CaptureFatal,
    CaptureUnsupported,
    InvalidTransition,
    StreamTransportError,
)
from apps.pipeline.proactive import ProactiveMonitor
from apps.pipeline.response_stream import ResponseStreamConsumer, StreamResult
from apps.pipeline.speech_queue import SpeechOutputQueue, Synthesizer
from apps.pipeline.state import ConversationPhase, ConversationState, Message, check_transition

log = logging.getLogger("jia.coordinator")

TRANSPORT_ERROR_MESSAGE = "I couldn't reach the assistant. Please try again."


class ConversationCoordinator:
    def __init__(
        self,
        config: VoiceEngineConfig,
        *,
        recognizer: Optional[Recognizer],
        synthesizer: Synthesizer,
        backend: ChatBackend,
        frame_source: Optional[FrameSource] = None,
        state: Optional[ConversationState] = None,
    ):
        self.config = config
        self.state = state if state is not None else ConversationState()
        self._synth = synthesizer
        self._backend = backend
        self._frames = frame_source

        self.speech = SpeechOutputQueue(synthesizer, on_drained=self._on_speech_drained)
        self.capture = CaptureSession(
            recognizer,
            self.state.transcript,
            self,
            language=config.deepgram.language,
            timing=config.timing,
            on_scale=self._on_ring_scale,
        )
        self.proactive = ProactiveMonitor(
            interval_sec=config.timing.proactive_interval_sec,
            prompt=config.observation_prompt,
            is_idle=self.is_idle_between_turns,
            capture_frame=self.capture_frame,
            submit=self.submit_turn,
        )

        self._turn_task: Optional[asyncio.Task] = None
        self._turn_token = 0
        self._resume_handle: Optional[asyncio.TimerHandle] = None

    # ── Observable state ────────────────────────────────────────────────────

    @property
    def phase(self) -> ConversationPhase:
        return self.state.phase

    @property
    def capture_active(self) -> bool:
        return self.capture.active

    def is_idle_between_turns(self) -> bool:
        """Eligible for a proactive probe: listening, nothing pending, no user speech."""
        st = self.state
        return (
            st.active
            and st.phase is ConversationPhase.LISTENING
            and not st.request_in_flight
            and self.speech.pending == 0
            and not self.capture.has_speech
        )

    # ── Phase changes ───────────────────────────────────────────────────────

    def _set_phase(self, new: ConversationPhase) -> None:
        prev = self.state.phase
        self.state.phase = new
        log.info(
            "event=state_change turn_id=%d from=%s to=%s",
            self.state.turn_id, prev.value, new.value,
        )

    def _transition(self, new: ConversationPhase) -> bool:
        """Apply a legal phase change.  An illegal one stops the conversation."""
        old = self.state.phase
        if old is new:
            return True
        try:
            check_transition(old, new)
        except InvalidTransition as exc:
            log.error("event=invalid_transition turn_id=%d error=%s", self.state.turn_id, exc)
            self.stop()
            return False
        self._set_phase(new)
        return True

    # ── Session lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        st = self.state
        if st.active:
            log.debug("event=start_ignored reason=already_active")
            return
        st.active = True
        st.reset_session()
        log.info("event=conversation_start")
        if not self._transition(ConversationPhase.LISTENING):
            return
        self.proactive.arm()
        self.maybe_resume_listening()

    def stop(self) -> None:
        """Universal reset.  Ends in IDLE from any phase; safe to repeat."""
        st = self.state
        was_active = st.active
        st.active = False

        self._cancel_resume()
        self.capture.abort()
        self.speech.flush_all()
        self.proactive.disarm()
        self._cancel_turn()

        st.request_in_flight = False
        st.history.clear()
        st.transcript.reset()
        st.current_reply_text = ""
        st.ring_scale = 1.0
        if st.phase is not ConversationPhase.IDLE:
            self._set_phase(ConversationPhase.IDLE)
        if was_active:
            log.info("event=conversation_stop turn_id=%d", st.turn_id)

    def _cancel_turn(self) -> None:
        self._turn_token += 1
        task = self._turn_task
        self._turn_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.info("event=request_cancelled turn_id=%d", self.state.turn_id)

    def _turn_is_current(self, token: int) -> bool:
        return token == self._turn_token and self.state.active

    # ── Resumption ──────────────────────────────────────────────────────────

    def _can_resume(self) -> bool:
        st = self.state
        return (
            st.active
            and st.phase is ConversationPhase.LISTENING
            and not st.request_in_flight
            and self.speech.pending == 0
            and not self.capture.active
        )

    def maybe_resume_listening(self) -> None:
        """Schedule a capture start after the settle delay, once.

        Called from every site that can re-enter LISTENING; extra calls while
        a start is already scheduled, or while ineligible, do nothing.
        """
        if self._resume_handle is not None or not self._can_resume():
            return
        loop = asyncio.get_running_loop()
        self._resume_handle = loop.call_later(
            self.config.timing.settle_delay_sec, self._resume_now,
        )

    def _cancel_resume(self) -> None:
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None

    def _resume_now(self) -> None:
        self._resume_handle = None
        if not self._can_resume():
            return
        try:
            self.capture.begin()
        except CaptureUnsupported as exc:
            self.state.error = str(exc)
            log.error("event=capture_unsupported error=%s", exc)
        except CaptureFatal as exc:
            self.state.error = f"Speech recognition error: {exc.code}"
            log.error("event=capture_start_failed code=%s detail=%s", exc.code, exc.detail)

    # ── Turn submission ─────────────────────────────────────────────────────

    def capture_frame(self) -> Optional[Frame]:
        if self._frames is None:
            return None
        try:
            return self._frames.capture_frame()
        except Exception as exc:
            log.warning("event=frame_capture_failed error=%s", exc)
            return None

    def submit_turn(
        self,
        text: str,
        frame: Optional[Frame] = None,
        is_proactive: bool = False,
    ) -> bool:
        """Single entry point for finished user speech and proactive probes.

        Returns False when the submission is rejected.
        """
        st = self.state
        kind = "proactive" if is_proactive else "user"
        text = (text or "").strip()

        if not st.active:
            log.debug("event=submit_rejected kind=%s reason=inactive", kind)
            return False
        if st.request_in_flight or st.busy:
            log.info("event=submit_rejected kind=%s reason=request_outstanding", kind)
            return False
        if is_proactive and not self.is_idle_between_turns():
            log.debug("event=submit_rejected kind=proactive reason=not_idle")
            return False
        if st.phase is not ConversationPhase.LISTENING:
            log.info("event=submit_rejected kind=%s reason=phase phase=%s", kind, st.phase.value)
            return False
        if not text:
            log.debug("event=submit_rejected kind=%s reason=empty", kind)
            return False

        self._cancel_resume()
        self.capture.abort()
        st.transcript.reset()
        st.current_reply_text = ""
        if not is_proactive:
            st.error = ""
            st.history.append(Message("user", text))
            messages: Sequence[Message] = list(st.history)
        else:
            # The probe is sent once and never stored.
            messages = [*st.history, Message("user", text)]

        st.turn_id += 1
        if not self._transition(ConversationPhase.SENDING):
            return False
        st.request_in_flight = True
        log.info(
            "event=turn_submitted turn_id=%d kind=%s chars=%d image=%s",
            st.turn_id, kind, len(text), frame is not None,
        )
        self._synth.chime()

        self._turn_token += 1
        token = self._turn_token
        self._turn_task = asyncio.create_task(
            self._run_turn(token, messages, frame, is_proactive),
            name=f"turn_{st.turn_id}",
        )
        return True

    async def _run_turn(
        self,
        token: int,
        messages: Sequence[Message],
        frame: Optional[Frame],
        is_proactive: bool,
    ) -> None:
        consumer = ResponseStreamConsumer(
            sentinel=self.config.silence_sentinel,
            on_segment=lambda segment: self._on_segment(token, segment),
            on_delta=lambda full_text: self._on_delta(token, full_text),
        )
        image = frame.encoded if frame is not None else None
        try:
            async with self._backend.stream(messages, image) as chunks:
                if not self._turn_is_current(token):
                    return
                if not self._transition(ConversationPhase.THINKING):
                    return
                result = await consumer.consume(chunks)
            if not result.done:
                # Body closed before [DONE]: the relay or the link gave up.
                raise StreamTransportError("Relay stream ended without a terminator")
        except asyncio.CancelledError:
            raise
        except StreamTransportError as exc:
            if self._turn_is_current(token):
                self._fail_turn(exc, is_proactive)
            return
        except Exception as exc:
            if self._turn_is_current(token):
                log.error("event=turn_error turn_id=%d error=%s", self.state.turn_id, exc, exc_info=True)
                self._fail_turn(exc, is_proactive)
            return

        if self._turn_is_current(token):
            self._finish_turn(result, is_proactive)

    def _on_delta(self, token: int, full_text: str) -> None:
        if not self._turn_is_current(token):
            return
        if self.config.silence_sentinel.startswith(full_text.strip()):
            return
        self.state.current_reply_text = full_text

    def _on_segment(self, token: int, segment: str) -> None:
        if not self._turn_is_current(token):
            return
        if self.state.phase is ConversationPhase.THINKING:
            if not self._transition(ConversationPhase.SPEAKING):
                return
        if self.state.phase is not ConversationPhase.SPEAKING:
            return
        self.speech.enqueue(segment)

    def _finish_turn(self, result: StreamResult, is_proactive: bool) -> None:
        st = self.state
        st.request_in_flight = False
        self._turn_task = None

        reply = result.reply
        silent = not reply or reply == self.config.silence_sentinel
        if not silent:
            st.history.append(Message("assistant", reply))
        log.info(
            "event=turn_complete turn_id=%d kind=%s segments=%d silent=%s",
            st.turn_id, "proactive" if is_proactive else "user", result.segment_count, silent,
        )

        if result.segment_count == 0:
            st.current_reply_text = ""
            if not self._transition(ConversationPhase.LISTENING):
                return
        elif self.speech.pending == 0 and st.phase is ConversationPhase.SPEAKING:
            # Everything was already spoken before the stream closed.
            st.current_reply_text = ""
            if not self._transition(ConversationPhase.LISTENING):
                return
        self.maybe_resume_listening()

    def _fail_turn(self, exc: Exception, is_proactive: bool) -> None:
        st = self.state
        st.request_in_flight = False
        self._turn_task = None
        self.speech.flush_all()
        st.current_reply_text = ""
        if is_proactive:
            log.info("event=proactive_turn_failed turn_id=%d error=%s", st.turn_id, exc)
        else:
            st.error = TRANSPORT_ERROR_MESSAGE
            log.warning("event=turn_failed turn_id=%d error=%s", st.turn_id, exc)
        if not self._transition(ConversationPhase.LISTENING):
            return
        self.maybe_resume_listening()

    # ── Speech output ───────────────────────────────────────────────────────

    def _on_speech_drained(self) -> None:
        st = self.state
        if not st.active or st.request_in_flight:
            return
        if st.phase is ConversationPhase.SPEAKING:
            st.current_reply_text = ""
            if not self._transition(ConversationPhase.LISTENING):
                return
        self.maybe_resume_listening()

    def _on_ring_scale(self, value: float) -> None:
        self.state.ring_scale = value

    # ── Orb gesture ─────────────────────────────────────────────────────────

    def on_orb_activate(self) -> None:
        """Barge-in while speaking; send-now while speech is captured."""
        st = self.state
        if not st.active:
            return
        if st.phase is ConversationPhase.SPEAKING:
            log.info("event=barge_in turn_id=%d pending=%d", st.turn_id, self.speech.pending)
            self.speech.flush_all()
            if st.request_in_flight:
                # The cut-short reply is never stored.
                self._cancel_turn()
                st.request_in_flight = False
            st.current_reply_text = ""
            if not self._transition(ConversationPhase.LISTENING):
                return
            self.maybe_resume_listening()
        elif self.capture.has_speech:
            text = self.capture.finish_now()
            log.info("event=send_now chars=%d", len(text))
            if not self.submit_turn(text, self.capture_frame()):
                self.maybe_resume_listening()

    # ── Capture listener ────────────────────────────────────────────────────

    def on_capture_activity(self, text: str) -> None:
        log.debug("event=user_speaking chars=%d", len(text))

    def on_capture_complete(self, text: str) -> None:
        if not self.submit_turn(text, self.capture_frame()):
            self.maybe_resume_listening()

    def on_capture_ended(self, text: str) -> None:
        if text and not self.state.request_in_flight:
            if self.submit_turn(text, self.capture_frame()):
                return
        self.maybe_resume_listening()

    def on_capture_error(self, error: CaptureFatal) -> None:
        self.state.error = f"Speech recognition error: {error.code}"
