"""
config.py — Jia Voice Companion · Runtime Configuration
========================================================
Pydantic models for every tunable parameter across the device loop and the
relay.  Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, chat model + vision prompts
  • bot.py     — timing, capture, synthesis and camera settings for the
                 conversation coordinator
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("jia.config")

# ---------------------------------------------------------------------------
# Prompts (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

SILENCE_SENTINEL = "[SILENT]"

DEFAULT_SYSTEM_PROMPT = f"""\
You are Jia, a warm and caring AI companion for visually impaired people. You speak naturally, \
like a trusted friend who happens to be their eyes.

Your personality:
- Warm, calm, and reassuring
- Proactive: if you notice something important, say it without being asked
- Concise: short natural sentences, not paragraphs
- Never say "I can see in the image", just describe like you're there

Your job:
- Continuously describe the environment as it changes
- Warn about hazards immediately: "Watch out, there are stairs just ahead"
- Guide navigation: "There's a door on your right", "The hallway is clear ahead"
- Answer questions conversationally, using what you can see
- Confirm when the user has completed a task: "Good, you've made it through the door"
- Keep track of context across the whole conversation

Response style:
- Max 2-3 sentences per turn unless asked for more
- Speak in present tense like you're narrating live
- If nothing changed and nothing to say, stay silent (respond with exactly: {SILENCE_SENTINEL})
"""

DEFAULT_OBSERVATION_PROMPT = (
    "Observe the current scene. If there is anything important, dangerous, or notably "
    f"different, mention it naturally. Otherwise respond with {SILENCE_SENTINEL}."
)

DEFAULT_VISION_PROMPTS: dict[str, str] = {
    "general": (
        "Describe what you see in this image in detail. Focus on objects, people, text, and any "
        "important visual elements. Be specific and helpful for someone who cannot see the image."
    ),
    "reading": (
        "Extract and read all visible text from this image. Maintain the reading order and "
        "formatting. If there's no text, say 'No readable text found.'"
    ),
    "describe": (
        "What is in this image? Give a clear, concise description focusing on the main subject "
        "or scene."
    ),
    "safety": (
        "You are a mobility safety assistant. Identify immediate hazards for someone walking right "
        "now (stairs up/down, curbs, drop-offs, obstacles, vehicles, wet floor, glass doors, "
        "crowds). Start with \"DANGER:\" only if urgent risk is present in the next few steps. If "
        "not urgent, start with \"SAFE:\" and give short guidance."
    ),
    "voiceQuestion": (
        "Answer the user question about this scene in plain language. If the answer depends on "
        "uncertain details, say what is uncertain."
    ),
}


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class TimingConfig(BaseModel):
    """Conversation loop timers (all seconds)."""
    settle_delay_sec: float = Field(default=0.3, ge=0.0, le=5.0, description="Delay before a new capture session opens")
    speech_pause_sec: float = Field(default=0.5, ge=0.0, le=5.0, description="Quiet period before the countdown starts")
    countdown_sec: float = Field(default=2.0, gt=0.0, le=30.0, description="Countdown from full ring to auto-submit")
    countdown_tick_sec: float = Field(default=1 / 60, gt=0.0, le=1.0, description="Countdown sampling tick")
    proactive_interval_sec: float = Field(default=25.0, gt=0.0, le=3600.0, description="Proactive scene check interval")
    activity_ring_scale: float = Field(default=1.4, ge=1.0, le=3.0, description="Ring scale shown while speech is active")


class RelayConfig(BaseModel):
    """Where the device reaches the chat relay."""
    base_url: str = Field(default="http://127.0.0.1:8000", description="Relay base URL")
    chat_stream_path: str = Field(default="/api/chat-stream", description="Streaming chat endpoint")


class GroqConfig(BaseModel):
    """Groq chat + speech parameters (relay chat, device TTS)."""
    model: str = Field(default="meta-llama/llama-4-scout-17b-16e-instruct", description="Vision-capable chat model ID")
    max_tokens: int = Field(default=150, ge=1, description="Max response tokens")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    tts_model: str = Field(default="canopylabs/orpheus-v1-english", description="Speech synthesis model")
    tts_voice: str = Field(default="troy", description="Synthetic voice name")


class DeepgramConfig(BaseModel):
    """Deepgram live recognition parameters."""
    model: str = Field(default="nova-3", description="Deepgram model")
    language: str = Field(default="en-US", description="Recognition language")
    interim_results: bool = Field(default=True, description="Stream partial results")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Silence endpointing (ms)")
    utterance_end_ms: Optional[int] = Field(default=None, ge=1000, le=5000, description="Utterance end timeout (ms)")
    sample_rate: int = Field(default=16000, description="Microphone sample rate")


class CameraConfig(BaseModel):
    """OpenCV frame capture."""
    device_index: int = Field(default=0, ge=0, description="cv2.VideoCapture device index")
    jpeg_quality: int = Field(default=90, ge=10, le=100, description="JPEG encode quality")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceEngineConfig(BaseModel):
    """Complete runtime configuration for the companion."""
    timing: TimingConfig = Field(default_factory=TimingConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    groq: GroqConfig = Field(default_factory=GroqConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    camera: CameraConfig = Field(default_factory=CameraConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System instruction prepended to every request")
    observation_prompt: str = Field(default=DEFAULT_OBSERVATION_PROMPT, description="Proactive scene probe")
    silence_sentinel: str = Field(default=SILENCE_SENTINEL, description="Reply token meaning 'say nothing'")
    vision_prompts: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_VISION_PROMPTS))

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path | None) -> "VoiceEngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        if not path:
            return cls()
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceEngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"timing": {"countdown_sec": 3.0}}
        only changes timing.countdown_sec, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceEngineConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
