import json

import pytest
from pydantic import ValidationError

from config import SILENCE_SENTINEL, VoiceEngineConfig


def test_defaults():
    cfg = VoiceEngineConfig()

    assert cfg.timing.settle_delay_sec == 0.3
    assert cfg.timing.speech_pause_sec == 0.5
    assert cfg.timing.countdown_sec == 2.0
    assert cfg.timing.proactive_interval_sec == 25.0
    assert cfg.silence_sentinel == SILENCE_SENTINEL == "[SILENT]"
    assert cfg.system_prompt.rstrip().endswith("[SILENT])")
    assert cfg.groq.max_tokens == 150
    assert set(cfg.vision_prompts) == {"general", "reading", "describe", "safety", "voiceQuestion"}


def test_load_missing_or_unset_path_gives_defaults(tmp_path):
    assert VoiceEngineConfig.load(None) == VoiceEngineConfig()
    assert VoiceEngineConfig.load(tmp_path / "absent.json") == VoiceEngineConfig()


def test_load_invalid_file_gives_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    assert VoiceEngineConfig.load(path) == VoiceEngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "jia.json"
    cfg = VoiceEngineConfig().merge_patch({"timing": {"countdown_sec": 3.0}})

    cfg.save(path)

    assert VoiceEngineConfig.load(path).timing.countdown_sec == 3.0
    assert "utterance_end_ms" not in json.loads(path.read_text(encoding="utf-8"))["deepgram"]


def test_merge_patch_is_deep_and_leaves_original_alone():
    cfg = VoiceEngineConfig()

    patched = cfg.merge_patch({"timing": {"speech_pause_sec": 0.8}, "groq": {"tts_voice": "tara"}})

    assert patched.timing.speech_pause_sec == 0.8
    assert patched.timing.countdown_sec == 2.0
    assert patched.groq.tts_voice == "tara"
    assert patched.groq.model == cfg.groq.model
    assert cfg.timing.speech_pause_sec == 0.5


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        VoiceEngineConfig().merge_patch({"timing": {"countdown_sec": 0}})
