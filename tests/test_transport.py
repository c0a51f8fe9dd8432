import asyncio

import pytest

from asr.transport import SpeechTransport, TokenAssembler, build_config_message, normalize_speaker
from config import settings
from nlp.exceptions import TransportError


def _token(text, speaker="1", final=False, start=None, end=None):
    token = {"text": text, "speaker": speaker, "is_final": final}
    if start is not None:
        token["start_ms"] = start
    if end is not None:
        token["end_ms"] = end
    return token


def _summary(events):
    return [(e.speaker, e.text, e.is_final) for e in events]


def test_normalize_speaker():
    assert normalize_speaker("1") == "spk1"
    assert normalize_speaker(2) == "spk2"
    assert normalize_speaker("spkA") == "spkA"
    assert normalize_speaker("unknown") is None
    assert normalize_speaker(None) is None


def test_interim_tokens_reset_each_response():
    assembler = TokenAssembler()
    assert _summary(assembler.feed({"tokens": [_token("こん")]})) == [("spk1", "こん", False)]
    events = assembler.feed({"tokens": [_token("こんにちは", final=True)]})
    assert _summary(events) == [("spk1", "こんにちは", True)]


def test_final_tokens_accumulate_with_interim_tail():
    assembler = TokenAssembler()
    assembler.feed({"tokens": [_token("今日は", final=True, start=100, end=400)]})
    events = assembler.feed({"tokens": [_token("よろしく", start=500, end=900)]})
    assert _summary(events) == [("spk1", "今日はよろしく", False)]
    assert (events[0].start_ms, events[0].end_ms) == (100, 900)


def test_speaker_change_in_one_response_is_attributed_correctly():
    assembler = TokenAssembler()
    events = assembler.feed({"tokens": [
        _token("前半", speaker="1", final=True),
        _token("後半", speaker="2"),
    ]})
    assert _summary(events) == [("spk1", "前半", True), ("spk2", "後半", False)]


def test_end_token_emits_empty_final():
    assembler = TokenAssembler()
    assembler.feed({"tokens": [_token("えっと", speaker="2")]})
    events = assembler.feed({"tokens": [{"text": "<end>", "is_final": True}]})
    assert _summary(events)[-1] == ("spk2", "", True)
    assert assembler.flush() == []


def test_flush_emits_remaining_finals():
    assembler = TokenAssembler()
    assembler.feed({"tokens": [_token("最後", final=True), _token("途中")]})
    assert _summary(assembler.flush()) == [("spk1", "最後", True)]


def test_tokens_without_speaker_are_dropped():
    assembler = TokenAssembler()
    assert assembler.feed({"tokens": [{"text": "noise", "is_final": True}]}) == []
    assert assembler.feed({}) == []


def test_config_message_carries_context():
    message = build_config_message("key", context="決済 クラウド")
    assert message["api_key"] == "key"
    assert message["audio_format"] == "pcm_s16le"
    assert message["enable_speaker_diarization"] is True
    assert message["context"] == "決済 クラウド"


def test_connect_without_key_fails(monkeypatch):
    monkeypatch.setattr(settings, "STT_API_KEY", "")
    transport = SpeechTransport()
    with pytest.raises(TransportError):
        asyncio.run(transport.connect())
    assert not transport.connected
