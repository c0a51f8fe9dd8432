import asyncio
import re

import pytest

from conftest import FakeClock, FakeEmbedder, FakeLLM, GatedLLM
from asr.pipeline import InterviewPipeline, get_or_create_pipeline, get_pipeline, remove_pipeline
from core.types import FileOrText, PreparationData
from nlp.exceptions import IdentificationError, LLMError

SCRIPT = "Q: 自己紹介をお願いします\nA: 山田と申します。"


class Recorder:
    def __init__(self, pipeline):
        self.transcripts = []
        self.roles = []
        self.suggestions = []
        self.errors = []
        pipeline.bind(
            on_transcript=self.transcripts.append,
            on_role_resolved=self.roles.append,
            on_suggestion=self.suggestions.append,
            on_error=lambda kind, message: self.errors.append((kind, message)),
        )


def _pipeline(llm=None, clock=None):
    pipeline = InterviewPipeline("test", llm=llm or FakeLLM(), embedder=FakeEmbedder(), clock=clock or FakeClock())
    return pipeline, Recorder(pipeline)


async def _identify_spk1(pipeline, clock):
    await pipeline.load_preparation(PreparationData(
        interview_script=FileOrText(type="text", text=SCRIPT),
        company="サンプル",
    ))
    pipeline.ingest("spk1", "本日はありがとうございます", True)
    clock.advance(5)
    pipeline.ingest("spk2", "よろしくお願いします", True)
    clock.advance(61)
    pipeline.ingest("spk1", "経歴を教えてください？", True)
    await pipeline.wait_idle()
    clock.advance(5)


def test_identification_then_direct_script_answer():
    async def scenario():
        clock = FakeClock()
        pipeline, rec = _pipeline(clock=clock)
        await _identify_spk1(pipeline, clock)

        assert pipeline.identifier.state == "resolved"
        assert rec.roles[-1].interviewers == ["spk1"]
        roles = {u.speaker_id: u.role for u in pipeline.reconciler.final_utterances()}
        assert roles == {"spk1": "interviewer", "spk2": "candidate"}
        # 识别前的问题不会触发回答
        assert rec.suggestions == []

        pipeline.ingest("spk1", "自己紹介をお願いします", True)
        await pipeline.wait_idle()
        return pipeline, rec

    pipeline, rec = asyncio.run(scenario())
    assert len(rec.suggestions) == 1
    suggestion = rec.suggestions[0]
    assert suggestion.answer == "山田と申します。"
    assert suggestion.source == "script"
    assert pipeline.state.get_suggestions() == [suggestion]


def test_candidate_utterances_are_not_answered():
    async def scenario():
        clock = FakeClock()
        pipeline, rec = _pipeline(clock=clock)
        await _identify_spk1(pipeline, clock)
        pipeline.ingest("spk2", "自己紹介をお願いします", True)
        await pipeline.wait_idle()
        return rec

    assert asyncio.run(scenario()).suggestions == []


def test_non_question_is_skipped_and_counted():
    async def scenario():
        clock = FakeClock()
        pipeline, rec = _pipeline(llm=FakeLLM(needs_answer="いいえ"), clock=clock)
        await _identify_spk1(pipeline, clock)
        pipeline.ingest("spk1", "なるほど", True)
        await pipeline.wait_idle()
        return pipeline, rec

    pipeline, rec = asyncio.run(scenario())
    assert rec.suggestions == []
    assert pipeline.state.stats["questions_skipped"] == 1


def test_generation_failure_reports_error():
    async def scenario():
        clock = FakeClock()
        pipeline, rec = _pipeline(llm=FakeLLM(generate=LLMError("quota")), clock=clock)
        await _identify_spk1(pipeline, clock)
        pipeline.ingest("spk1", "趣味は何ですか", True)
        await pipeline.wait_idle()
        return pipeline, rec

    pipeline, rec = asyncio.run(scenario())
    assert rec.errors == [("generation", "quota")]
    assert pipeline.state.stats["generation_errors"] == 1


def test_regenerate_replaces_suggestion_in_place():
    async def scenario():
        clock = FakeClock()
        llm = FakeLLM(generate="最初の回答")
        pipeline, rec = _pipeline(llm=llm, clock=clock)
        await _identify_spk1(pipeline, clock)
        pipeline.ingest("spk1", "趣味は何ですか", True)
        await pipeline.wait_idle()

        original = rec.suggestions[0]
        llm.replies["generate"] = "新しい回答"
        updated = await pipeline.regenerate(original.id)

        with pytest.raises(KeyError):
            await pipeline.regenerate("missing")
        return pipeline, original, updated

    pipeline, original, updated = asyncio.run(scenario())
    assert updated.id == original.id
    assert updated.answer == "新しい回答"
    assert [s.answer for s in pipeline.state.get_suggestions()] == ["新しい回答"]


def test_manual_toggle_publishes_roles():
    async def scenario():
        pipeline, rec = _pipeline()
        pipeline.ingest("spk1", "こんにちは", True)
        pipeline.ingest("spk2", "はい", False)
        pipeline.toggle_interviewer("spk2")
        await pipeline.wait_idle()
        return pipeline, rec

    pipeline, rec = asyncio.run(scenario())
    assert rec.roles[-1].interviewers == ["spk2"]
    assert pipeline.identifier.state == "resolved"
    assert {u.speaker_id: u.role for u in pipeline.reconciler.utterances()} == {
        "spk1": "candidate", "spk2": "interviewer",
    }


def test_reidentify_requires_enough_finals():
    async def scenario():
        pipeline, _ = _pipeline()
        pipeline.ingest("spk1", "こんにちは", True)
        with pytest.raises(IdentificationError):
            pipeline.reidentify()
        return pipeline

    assert asyncio.run(scenario()).identifier.state == "collecting"


def test_export_transcript_labels_roles():
    async def scenario():
        clock = FakeClock()
        pipeline, _ = _pipeline(llm=FakeLLM(needs_answer="いいえ"), clock=clock)
        await _identify_spk1(pipeline, clock)
        return pipeline.export_transcript()

    text = asyncio.run(scenario())
    lines = text.split("\n\n")
    assert len(lines) == 3
    assert re.match(r"^\[\d{2}:\d{2}:\d{2}\] 面接官: 本日はありがとうございます$", lines[0])
    assert lines[1].endswith("あなた: よろしくお願いします")


def test_correct_utterance_emits_update():
    async def scenario():
        pipeline, rec = _pipeline()
        final = pipeline.ingest("spk1", "しぼうどうき", True)
        corrected = pipeline.correct_utterance(final.id, text="志望動機は？")
        return rec, corrected

    rec, corrected = asyncio.run(scenario())
    assert corrected.text == "志望動機は？"
    assert rec.transcripts[-1].text == "志望動機は？"


def test_reset_keeps_preparation():
    async def scenario():
        clock = FakeClock()
        pipeline, _ = _pipeline(clock=clock)
        await _identify_spk1(pipeline, clock)
        await pipeline.reset()
        return pipeline

    pipeline = asyncio.run(scenario())
    assert len(pipeline.reconciler) == 0
    assert pipeline.identifier.state == "unresolved"
    assert pipeline.state.get_suggestions() == []
    assert len(pipeline.matcher.pairs) == 1
    assert any(c.type == "interview_script" for c in pipeline.store.chunks)


def test_pipeline_registry():
    pipeline = get_or_create_pipeline("registry-test")
    assert get_or_create_pipeline("registry-test") is pipeline
    assert get_pipeline("registry-test") is pipeline
    assert remove_pipeline("registry-test") is pipeline
    assert get_pipeline("registry-test") is None


async def _wait_started(llm):
    while not llm.started.is_set():
        await asyncio.sleep(0.01)


async def _pipeline_with_suggestion():
    clock = FakeClock()
    pipeline, rec = _pipeline(clock=clock)
    await _identify_spk1(pipeline, clock)
    pipeline.ingest("spk1", "趣味は何ですか", True)
    await pipeline.wait_idle()
    return pipeline, rec, rec.suggestions[0]


def test_reset_cancels_background_regeneration():
    async def scenario():
        pipeline, rec, original = await _pipeline_with_suggestion()
        gated = GatedLLM()
        pipeline.agent.llm = gated

        task = pipeline.request_regenerate(original.id)
        await _wait_started(gated)
        await pipeline.reset()
        gated.release()
        await asyncio.sleep(0.05)
        return pipeline, rec, task

    pipeline, rec, task = asyncio.run(scenario())
    assert task.cancelled()
    assert len(rec.suggestions) == 1
    assert pipeline.state.get_suggestions() == []


def test_regeneration_finishing_after_reset_is_dropped():
    async def scenario():
        pipeline, rec, original = await _pipeline_with_suggestion()
        gated = GatedLLM()
        pipeline.agent.llm = gated

        pending = asyncio.get_running_loop().create_task(pipeline.regenerate(original.id))
        await _wait_started(gated)
        await pipeline.reset()
        gated.release()
        with pytest.raises(KeyError):
            await pending
        return pipeline, rec

    pipeline, rec = asyncio.run(scenario())
    assert len(rec.suggestions) == 1
    assert pipeline.state.get_suggestions() == []


def test_background_regeneration_reports_results_through_callbacks():
    async def scenario():
        pipeline, rec, original = await _pipeline_with_suggestion()
        with pytest.raises(KeyError):
            pipeline.request_regenerate("missing")

        pipeline.agent.llm = FakeLLM(generate="別の回答")
        pipeline.request_regenerate(original.id)
        await pipeline.wait_idle()

        pipeline.agent.llm = FakeLLM(generate=LLMError("quota"))
        pipeline.request_regenerate(original.id)
        await pipeline.wait_idle()
        return rec, original

    rec, original = asyncio.run(scenario())
    assert [s.answer for s in rec.suggestions] == ["generated answer", "別の回答"]
    assert rec.suggestions[-1].id == original.id
    assert rec.errors == [("generation", "quota")]
