import json

from core.types import FileOrText, PreparationData, QAPair, Utterance
from services.context_budget import ContextBudgeter
from services.knowledge_store import KnowledgeStore


def _utterance(uid, text, role="interviewer", is_final=True):
    return Utterance(
        id=uid,
        speaker_id="spk1",
        role=role,
        text=text,
        is_final=is_final,
        created_at="2024-01-01T10:00:00",
    )


def _store():
    store = KnowledgeStore(max_chunk_length=700)
    store.ingest(PreparationData(
        resume=FileOrText(type="text", text="大学で情報工学を専攻。"),
        career_history=FileOrText(type="text", text="前職では決済システムの設計を担当。"),
        company="サンプル",
    ))
    store.set_script([
        QAPair(question="前職ではどのような仕事を？", answer="決済基盤の開発リードでした。"),
        QAPair(question="志望動機を教えてください", answer="事業の成長性に惹かれました。"),
    ])
    return store


def test_snapshot_includes_everything_under_large_budget():
    budgeter = ContextBudgeter(_store(), max_total_chars=100000, conversation_turns=6, recent_memory=4)
    result = budgeter.build_snapshot("前職の仕事内容は？", [])

    assert not result.truncated
    assert result.used_chunk_ids[0] == "profile-summary"
    assert set(result.used_chunk_ids) == {
        "profile-summary", "resume-1", "career-1", "interview_script-1", "interview_script-2",
    }
    payload = json.loads(result.context)
    assert payload["context_version"] == 1
    assert payload["pending_question"] == "前職の仕事内容は？"
    assert result.total_chars == len(result.context)


def test_best_matching_script_chunk_is_ranked_first():
    budgeter = ContextBudgeter(_store(), max_total_chars=100000)
    result = budgeter.build_snapshot("前職の仕事内容は？", [])
    # 必选片段之后的第一个即得分最高的片段
    assert result.used_chunk_ids[1] == "interview_script-1"

    payload = json.loads(result.context)
    script = [c for c in payload["knowledge_chunks"] if c["id"] == "interview_script-1"][0]
    assert script["answer"] == "決済基盤の開発リードでした。"


def test_tiny_budget_keeps_mandatory_and_first_chunk_and_flags_truncation():
    budgeter = ContextBudgeter(_store(), max_total_chars=50)
    result = budgeter.build_snapshot("前職の仕事内容は？", [])

    assert result.truncated
    assert result.used_chunk_ids == ["profile-summary", "interview_script-1"]


def test_conversation_window_uses_last_final_turns():
    budgeter = ContextBudgeter(_store(), max_total_chars=100000, conversation_turns=2)
    utterances = [
        _utterance("u1", "はじめまして"),
        _utterance("u2", "よろしくお願いします", role="candidate"),
        _utterance("u3", "入力中", is_final=False),
        _utterance("u4", "前職について教えてください"),
    ]
    payload = json.loads(budgeter.build_snapshot("前職について教えてください", utterances).context)

    window = payload["conversation_window"]
    assert [w["text"] for w in window] == ["よろしくお願いします", "前職について教えてください"]
    assert window[0]["speaker"] == "candidate"


def test_recently_used_chunks_are_remembered_most_recent_first():
    budgeter = ContextBudgeter(_store(), max_total_chars=100000, recent_memory=3)
    budgeter.build_snapshot("志望動機は？", [])
    first = list(budgeter.recent_chunk_ids)

    assert len(first) == 3
    assert len(set(first)) == 3

    budgeter.reset()
    assert budgeter.recent_chunk_ids == []


def test_update_options_changes_budget():
    budgeter = ContextBudgeter(_store(), max_total_chars=100000)
    budgeter.update_options(max_total_chars=50)
    assert budgeter.build_snapshot("前職の仕事内容は？", []).truncated


def test_recent_use_bonus_reorders_close_chunks():
    fresh = ContextBudgeter(_store(), max_total_chars=100000)
    order = fresh.build_snapshot("趣味は？", []).used_chunk_ids
    assert order.index("career-1") < order.index("resume-1")

    biased = ContextBudgeter(_store(), max_total_chars=100000)
    biased.recent_chunk_ids = ["resume-1"]
    order = biased.build_snapshot("趣味は？", []).used_chunk_ids
    assert order.index("resume-1") < order.index("career-1")


def test_snapshot_stays_within_budget_whenever_a_chunk_is_rejected():
    question = "前職の仕事内容は？"
    full = ContextBudgeter(_store(), max_total_chars=100000).build_snapshot(question, [])
    forced = ContextBudgeter(_store(), max_total_chars=50).build_snapshot(question, [])
    assert len(full.used_chunk_ids) == 5

    for budget in range(forced.total_chars, full.total_chars, 20):
        result = ContextBudgeter(_store(), max_total_chars=budget).build_snapshot(question, [])
        assert result.truncated
        assert result.total_chars <= budget
        assert result.used_chunk_ids[:2] == forced.used_chunk_ids
        assert len(result.used_chunk_ids) < 5


def test_budget_just_short_of_everything_drops_only_the_tail():
    question = "前職の仕事内容は？"
    full = ContextBudgeter(_store(), max_total_chars=100000).build_snapshot(question, [])

    result = ContextBudgeter(_store(), max_total_chars=full.total_chars - 1).build_snapshot(question, [])
    assert result.truncated
    assert result.total_chars <= full.total_chars - 1
    assert len(result.used_chunk_ids) >= 3
    assert result.used_chunk_ids == full.used_chunk_ids[:len(result.used_chunk_ids)]
