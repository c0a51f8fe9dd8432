import asyncio

import pytest

from conftest import FakeEmbedder, FakeLLM
from agents.answer_agent import NEEDS_ANSWER_ON_FAILURE, AnswerAgent, parse_arbitration
from core.types import GeneratedAnswer, PreparationData, QAPair, ScriptChoice
from nlp.exceptions import ArbitrationParseError, LLMError
from services.context_budget import ContextBudgeter
from services.knowledge_store import KnowledgeStore
from services.script_matcher import ScriptMatcher

SCRIPT_ANSWER = "前職では決済基盤の開発リードとして、5名のチームを率いていました。"


def _agent(llm, priority_mode="similar", pairs=None):
    store = KnowledgeStore()
    store.ingest(PreparationData(company="サンプル"))
    matcher = ScriptMatcher(FakeEmbedder())
    pairs = pairs if pairs is not None else [
        QAPair(question="前職ではどのような仕事を？", answer=SCRIPT_ANSWER),
        QAPair(question="自己紹介をお願いします", answer="山田と申します。"),
    ]
    asyncio.run(matcher.set_pairs(pairs))
    store.set_script(pairs)
    return AnswerAgent(matcher, ContextBudgeter(store), llm=llm, priority_mode=priority_mode)


def test_fail_open_policy_is_visible():
    assert NEEDS_ANSWER_ON_FAILURE is True


def test_not_a_question_is_skipped():
    llm = FakeLLM(needs_answer="いいえ")
    agent = _agent(llm)

    assert asyncio.run(agent.route("なるほど、ありがとうございます", [])) is None
    assert llm.kinds() == ["needs_answer"]
    assert llm.calls[0]["max_tokens"] == 10


def test_classifier_failure_still_answers():
    llm = FakeLLM(needs_answer=LLMError("timeout"))
    agent = _agent(llm)

    routed = asyncio.run(agent.route("趣味は何ですか？", []))
    assert routed is not None
    assert routed.source == "generated"


def test_direct_match_returns_script_verbatim():
    llm = FakeLLM()
    agent = _agent(llm)

    routed = asyncio.run(agent.route("自己紹介をお願いします。", []))
    assert routed.answer == "山田と申します。"
    assert routed.source == "script"
    assert routed.tier == "direct"
    assert llm.kinds() == ["needs_answer"]


def test_arbitration_selects_overlapping_script_candidate():
    llm = FakeLLM(arbitrate='{"source": "script", "answer": "言い換え", "candidate": 1}')
    agent = _agent(llm)

    routed = asyncio.run(agent.route("前職の業務内容は？", []))
    assert routed.source == "script"
    assert routed.tier == "arbitration"
    assert routed.answer == SCRIPT_ANSWER
    assert "generate" not in llm.kinds()


def test_exact_mode_without_entry_generates_every_time():
    llm = FakeLLM(arbitrate='{"source": "script", "answer": "", "candidate": 1}')
    agent = _agent(llm, priority_mode="exact")

    first = asyncio.run(agent.route("前職の業務内容は？", []))
    second = asyncio.run(agent.route("前職の業務内容は？", []))

    assert first.source == "generated" and second.source == "generated"
    assert "arbitrate" not in llm.kinds()


def test_malformed_arbitration_falls_back_to_generation():
    llm = FakeLLM(arbitrate="候補1が良いと思います")
    agent = _agent(llm)

    routed = asyncio.run(agent.route("前職の業務内容は？", []))
    assert routed.source == "generated"
    assert routed.answer == "generated answer"
    assert llm.kinds() == ["needs_answer", "arbitrate", "generate"]


def test_generated_arbitration_draft_used_when_generation_fails():
    llm = FakeLLM(
        arbitrate='{"source": "generated", "answer": "仲裁の回答", "candidate": null}',
        generate=LLMError("rate limited"),
    )
    agent = _agent(llm)

    routed = asyncio.run(agent.route("前職の業務内容は？", []))
    assert routed.answer == "仲裁の回答"
    assert routed.source == "generated"


def test_generation_failure_without_draft_raises():
    llm = FakeLLM(generate=LLMError("rate limited"))
    agent = _agent(llm, pairs=[])

    with pytest.raises(LLMError):
        asyncio.run(agent.route("趣味は何ですか？", []))


def test_empty_generation_is_an_error():
    llm = FakeLLM(generate="")
    agent = _agent(llm, pairs=[])

    with pytest.raises(LLMError):
        asyncio.run(agent.generate("趣味は何ですか？", []))


def test_regenerate_skips_question_check_and_direct_match():
    llm = FakeLLM(needs_answer="いいえ")
    agent = _agent(llm)

    routed = asyncio.run(agent.regenerate("自己紹介をお願いします。", []))
    assert "needs_answer" not in llm.kinds()
    assert routed.tier in ("arbitration", "generation")


def test_generation_prompt_reflects_preferences():
    llm = FakeLLM()
    agent = _agent(llm, pairs=[])
    agent.update_preferences(response_length="brief", example_amount="many")

    asyncio.run(agent.generate("強みは？", []))
    prompt = "\n".join(m["content"] for m in llm.calls[-1]["messages"])
    assert "3-4文" in prompt
    assert "3つ以上の具体例" in prompt
    assert '"context_version": 1' in prompt


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"source": "script", "candidate": 3}',
    '{"source": "script", "candidate": 0}',
    '{"source": "script", "candidate": true}',
    '{"source": "script", "candidate": "1"}',
    '{"source": "generated", "answer": 12}',
    '{"source": "maybe", "answer": "x"}',
    '{"answer": "x", "candidate": 1}',
    '{"source": "script", "candidate": 1, "answer": ["x"]}',
])
def test_parse_arbitration_rejects_bad_shapes(raw):
    with pytest.raises(ArbitrationParseError):
        parse_arbitration(raw, 2)


def test_parse_arbitration_accepts_tagged_results():
    choice = parse_arbitration('```json\n{"source": "script", "answer": "", "candidate": 2}\n```', 2)
    assert choice == ScriptChoice(candidate_index=2, text="")

    generated = parse_arbitration('{"source": "generated", "answer": " 新しい回答 ", "candidate": null}', 2)
    assert generated == GeneratedAnswer(text="新しい回答")


def test_generated_signal_needs_no_answer_text():
    generated = parse_arbitration('{"source": "generated", "candidate": null}', 2)
    assert generated == GeneratedAnswer(text="")


def test_arbitration_prompt_asks_only_for_the_signal():
    llm = FakeLLM(arbitrate='{"source": "generated", "candidate": null}')
    agent = _agent(llm)

    routed = asyncio.run(agent.route("前職の業務内容は？", []))
    prompt = llm.calls[1]["messages"][-1]["content"]
    assert '"answer"' not in prompt
    assert routed.tier == "generation"
    assert llm.kinds() == ["needs_answer", "arbitrate", "generate"]
