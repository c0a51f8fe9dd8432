"""
AnswerAgent：回答路由

对每个已定稿的面试官问题：
1. 判定是否需要回答（失败时按 NEEDS_ANSWER_ON_FAILURE 处理）
2. 面接稿直接匹配 -> 原文返回
3. 面接稿候选 + LLM仲裁
4. 基于上下文快照自由生成
"""
import json
import re
from typing import List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from core.config import agent_settings
from core.types import (
    ArbitrationResult,
    PreparationData,
    PriorityMode,
    RoutedAnswer,
    ScriptCandidate,
    ScriptChoice,
    Utterance,
)
from nlp.exceptions import ArbitrationParseError, ClassificationFailure, LLMError, PromptError
from nlp.prompts import prompt_manager, RESPONSE_LENGTH_INSTRUCTIONS, EXAMPLE_AMOUNT_INSTRUCTIONS
from services.context_budget import ContextBudgeter
from services.llm_service import llm_service
from services.script_matcher import ScriptMatcher, threshold_for
from logs import setup_logger

logger = setup_logger(__name__)

# 判定调用失败时视为"需要回答"，避免漏掉真正的问题
NEEDS_ANSWER_ON_FAILURE = True

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_arbitration_adapter = TypeAdapter(ArbitrationResult)


def parse_arbitration(raw: str, candidate_count: int) -> ArbitrationResult:
    """
    严格解析仲裁响应

    Args:
        raw: LLM原始输出
        candidate_count: 候选数量

    Returns:
        ScriptChoice 或 GeneratedAnswer

    Raises:
        ArbitrationParseError: 任何格式不符
    """
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        raise ArbitrationParseError(f"仲裁响应中没有JSON: {(raw or '')[:100]!r}")
    try:
        result = _arbitration_adapter.validate_json(match.group(0))
    except ValidationError as e:
        raise ArbitrationParseError(f"仲裁响应格式不符: {e.error_count()} 处错误", cause=e)

    if isinstance(result, ScriptChoice) and not 1 <= result.candidate_index <= candidate_count:
        raise ArbitrationParseError(f"candidate 超出范围: {result.candidate_index} / {candidate_count}")
    return result


def format_candidates(candidates: Sequence[ScriptCandidate]) -> str:
    return "\n\n".join(
        f"候補{i}:\n質問: {c.qa.question}\n回答: {c.qa.answer}"
        for i, c in enumerate(candidates, start=1)
    )


class AnswerAgent:
    """面试回答路由器"""

    def __init__(
        self,
        matcher: ScriptMatcher,
        budgeter: ContextBudgeter,
        llm=None,
        priority_mode: Optional[PriorityMode] = None,
        response_length: Optional[str] = None,
        example_amount: Optional[str] = None,
    ):
        self.matcher = matcher
        self.budgeter = budgeter
        self.llm = llm or llm_service
        self.preparation = PreparationData()
        self.priority_mode: PriorityMode = priority_mode or agent_settings.SCRIPT_PRIORITY
        self.response_length = response_length or agent_settings.RESPONSE_LENGTH
        self.example_amount = example_amount or agent_settings.EXAMPLE_AMOUNT

    def update_preferences(
        self,
        priority_mode: Optional[PriorityMode] = None,
        response_length: Optional[str] = None,
        example_amount: Optional[str] = None,
    ):
        if priority_mode is not None:
            self.priority_mode = priority_mode
        if response_length is not None:
            self.response_length = response_length
        if example_amount is not None:
            self.example_amount = example_amount

    # ---------- 1. 是否需要回答 ----------

    async def classify_question(self, text: str) -> bool:
        """
        判定发言是否需要回答

        Raises:
            ClassificationFailure: 判定调用失败
        """
        try:
            messages = prompt_manager.render("needs_answer", text=text)
            reply = await self.llm.complete(
                messages,
                model=agent_settings.LLM_CLASSIFIER_MODEL,
                temperature=0,
                max_tokens=10,
            )
        except (LLMError, PromptError) as e:
            raise ClassificationFailure(f"提问判定调用失败: {e.message}", cause=e)
        reply = reply.strip()
        return "はい" in reply or "yes" in reply.lower()

    async def needs_answer(self, text: str) -> bool:
        try:
            return await self.classify_question(text)
        except ClassificationFailure as e:
            logger.warning(f"提问判定失败，按策略处理为 {NEEDS_ANSWER_ON_FAILURE}: {e.message}")
            return NEEDS_ANSWER_ON_FAILURE

    # ---------- 路由 ----------

    async def route(self, question: str, conversation: Sequence[Utterance]) -> Optional[RoutedAnswer]:
        """
        完整路由；不需要回答时返回 None

        Raises:
            LLMError: 最后一级生成也失败
        """
        if not await self.needs_answer(question):
            logger.info(f"无需回答，跳过: {question[:30]}")
            return None
        return await self.answer(question, conversation)

    async def answer(self, question: str, conversation: Sequence[Utterance]) -> RoutedAnswer:
        # 2. 直接匹配：面接稿原文，不做任何改写
        result = await self.matcher.match_question(
            question,
            threshold=threshold_for(self.priority_mode),
            priority_mode=self.priority_mode,
        )
        if result.match is not None:
            logger.info(f"面接稿直接匹配 ({result.source}, {result.similarity:.3f})")
            return RoutedAnswer(answer=result.match.answer, source="script", tier="direct")

        return await self.regenerate(question, conversation)

    async def regenerate(self, question: str, conversation: Sequence[Utterance]) -> RoutedAnswer:
        """只执行候选仲裁与生成（用户触发的重新生成）"""
        candidates = self.matcher.collect_candidates(question, self.priority_mode)
        drafted = ""

        if candidates:
            try:
                choice = await self.arbitrate(question, candidates)
                if isinstance(choice, ScriptChoice):
                    qa = candidates[choice.candidate_index - 1].qa
                    logger.info(f"仲裁采用面接稿候选 {choice.candidate_index}")
                    return RoutedAnswer(answer=qa.answer, source="script", tier="arbitration")
                # 仲裁提示词只要求信号；模型若仍附带回答，仅在生成失败时使用
                drafted = choice.text
            except ArbitrationParseError as e:
                logger.warning(f"仲裁响应格式不合法，回退到生成: {e.message}")
            except LLMError as e:
                logger.warning(f"仲裁调用失败，回退到生成: {e.message}")

        try:
            text = await self.generate(question, conversation)
        except LLMError:
            if drafted:
                logger.warning("生成失败，使用仲裁给出的回答")
                return RoutedAnswer(answer=drafted, source="generated", tier="arbitration")
            raise
        return RoutedAnswer(answer=text, source="generated", tier="generation")

    # ---------- 3. 仲裁 ----------

    async def arbitrate(self, question: str, candidates: List[ScriptCandidate]) -> ArbitrationResult:
        """
        Raises:
            LLMError: 调用失败
            ArbitrationParseError: 响应格式不符
        """
        messages = prompt_manager.render(
            "arbitrate_script",
            question=question,
            candidates=format_candidates(candidates),
            priority=self.priority_mode,
        )
        raw = await self.llm.complete(messages, model=agent_settings.LLM_CLASSIFIER_MODEL)
        return parse_arbitration(raw, len(candidates))

    # ---------- 4. 生成 ----------

    async def generate(self, question: str, conversation: Sequence[Utterance]) -> str:
        """
        基于上下文快照生成回答

        Raises:
            LLMError: 调用失败或返回空文本
        """
        snapshot = self.budgeter.build_snapshot(question, conversation)
        messages = self.build_generation_messages(question, snapshot.context)
        text = await self.llm.complete(messages, model=agent_settings.LLM_MODEL)
        if not text:
            raise LLMError("生成结果为空")
        return text

    def build_generation_messages(self, question: str, context: str) -> List[dict]:
        data = self.preparation
        profile = json.dumps(
            {"industry": data.industry, "company": data.company, "position": data.position.text},
            ensure_ascii=False,
            indent=2,
        )

        def provided(doc, note="提供済み（knowledge_chunks を参照）"):
            return "未入力" if doc.type == "none" else note

        script_note = '提供済み（type: "interview_script" のチャンク）'
        materials = "\n".join([
            f"- 履歴書: {provided(data.resume)}",
            f"- 職務経歴書: {provided(data.career_history)}",
            f"- 応募職種: {provided(data.position)}",
            f"- 企業研究: {provided(data.company_research)}",
            f"- 面接稿: {provided(data.interview_script, script_note)}",
        ])

        return prompt_manager.render(
            "generate_answer",
            profile=profile,
            context=context,
            materials=materials,
            length=RESPONSE_LENGTH_INSTRUCTIONS.get(self.response_length, RESPONSE_LENGTH_INSTRUCTIONS["standard"]),
            examples=EXAMPLE_AMOUNT_INSTRUCTIONS.get(self.example_amount, EXAMPLE_AMOUNT_INSTRUCTIONS["normal"]),
            question=question,
        )
