"""
面接稿匹配器

负责解析面接稿文本、缓存每个问题的embedding，并对面试官的问题做
精确匹配 / 相似度匹配 / 候选打分。
"""
import re
from typing import Dict, List, Optional

import numpy as np

from core.config import agent_settings
from core.types import MatchResult, PriorityMode, QAPair, ScriptCandidate
from nlp.exceptions import MatchingFailure
from nlp.text import normalize_text, token_set
from services.embed_service import EmbeddingService, embedding_service, cosine_similarity
from logs import setup_logger

logger = setup_logger(__name__)

CONTAINMENT_BONUS = 6.0

# Q: ... / A: ...（Question: / Answer: 亦可，允许 Q1: 这样的编号）
_QA_PATTERN = re.compile(
    r"(?:^|\n)[ \t]*(?:Question|Q)\d*[ \t]*[:：.．][ \t]*(.+?)\n+"
    r"[ \t]*(?:Answer|A)\d*[ \t]*[:：.．][ \t]*(.+?)"
    r"(?=\n+[ \t]*(?:Question|Q)\d*[ \t]*[:：.．]|\s*\Z)",
    re.DOTALL | re.IGNORECASE,
)
# 質問: ... / 回答: ...
_JA_PATTERN = re.compile(
    r"(?:^|\n)[ \t]*質問\d*[ \t]*[:：][ \t]*(.+?)\n+"
    r"[ \t]*回答\d*[ \t]*[:：][ \t]*(.+?)"
    r"(?=\n+[ \t]*質問\d*[ \t]*[:：]|\s*\Z)",
    re.DOTALL,
)
# 以 ?/？ 结尾的一行 + 后续回答
_QUESTION_LINE_PATTERN = re.compile(
    r"(?:^|\n)([^\n]*?[?？])[ \t]*\n+(.+?)"
    r"(?=\n[^\n]*?[?？][ \t]*(?:\n|\Z)|\s*\Z)",
    re.DOTALL,
)


def parse_script(text: str) -> List[QAPair]:
    """
    解析面接稿文本为问答列表

    支持三种格式：Q:/A:，質問:/回答:，以及"问号结尾的问题行 + 回答"。
    后者只在前两种格式都没有结果时使用。按归一化后的问题去重。

    Args:
        text: 面接稿原文

    Returns:
        QAPair 列表
    """
    if not text or not text.strip():
        return []

    source = text.replace("\r\n", "\n")
    pairs: List[QAPair] = []
    seen = set()

    def collect(pattern: re.Pattern):
        for match in pattern.finditer(source):
            question = match.group(1).strip()
            answer = match.group(2).strip()
            key = normalize_text(question)
            if not question or not answer or key in seen:
                continue
            seen.add(key)
            pairs.append(QAPair(question=question, answer=answer))

    collect(_QA_PATTERN)
    collect(_JA_PATTERN)
    if not pairs:
        collect(_QUESTION_LINE_PATTERN)
    return pairs


class ScriptMatcher:
    """面接稿匹配器（会话级）"""

    def __init__(self, embedder: Optional[EmbeddingService] = None):
        self.embedder = embedder or embedding_service
        self.pairs: List[QAPair] = []
        self._embeddings: Dict[str, np.ndarray] = {}

    async def load(self, script_text: str) -> List[QAPair]:
        """解析面接稿并批量生成问题的embedding"""
        return await self.set_pairs(parse_script(script_text))

    async def set_pairs(self, pairs: List[QAPair]) -> List[QAPair]:
        self.pairs = list(pairs)
        self._embeddings = {}
        if not self.pairs:
            return self.pairs

        try:
            vectors = await self.embedder.embed_batch([qa.question for qa in self.pairs])
            self._embeddings = {qa.question: vec for qa, vec in zip(self.pairs, vectors)}
        except MatchingFailure as e:
            logger.warning(f"面接稿embedding生成失败，相似度匹配不可用: {e.message}")

        logger.info(f"面接稿已加载: {len(self.pairs)} 组问答, {len(self._embeddings)} 个向量")
        return self.pairs

    def clear(self):
        self.pairs = []
        self._embeddings = {}

    def match_exact(self, question: str) -> Optional[QAPair]:
        key = normalize_text(question)
        if not key:
            return None
        for qa in self.pairs:
            if normalize_text(qa.question) == key:
                return qa
        return None

    async def match_question(
        self,
        question: str,
        threshold: Optional[float] = None,
        priority_mode: PriorityMode = "similar",
    ) -> MatchResult:
        """
        直接匹配：先精确匹配，再（仅 similar 模式）做余弦相似度匹配

        Args:
            question: 面试官的问题
            threshold: 相似度阈值（默认按模式取配置）
            priority_mode: exact 或 similar

        Returns:
            MatchResult
        """
        exact = self.match_exact(question)
        if exact is not None:
            return MatchResult(match=exact, similarity=1.0, source="exact")

        if priority_mode != "similar" or not self._embeddings:
            return MatchResult()

        if threshold is None:
            threshold = threshold_for(priority_mode)

        try:
            query = await self.embedder.embed(question)
        except MatchingFailure as e:
            logger.warning(f"问题embedding失败，跳过相似度匹配: {e.message}")
            return MatchResult()

        best: Optional[QAPair] = None
        best_similarity = 0.0
        for qa in self.pairs:
            vector = self._embeddings.get(qa.question)
            if vector is None:
                continue
            similarity = cosine_similarity(query, vector)
            if similarity > best_similarity:
                best, best_similarity = qa, similarity

        if best is not None and best_similarity >= threshold:
            logger.info(f"面接稿相似匹配: {best_similarity:.3f}")
            return MatchResult(match=best, similarity=best_similarity, source="similar")
        return MatchResult()

    def collect_candidates(
        self,
        question: str,
        priority_mode: PriorityMode = "similar",
        limit: Optional[int] = None,
    ) -> List[ScriptCandidate]:
        """
        按词重叠 + 包含关系给面接稿打分，返回得分大于0的候选

        exact 模式下只保留严格匹配（交集 ≥ max(2, min(|q|, |qa|))）的候选。
        """
        if limit is None:
            limit = agent_settings.SCRIPT_CANDIDATE_LIMIT
        if not self.pairs:
            return []

        question_tokens = token_set(question)
        compact_question = re.sub(r"\s+", "", question or "")
        scored: List[ScriptCandidate] = []

        for qa in self.pairs:
            qa_tokens = token_set(qa.question)
            overlap = len(qa_tokens & question_tokens)
            if priority_mode == "exact" and overlap < max(2, min(len(question_tokens), len(qa_tokens))):
                continue

            score = float(overlap)
            compact_qa = re.sub(r"\s+", "", qa.question)
            if compact_question and compact_question in compact_qa:
                score += CONTAINMENT_BONUS
            if compact_qa and compact_qa in compact_question:
                score += CONTAINMENT_BONUS
            if score > 0:
                scored.append(ScriptCandidate(qa=qa, score=score))

        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:limit]


def threshold_for(priority_mode: PriorityMode) -> float:
    if priority_mode == "exact":
        return agent_settings.SCRIPT_EXACT_THRESHOLD
    return agent_settings.SCRIPT_SIMILARITY_THRESHOLD
