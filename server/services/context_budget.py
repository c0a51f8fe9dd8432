"""
上下文预算器

为当前问题给所有知识片段打分，在字符预算内贪心装入得分最高的片段，
并记住最近使用过的片段以便在下一次打分时加权。
"""
import json
from typing import Any, Dict, List, Optional, Sequence

from config import settings
from core.types import KnowledgeChunk, SnapshotResult, Utterance
from nlp.text import token_set
from services.knowledge_store import KnowledgeStore
from logs import setup_logger, metrics

logger = setup_logger(__name__)

CONTEXT_VERSION = 1
KEYWORD_WEIGHT = 0.6
QUESTION_TOKEN_WEIGHT = 1.2
COVERAGE_BONUS = 2.0
COVERAGE_THRESHOLD = 0.5
RECENT_BONUS = 0.5


class ContextBudgeter:
    """按字符预算构建上下文快照"""

    def __init__(
        self,
        store: KnowledgeStore,
        max_total_chars: Optional[int] = None,
        conversation_turns: Optional[int] = None,
        recent_memory: Optional[int] = None,
    ):
        self.store = store
        self.max_total_chars = max_total_chars or settings.CONTEXT_MAX_CHARS
        self.conversation_turns = conversation_turns or settings.CONTEXT_CONVERSATION_TURNS
        self.recent_memory = recent_memory or settings.CONTEXT_RECENT_MEMORY
        self.recent_chunk_ids: List[str] = []

    def update_options(
        self,
        max_total_chars: Optional[int] = None,
        conversation_turns: Optional[int] = None,
        recent_memory: Optional[int] = None,
    ):
        if max_total_chars is not None:
            self.max_total_chars = max_total_chars
        if conversation_turns is not None:
            self.conversation_turns = conversation_turns
        if recent_memory is not None:
            self.recent_memory = recent_memory

    def reset(self):
        self.recent_chunk_ids = []

    def build_snapshot(self, question: str, recent_utterances: Sequence[Utterance]) -> SnapshotResult:
        """
        构建上下文快照

        Args:
            question: 待回答的问题
            recent_utterances: 最近的发言（只取 final 的最后 N 条）

        Returns:
            SnapshotResult（context 为序列化后的 JSON）
        """
        pending = (question or "").strip()
        window = self._conversation_window(recent_utterances)
        question_tokens = token_set(pending)
        combined_tokens = set(question_tokens)
        for entry in window:
            combined_tokens |= token_set(entry["text"])

        chunks = self.store.chunks
        scored = sorted(
            chunks,
            key=lambda c: self.score_chunk(c, combined_tokens, question_tokens),
            reverse=True,
        )

        selected: List[KnowledgeChunk] = [c for c in chunks if c.always_include]
        selected_ids = {c.id for c in selected}
        serialized = self._serialize(pending, window, selected)
        accepted_optional = 0
        truncated = False

        for chunk in scored:
            if chunk.id in selected_ids:
                continue
            tentative = self._serialize(pending, window, selected + [chunk])
            # 第一个非必选片段无条件接受，保证上下文非空
            if len(tentative) <= self.max_total_chars or accepted_optional == 0:
                selected.append(chunk)
                selected_ids.add(chunk.id)
                serialized = tentative
                accepted_optional += 1
            else:
                truncated = True

        # 只有必选集合（必选片段 + 首个片段）本身超出预算时才会走到这里
        if len(serialized) > self.max_total_chars:
            truncated = True
            metrics.increment("snapshots_truncated")
            logger.warning(
                f"上下文快照超出预算: {len(serialized)} > {self.max_total_chars}",
                extra={"extra": {"chunk_ids": [c.id for c in selected]}}
            )

        used_ids = [c.id for c in selected]
        self._remember(used_ids)

        return SnapshotResult(
            context=serialized,
            used_chunk_ids=used_ids,
            total_chars=len(serialized),
            truncated=truncated,
        )

    def score_chunk(self, chunk: KnowledgeChunk, combined_tokens: set, question_tokens: set) -> float:
        score = chunk.base_priority
        keyword_hits = sum(1 for keyword in chunk.keywords if keyword in combined_tokens)
        score += keyword_hits * KEYWORD_WEIGHT

        if chunk.type == "interview_script" and chunk.question_tokens:
            hits = sum(1 for token in chunk.question_tokens if token in question_tokens)
            if hits:
                score += hits * QUESTION_TOKEN_WEIGHT
                if hits / max(len(chunk.question_tokens), 1) >= COVERAGE_THRESHOLD:
                    score += COVERAGE_BONUS

        if chunk.id in self.recent_chunk_ids:
            score += RECENT_BONUS
        return score

    def _conversation_window(self, utterances: Sequence[Utterance]) -> List[Dict[str, Any]]:
        finals = [u for u in utterances if u.is_final and u.text]
        if self.conversation_turns <= 0:
            return []
        return [
            {"speaker": u.role, "text": u.text, "timestamp": u.created_at}
            for u in finals[-self.conversation_turns:]
        ]

    def _serialize(self, question: str, window: List[Dict[str, Any]], chunks: List[KnowledgeChunk]) -> str:
        payload = {
            "context_version": CONTEXT_VERSION,
            "pending_question": question,
            "conversation_window": window,
            "knowledge_chunks": [_serialize_chunk(c) for c in chunks],
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    def _remember(self, ids: List[str]):
        merged = list(dict.fromkeys(ids + self.recent_chunk_ids))
        self.recent_chunk_ids = merged[:self.recent_memory]


def _serialize_chunk(chunk: KnowledgeChunk) -> Dict[str, Any]:
    if chunk.type == "interview_script":
        return {
            "id": chunk.id,
            "type": chunk.type,
            "title": chunk.title,
            "question": chunk.question or "",
            "answer": chunk.answer or "",
        }
    return {
        "id": chunk.id,
        "type": chunk.type,
        "title": chunk.title,
        "content": chunk.content,
    }
