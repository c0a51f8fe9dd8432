"""
知识片段存储（切块器）

把面试准备资料切分为固定用途的知识片段，并为每个片段计算关键词签名和基础优先级。
面接稿片段在脚本更新时整体替换。
"""
import json
from typing import List, Optional

from config import settings
from core.types import KnowledgeChunk, PreparationData, QAPair, FileOrText, ChunkType
from nlp.text import derive_keywords, tokenize
from logs import setup_logger

logger = setup_logger(__name__)

PROFILE_PRIORITY = 1.2
RESUME_PRIORITY = 0.9
CAREER_PRIORITY = 1.0
POSITION_PRIORITY = 0.8
COMPANY_RESEARCH_PRIORITY = 0.7
CUSTOM_PRIORITY = 0.6
SCRIPT_PRIORITY = 1.5
FALLBACK_FACTOR = 0.6


def split_into_segments(text: str, max_length: int) -> List[str]:
    """
    按空行切分段落，并在不超过 max_length 的前提下贪心合并

    Args:
        text: 原文
        max_length: 单个片段的最大字符数

    Returns:
        片段列表（超长段落按 max_length 硬切）
    """
    paragraphs = [p.strip() for p in _split_paragraphs(text)]
    paragraphs = [p for p in paragraphs if p]
    if not paragraphs:
        return [text[:max_length]] if text else []

    segments: List[str] = []
    buffer = ""

    for paragraph in paragraphs:
        candidate = f"{buffer}\n\n{paragraph}" if buffer else paragraph
        if len(candidate) <= max_length:
            buffer = candidate
            continue

        if buffer.strip():
            segments.append(buffer.strip())
        buffer = ""

        if len(paragraph) > max_length:
            for i in range(0, len(paragraph), max_length):
                segments.append(paragraph[i:i + max_length])
        else:
            buffer = paragraph

    if buffer.strip():
        segments.append(buffer.strip())

    return segments


def _split_paragraphs(text: str) -> List[str]:
    # 两个及以上换行视为段落边界（行内空白行也算）
    lines = text.replace("\r\n", "\n").split("\n")
    paragraphs: List[str] = []
    current: List[str] = []
    for line in lines:
        if line.strip():
            current.append(line)
        elif current:
            paragraphs.append("\n".join(current))
            current = []
    if current:
        paragraphs.append("\n".join(current))
    return paragraphs


class KnowledgeStore:
    """会话级知识片段存储"""

    def __init__(self, max_chunk_length: Optional[int] = None):
        self.max_chunk_length = max_chunk_length or settings.CHUNK_MAX_LENGTH
        self.chunks: List[KnowledgeChunk] = []

    def ingest(self, data: PreparationData) -> List[KnowledgeChunk]:
        """
        根据准备资料重建所有片段（面接稿片段也一并清空，需要再调用 set_script）

        Args:
            data: 面试准备资料

        Returns:
            新生成的片段列表
        """
        chunks: List[KnowledgeChunk] = [self._profile_chunk(data)]

        documents = [
            ("resume", "resume", "履歴書", data.resume, RESUME_PRIORITY),
            ("career", "career_history", "職務経歴書", data.career_history, CAREER_PRIORITY),
            ("position", "position", "募集職種・ポジション", data.position, POSITION_PRIORITY),
        ]
        for id_prefix, chunk_type, title, doc, priority in documents:
            if doc.type == "none":
                continue
            chunks.extend(self._document_chunks(
                id_prefix, chunk_type, title, doc.text, _fallback_note(doc), priority
            ))

        research = data.company_research
        if research.type != "none" and (research.text or (research.type == "file" and research.file)):
            chunks.extend(self._document_chunks(
                "company-research", "company_research", "企業研究メモ",
                research.text, _fallback_note(research), COMPANY_RESEARCH_PRIORITY
            ))

        for index, doc in enumerate(data.custom_documents, start=1):
            note = f"ファイル {doc.file.name} のテキストが取得できませんでした" if doc.file else None
            chunks.extend(self._document_chunks(
                f"custom-{index}", "custom", doc.title or f"メモ {index}",
                doc.content, note, CUSTOM_PRIORITY
            ))

        self.chunks = chunks
        logger.info(f"知识片段已重建: {len(chunks)} 个")
        return list(chunks)

    def set_script(self, pairs: List[QAPair]) -> List[KnowledgeChunk]:
        """原子替换全部面接稿片段"""
        script_chunks = []
        for index, qa in enumerate(pairs, start=1):
            question = qa.question.strip()
            answer = qa.answer.strip()
            script_chunks.append(KnowledgeChunk(
                id=f"interview_script-{index}",
                type="interview_script",
                title=question,
                content=f"Q: {question}\nA: {answer}",
                base_priority=SCRIPT_PRIORITY,
                keywords=derive_keywords(f"{question} {answer}"),
                question_tokens=list(dict.fromkeys(tokenize(question))),
                question=question,
                answer=answer,
            ))

        self.chunks = [c for c in self.chunks if c.type != "interview_script"] + script_chunks
        logger.info(f"面接稿片段已替换: {len(script_chunks)} 个")
        return script_chunks

    def clear(self):
        self.chunks = []

    def _profile_chunk(self, data: PreparationData) -> KnowledgeChunk:
        content = json.dumps(
            {
                "industry": data.industry,
                "company": data.company,
                "position": data.position.text,
                "voiceCalibrated": data.voice_calibrated,
            },
            ensure_ascii=False,
            indent=2,
        )
        return KnowledgeChunk(
            id="profile-summary",
            type="profile",
            title="応募者基本情報",
            content=content,
            base_priority=PROFILE_PRIORITY,
            keywords=derive_keywords(f"{data.industry} {data.company} {data.position.text}"),
            always_include=True,
        )

    def _document_chunks(
        self,
        id_prefix: str,
        chunk_type: ChunkType,
        title: str,
        raw_text: str,
        fallback_note: Optional[str],
        priority: float,
    ) -> List[KnowledgeChunk]:
        text = (raw_text or "").strip()
        if text:
            segments = split_into_segments(text, self.max_chunk_length)
            return [
                KnowledgeChunk(
                    id=f"{id_prefix}-{i}",
                    type=chunk_type,
                    title=f"{title} #{i}" if len(segments) > 1 else title,
                    content=segment,
                    base_priority=priority,
                    keywords=derive_keywords(segment),
                )
                for i, segment in enumerate(segments, start=1)
            ]

        if fallback_note:
            logger.warning(f"文档无可用文本，使用占位片段: {id_prefix}")
            return [KnowledgeChunk(
                id=f"{id_prefix}-fallback",
                type=chunk_type,
                title=title,
                content=fallback_note,
                base_priority=priority * FALLBACK_FACTOR,
                keywords=derive_keywords(fallback_note),
            )]
        return []


def _fallback_note(doc: FileOrText) -> Optional[str]:
    if doc.type == "file" and doc.file:
        return f"PDF {doc.file.name} のテキストが取得できませんでした"
    return None
