"""
文本切词与归一化

所有打分步骤（关键词、面接稿候选、上下文预算）共用同一套切词规则。
"""
import re
import unicodedata
from collections import Counter
from typing import List

# 汉字串 / 片假名串 / 英数字单词；平假名视为助词连接部分直接丢弃
_TOKEN_RE = re.compile(
    r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff\u3005]+"
    r"|[\u30a0-\u30ff\uff66-\uff9f\u31f0-\u31ff]+"
    r"|[a-z0-9]+"
)

STOP_WORDS = {
    # 日语
    "自分", "今回", "今日", "御社", "貴社", "弊社", "場合", "以上", "以下", "具体的",
    # 英语
    "the", "and", "for", "are", "but", "not", "you", "your", "with", "this",
    "that", "was", "were", "have", "has", "had", "what", "when", "where", "which",
    "who", "why", "how", "can", "could", "would", "should", "will", "about", "from",
    "into", "they", "them", "their", "there", "then", "than", "our", "its", "also",
    "been", "being", "did", "does", "doing", "just", "some", "any", "all", "more",
    "is", "am", "be", "to", "of", "in", "on", "at", "an", "or", "it", "as", "by",
    "do", "so", "if", "me", "my", "we", "us", "he", "she", "his", "her",
}


def tokenize(text: str) -> List[str]:
    """
    将文本切分为可比较的小写词单元

    Args:
        text: 输入文本

    Returns:
        词列表（保留出现顺序，可重复）
    """
    if not text:
        return []
    normalized = unicodedata.normalize("NFKC", text).casefold()
    tokens = []
    for token in _TOKEN_RE.findall(normalized):
        if len(token) < 2 or token.isdigit() or token in STOP_WORDS:
            continue
        tokens.append(token)
    return tokens


def token_set(text: str) -> set:
    return set(tokenize(text))


def normalize_text(text: str) -> str:
    """归一化：casefold 后去掉空白与标点（用于精确比较和去重）"""
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKC", text).casefold()
    return "".join(
        ch for ch in normalized
        if not ch.isspace() and not unicodedata.category(ch).startswith("P")
    )


def derive_keywords(text: str, limit: int = 10) -> List[str]:
    """按词频取前 limit 个词作为关键词签名（同频按首次出现顺序）"""
    counts = Counter(tokenize(text))
    return [token for token, _ in counts.most_common(limit)]


def build_context_terms(texts: List[str], extra: List[str], limit: int = 25) -> str:
    """
    为语音识别生成上下文提示词（高频词 + 公司名/行业/职种等原样追加）

    Args:
        texts: 准备资料的各段文本
        extra: 需要原样追加的词
        limit: 高频词数量上限

    Returns:
        以空格连接的提示词
    """
    counts = Counter()
    for text in texts:
        counts.update(t for t in tokenize(text) if len(t) <= 20)
    terms = [token for token, _ in counts.most_common(limit)]
    for item in extra:
        item = (item or "").strip()
        if item and item not in terms:
            terms.append(item)
    return " ".join(terms)
