"""
Embedding服务（面接稿相似度匹配使用）
"""
import json
import numpy as np
from typing import List
import asyncio
import aiohttp

from core.config import agent_settings
from nlp.exceptions import MatchingFailure
from logs import setup_logger, log_metric

logger = setup_logger(__name__)


class EmbeddingService:
    """Embedding生成服务"""

    def __init__(self):
        self.api_key = agent_settings.EMBEDDING_API_KEY or agent_settings.LLM_API_KEY
        self.base_url = agent_settings.EMBEDDING_BASE_URL
        self.model = agent_settings.EMBEDDING_MODEL
        self.timeout = agent_settings.EMBEDDING_TIMEOUT

        if not self.api_key:
            logger.warning("EMBEDDING_API_KEY未设置，相似度匹配将被跳过")

    async def embed(self, text: str) -> np.ndarray:
        """
        生成单个文本的embedding

        Args:
            text: 输入文本

        Returns:
            embedding向量（numpy数组）

        Raises:
            MatchingFailure: 调用失败或文本为空
        """
        if not text or not text.strip():
            raise MatchingFailure("文本为空，无法生成embedding")
        results = await self.embed_batch([text])
        return results[0]

    @log_metric("embedding_requests")
    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        """
        批量生成embedding（返回顺序与输入一致）

        Args:
            texts: 文本列表

        Returns:
            embedding向量列表

        Raises:
            MatchingFailure: 未配置密钥、HTTP错误、响应格式不符
        """
        if not texts:
            return []
        if not self.api_key:
            raise MatchingFailure("EMBEDDING_API_KEY未设置")

        url = f"{self.base_url.rstrip('/')}/embeddings"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "input": texts
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=headers, json=payload) as resp:
                    status = resp.status
                    body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MatchingFailure(f"Embedding请求失败: {e}", cause=e)

        if status != 200:
            raise MatchingFailure(f"Embedding API错误: {status} - {body[:500]}")
        return parse_embeddings(body, len(texts))


def parse_embeddings(body: str, expected: int) -> List[np.ndarray]:
    """
    解析 /embeddings 响应体（按 index 排序）

    Raises:
        MatchingFailure: 非JSON、结构不符或数量不一致
    """
    try:
        data = json.loads(body)
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        embeddings = [
            np.asarray(item["embedding"], dtype=np.float32)
            for item in items
            if item.get("embedding")
        ]
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise MatchingFailure(f"Embedding响应格式错误: {body[:200]}", cause=e)

    if len(embeddings) != expected:
        raise MatchingFailure(f"Embedding数量不符: 期望 {expected}，实际 {len(embeddings)}")
    return embeddings


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """余弦相似度（零向量返回0）"""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


# 全局实例
embedding_service = EmbeddingService()
