"""
LLM对话补全服务
"""
from typing import Any, Dict, List, Optional
import asyncio
import aiohttp
import json

from core.config import agent_settings
from nlp.exceptions import LLMError
from logs import setup_logger, log_metric

logger = setup_logger(__name__)


class LLMService:
    """Chat Completion 调用（非流式）"""

    def __init__(self):
        self.api_key = agent_settings.LLM_API_KEY
        self.base_url = agent_settings.LLM_BASE_URL
        self.temperature = agent_settings.LLM_TEMPERATURE
        self.max_tokens = agent_settings.LLM_MAX_TOKENS
        self.timeout = agent_settings.LLM_TIMEOUT

        self.model_answer = agent_settings.LLM_MODEL
        self.model_classifier = agent_settings.LLM_CLASSIFIER_MODEL

        # 并发上限（多个问题同时生成时）
        self._semaphore = asyncio.Semaphore(agent_settings.LLM_CONCURRENCY_LIMIT)

        if not self.api_key:
            logger.warning("LLM_API_KEY未设置，LLM功能将不可用")

    def _should_skip_temperature_for_model(self, model_name: str) -> bool:
        """
        判断模型是否不支持自定义 temperature（只支持默认值）
        某些新模型（如 gpt-5-mini）只支持默认 temperature=1
        """
        model_lower = model_name.lower()
        models_without_temperature = [
            "gpt-5", "o1", "o3", "o4"
        ]

        for model_pattern in models_without_temperature:
            if model_pattern in model_lower:
                return True

        return False

    def _should_skip_max_tokens_for_model(self, model_name: str) -> bool:
        """推理系模型拒绝 max_tokens 参数"""
        model_lower = model_name.lower()
        for model_pattern in ["gpt-5", "o1", "o3", "o4"]:
            if model_pattern in model_lower:
                return True
        return False

    def build_payload(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        构建请求体（按模型省略不支持的参数）

        Args:
            messages: [{role, content}] 列表
            model: 模型名（默认回答生成模型）
            temperature: 温度（默认配置值）
            max_tokens: 最大输出token数（默认配置值）

        Returns:
            请求体字典
        """
        model = model or self.model_answer
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
        }
        if not self._should_skip_temperature_for_model(model):
            payload["temperature"] = self.temperature if temperature is None else temperature
        if not self._should_skip_max_tokens_for_model(model):
            payload["max_tokens"] = self.max_tokens if max_tokens is None else max_tokens
        return payload

    @log_metric("llm_requests")
    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        调用对话补全接口

        Args:
            messages: [{role, content}] 列表
            model: 模型名
            temperature: 温度
            max_tokens: 最大输出token数

        Returns:
            choices[0].message.content

        Raises:
            LLMError: 未配置、网络错误、HTTP错误或响应格式不符
        """
        if not self.api_key:
            raise LLMError("LLM_API_KEY未设置")

        payload = self.build_payload(messages, model, temperature, max_tokens)
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        async with self._semaphore:
            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    status, body = await self._post(session, url, headers, payload)

                    # 处理400错误，可能是参数不兼容：去掉报错中提到的参数后重试一次
                    if status == 400 and self._strip_rejected_params(payload, body):
                        logger.info(f"模型 {payload['model']} 不支持部分参数，调整后重试...")
                        status, body = await self._post(session, url, headers, payload)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise LLMError(f"LLM请求失败: {e}", cause=e)

        if status != 200:
            raise LLMError(f"LLM API错误: {status} - {body[:500]}")

        try:
            data = json.loads(body)
            content = data["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"LLM响应格式错误: {body[:200]}", cause=e)

        return (content or "").strip()

    async def _post(self, session: aiohttp.ClientSession, url: str, headers: Dict[str, str], payload: Dict[str, Any]):
        async with session.post(url, headers=headers, json=payload) as resp:
            return resp.status, await resp.text()

    def _strip_rejected_params(self, payload: Dict[str, Any], error_text: str) -> bool:
        try:
            error_msg = json.loads(error_text).get("error", {}).get("message", "")
        except (json.JSONDecodeError, AttributeError):
            error_msg = error_text
        error_msg = (error_msg or "").lower()

        stripped = False
        if "temperature" in error_msg and "temperature" in payload:
            payload.pop("temperature")
            stripped = True
        if "max_tokens" in error_msg and "max_tokens" in payload:
            payload.pop("max_tokens")
            stripped = True
        return stripped


# 全局实例
llm_service = LLMService()
