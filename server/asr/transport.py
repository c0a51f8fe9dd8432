"""
流式语音识别传输（WebSocket 客户端）

连接后先发送一条 JSON 配置消息，之后发送小端 16-bit PCM 二进制帧；
零长度帧表示结束。服务端返回 {tokens: [...], finished?, error_code?}。
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from config import settings
from nlp.exceptions import TransportError
from logs import setup_logger, metrics

logger = setup_logger(__name__)

END_TOKEN = "<end>"
NORMAL_CLOSE_CODES = (1000, 1005)


@dataclass
class TranscriptEvent:
    """合并后的转写事件（交给 InterviewPipeline.ingest）"""
    speaker: str
    text: str
    is_final: bool
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None


def normalize_speaker(speaker: Any) -> Optional[str]:
    """说话人标签标准化："1" -> "spk1"；空或 unknown 返回 None"""
    if speaker is None:
        return None
    tag = str(speaker).strip()
    if not tag or tag == "unknown":
        return None
    if tag.isdigit():
        return f"spk{tag}"
    return tag


class TokenAssembler:
    """
    把逐条 token 拼成按说话人的转写文本

    - final token 累积，non-final token 每条响应重置
    - 说话人切换时，上一说话人的 final 文本作为定稿发出
    - <end> 发出空的定稿（发言结束信号）并清空 token
    - finished 时发出剩余的 final 文本
    """

    def __init__(self):
        self.current_speaker: Optional[str] = None
        self.final_tokens: List[Dict[str, Any]] = []
        self.non_final_tokens: List[Dict[str, Any]] = []

    def feed(self, response: Dict[str, Any]) -> List[TranscriptEvent]:
        tokens = response.get("tokens") or []
        if not tokens:
            return []

        events: List[TranscriptEvent] = []
        new_final: List[Dict[str, Any]] = []
        new_non_final: List[Dict[str, Any]] = []
        has_end = False

        for token in tokens:
            text = token.get("text") or ""
            if text.strip() == END_TOKEN:
                has_end = True
                continue

            speaker = normalize_speaker(token.get("speaker"))
            if speaker is None:
                continue

            if self.current_speaker is not None and speaker != self.current_speaker:
                # 说话人切换：先把上一位的 final 文本（含本条响应中已收到的）定稿
                event = self._event(self.final_tokens + new_final, True)
                if event is not None:
                    events.append(event)
                self.final_tokens = []
                self.non_final_tokens = []
                new_final = []
                new_non_final = []
            self.current_speaker = speaker

            if token.get("is_final"):
                new_final.append(token)
            else:
                new_non_final.append(token)

        self.final_tokens.extend(new_final)
        self.non_final_tokens = new_non_final

        event = self._event(self.final_tokens + self.non_final_tokens, not self.non_final_tokens)
        if event is not None:
            events.append(event)

        if has_end:
            if self.current_speaker is not None:
                events.append(TranscriptEvent(speaker=self.current_speaker, text="", is_final=True))
            self.final_tokens = []
            self.non_final_tokens = []

        return events

    def flush(self) -> List[TranscriptEvent]:
        """流结束：发出剩余的 final 文本"""
        event = self._event(self.final_tokens, True)
        self.final_tokens = []
        self.non_final_tokens = []
        return [event] if event is not None else []

    def reset(self):
        self.current_speaker = None
        self.final_tokens = []
        self.non_final_tokens = []

    def _event(self, tokens: List[Dict[str, Any]], is_final: bool) -> Optional[TranscriptEvent]:
        if not tokens or self.current_speaker is None:
            return None
        text = "".join(t.get("text") or "" for t in tokens).strip()
        if not text:
            return None
        starts = [t["start_ms"] for t in tokens if t.get("start_ms") is not None]
        ends = [t["end_ms"] for t in tokens if t.get("end_ms") is not None]
        return TranscriptEvent(
            speaker=self.current_speaker,
            text=text,
            is_final=is_final,
            start_ms=int(min(starts)) if starts else None,
            end_ms=int(max(ends)) if ends else None,
        )


def build_config_message(api_key: str, context: Optional[str] = None) -> Dict[str, Any]:
    """构建首条配置消息"""
    message: Dict[str, Any] = {
        "api_key": api_key,
        "model": settings.STT_MODEL,
        "audio_format": settings.STT_AUDIO_FORMAT,
        "language_hints": settings.STT_LANGUAGE_HINTS,
        "enable_speaker_diarization": settings.STT_ENABLE_DIARIZATION,
        "enable_language_identification": settings.STT_ENABLE_LANGUAGE_ID,
        "enable_endpoint_detection": settings.STT_ENABLE_ENDPOINT_DETECTION,
        "num_channels": settings.STT_NUM_CHANNELS,
        "sample_rate": settings.STT_SAMPLE_RATE,
    }
    context = context if context is not None else settings.STT_CONTEXT
    if context:
        message["context"] = context
    return message


class SpeechTransport:
    """语音识别 WebSocket 客户端"""

    def __init__(self, api_key: Optional[str] = None, url: Optional[str] = None, context: Optional[str] = None):
        self.api_key = api_key or settings.STT_API_KEY
        self.url = url or settings.STT_URL
        self.context = context
        self.assembler = TokenAssembler()
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self):
        """
        建立连接并发送配置消息

        Raises:
            TransportError: 未配置密钥或连接失败
        """
        if not self.api_key:
            raise TransportError("STT_API_KEY未设置")
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url)
            await self._ws.send_str(json.dumps(build_config_message(self.api_key, self.context), ensure_ascii=False))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            metrics.increment("stt_errors")
            await self.close()
            raise TransportError(f"语音识别服务连接失败: {e}", cause=e)
        metrics.increment("stt_connections")
        logger.info(f"语音识别服务已连接: {self.url}")

    async def send_audio(self, pcm: bytes):
        """发送一帧 PCM16 音频（空帧会被忽略，结束请用 finalize）"""
        if not pcm:
            return
        await self._send_bytes(pcm)

    async def finalize(self):
        """发送零长度帧，通知服务端结束"""
        await self._send_bytes(b"")

    async def keepalive(self):
        """暂停期间保持连接"""
        if self.connected:
            await self._ws.send_str(json.dumps({"type": "keepalive"}))

    async def keepalive_loop(self, should_send: Callable[[], bool], interval: Optional[float] = None):
        interval = interval or settings.STT_KEEPALIVE_INTERVAL
        while self.connected:
            await asyncio.sleep(interval)
            if should_send():
                await self.keepalive()

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        """
        读取服务端响应并产出转写事件，直到 finished 或连接关闭

        Raises:
            TransportError: 服务端返回错误或连接异常断开
        """
        if self._ws is None:
            raise TransportError("尚未连接语音识别服务")

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    response = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"无法解析语音识别响应: {msg.data[:100]}")
                    continue

                if response.get("error_code"):
                    metrics.increment("stt_errors")
                    raise TransportError(
                        response.get("error_message") or f"错误码: {response['error_code']}",
                        code=response.get("error_code"),
                    )

                if response.get("finished"):
                    for event in self.assembler.flush():
                        yield event
                    logger.info("语音识别流已结束")
                    return

                for event in self.assembler.feed(response):
                    yield event

            elif msg.type == aiohttp.WSMsgType.ERROR:
                metrics.increment("stt_errors")
                raise TransportError(f"语音识别连接错误: {self._ws.exception()}")

        code = self._ws.close_code
        if code is not None and code not in NORMAL_CLOSE_CODES:
            metrics.increment("stt_errors")
            raise TransportError(f"语音识别连接被关闭 (code: {code})", code=code)

    async def close(self):
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._ws = None
        self._session = None
        self.assembler.reset()

    async def _send_bytes(self, data: bytes):
        if not self.connected:
            raise TransportError("语音识别服务未连接")
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            metrics.increment("stt_errors")
            raise TransportError(f"音频发送失败: {e}", cause=e)
