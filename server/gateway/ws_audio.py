"""
WebSocket面试网关
/ws/interview/{sid}

客户端 -> 服务端：
- 二进制帧：音频（默认 pcm_s16le，start 时可指定 f32le）
- 文本帧：{"type": "start" | "pause" | "resume" | "stop" | "reidentify"
           | "toggle_interviewer" | "regenerate" | "reset", ...}

服务端 -> 客户端：transcript / roles / suggestion / error / info / level
"""
import asyncio
import contextlib
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from asr.pipeline import InterviewPipeline, get_or_create_pipeline
from asr.transport import SpeechTransport
from config import settings
from core.types import SpeakerRoleAssignment, Suggestion, Utterance
from nlp.exceptions import IdentificationError, TransportError
from nlp.text import build_context_terms
from utils.audio import audio_level, decode_frame
from utils.websocket_tools import send_json, parse_json_message
from logs import setup_logger, metrics

logger = setup_logger(__name__)

LEVEL_EVERY_N_FRAMES = 5
FINALIZE_TIMEOUT = 5.0


def transport_context(pipeline: InterviewPipeline) -> str:
    """由准备资料生成语音识别上下文提示"""
    data = pipeline.agent.preparation
    texts = [
        data.resume.text,
        data.career_history.text,
        data.interview_script.text,
        data.position.text,
        data.company_research.text,
        data.company,
        data.industry,
    ]
    extra = [data.company, data.industry, data.position.text]
    terms = build_context_terms([t for t in texts if t], extra)
    return " ".join(part for part in [settings.STT_CONTEXT, terms] if part)


class InterviewSession:
    """一条WebSocket连接对应的采集会话"""

    def __init__(self, ws: WebSocket, pipeline: InterviewPipeline):
        self.ws = ws
        self.pipeline = pipeline
        self.state = pipeline.state
        self.transport: Optional[SpeechTransport] = None
        self.audio_q: asyncio.Queue = asyncio.Queue(maxsize=settings.WS_AUDIO_QUEUE_MAX_SIZE)
        self.encoding = settings.STT_AUDIO_FORMAT
        self.frame_count = 0
        self._tasks: List[asyncio.Task] = []
        self._receiver: Optional[asyncio.Task] = None

    # ---------- 输出 ----------

    async def send(self, msg_type: str, **payload):
        await send_json(self.ws, {"type": msg_type, "seq": self.state.next_seq(), **payload})

    async def on_transcript(self, utterance: Utterance):
        await self.send("transcript", utterance=utterance.model_dump())

    async def on_role_resolved(self, assignment: SpeakerRoleAssignment):
        await self.send("roles", interviewers=assignment.interviewers, state=self.pipeline.identifier.state)

    async def on_suggestion(self, suggestion: Suggestion):
        await self.send("suggestion", suggestion=suggestion.model_dump())

    async def on_error(self, kind: str, message: str):
        await self.send("error", kind=kind, text=message)

    # ---------- 采集 ----------

    @property
    def capturing(self) -> bool:
        return self.transport is not None and self.transport.connected

    async def start_capture(self, data: Dict[str, Any]):
        if self.capturing:
            await self.send("info", text="already started")
            return

        self.encoding = data.get("encoding") or settings.STT_AUDIO_FORMAT
        context = data.get("context") or transport_context(self.pipeline)
        self.transport = SpeechTransport(api_key=data.get("api_key"), context=context)
        try:
            await self.transport.connect()
        except TransportError as e:
            logger.error(f"语音识别连接失败 ({self.pipeline.sid}): {e.message}")
            await self.on_error("transport", e.message)
            self.transport = None
            return

        self.pipeline.start()
        self._receiver = asyncio.create_task(self._receive_transcripts())
        self._tasks = [
            self._receiver,
            asyncio.create_task(self._forward_audio()),
            asyncio.create_task(self.transport.keepalive_loop(lambda: self.state.paused)),
        ]
        await self.send("info", text="capture started")

    async def stop_capture(self, finalize: bool = True):
        transport, self.transport = self.transport, None
        if transport is None:
            return

        if finalize and transport.connected and self._receiver is not None:
            # 零长度帧通知结束，等待剩余结果
            with contextlib.suppress(TransportError):
                await transport.finalize()
            with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(asyncio.shield(self._receiver), FINALIZE_TIMEOUT)

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError, TransportError):
                    await task
        self._tasks = []
        self._receiver = None
        await transport.close()

        # 丢弃尚未发送的音频
        while not self.audio_q.empty():
            self.audio_q.get_nowait()
        await self.send("info", text="capture stopped")

    async def _fatal(self, error: TransportError):
        logger.error(f"语音识别传输错误，停止采集 ({self.pipeline.sid}): {error.message}")
        await self.on_error("transport", error.message)
        await self.stop_capture(finalize=False)

    async def _receive_transcripts(self):
        transport = self.transport
        try:
            async for event in transport.events():
                self.pipeline.ingest(
                    event.speaker,
                    event.text,
                    event.is_final,
                    start_ms=event.start_ms,
                    end_ms=event.end_ms,
                )
        except TransportError as e:
            await self._fatal(e)

    async def _forward_audio(self):
        while True:
            pcm = await self.audio_q.get()
            if self.state.paused or self.transport is None:
                continue
            try:
                await self.transport.send_audio(pcm)
            except TransportError as e:
                await self._fatal(e)
                return

    async def push_audio(self, data: bytes):
        if not self.capturing or self.state.paused:
            return
        pcm = decode_frame(data, self.encoding)
        if not pcm:
            return

        # 背压控制：队列满时处理
        if self.audio_q.full():
            if settings.WS_AUDIO_QUEUE_DROP_OLDEST:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self.audio_q.get_nowait()
                    logger.warning(f"队列满，丢弃最旧音频块 (session={self.pipeline.sid})")
            else:
                logger.warning(f"队列满，等待空间 (session={self.pipeline.sid})")
        await self.audio_q.put(pcm)

        self.frame_count += 1
        if self.frame_count % LEVEL_EVERY_N_FRAMES == 0:
            await self.send("level", value=audio_level(pcm))

    # ---------- 控制消息 ----------

    async def handle_control(self, data: Dict[str, Any]) -> bool:
        """
        处理控制消息

        Returns:
            False 表示客户端要求结束连接
        """
        msg_type = data.get("type")

        if msg_type == "start":
            await self.start_capture(data)
        elif msg_type == "pause":
            self.pipeline.pause()
            if self.transport is not None:
                with contextlib.suppress(TransportError):
                    await self.transport.keepalive()
            await self.send("info", text="paused")
        elif msg_type == "resume":
            self.pipeline.resume()
            await self.send("info", text="resumed")
        elif msg_type == "stop":
            await self.stop_capture()
            return False
        elif msg_type == "reidentify":
            try:
                self.pipeline.reidentify()
                await self.send("info", text="reidentifying")
            except IdentificationError as e:
                await self.on_error("identification", e.message)
        elif msg_type == "toggle_interviewer":
            speaker = data.get("speaker")
            if speaker:
                self.pipeline.toggle_interviewer(speaker)
        elif msg_type == "regenerate":
            # 后台执行，不阻塞音频与控制消息的接收
            try:
                self.pipeline.request_regenerate(data.get("id", ""))
            except KeyError:
                await self.on_error("regenerate", "指定的回答が見つかりません")
        elif msg_type == "reset":
            await self.stop_capture(finalize=False)
            await self.pipeline.reset()
            await self.send("info", text="reset")
        else:
            logger.warning(f"未知的控制消息: {msg_type}")
        return True


async def handle_interview_websocket(ws: WebSocket, session_id: str):
    """
    处理面试WebSocket连接

    Args:
        ws: WebSocket连接
        session_id: 会话ID
    """
    await ws.accept()
    pipeline = get_or_create_pipeline(session_id)
    session = InterviewSession(ws, pipeline)
    pipeline.bind(
        on_transcript=session.on_transcript,
        on_role_resolved=session.on_role_resolved,
        on_suggestion=session.on_suggestion,
        on_error=session.on_error,
    )
    metrics.increment("ws_connections")
    await send_json(ws, {"type": "info", "seq": 0, "text": "connected"})

    try:
        while True:
            msg = await ws.receive()
            if msg.get("type") == "websocket.disconnect":
                logger.info(f"WebSocket断开: {session_id}")
                break
            if msg.get("text") is not None:
                if not await session.handle_control(parse_json_message(msg["text"])):
                    break
            elif msg.get("bytes") is not None:
                await session.push_audio(msg["bytes"])

    except WebSocketDisconnect:
        logger.info(f"WebSocket断开: {session_id}")
    finally:
        # 清理
        await session.stop_capture(finalize=False)
        pipeline.bind()
        metrics.increment("ws_disconnections")

        with contextlib.suppress(RuntimeError):
            await ws.close()

        logger.info(f"[WS] closed: {session_id}")
