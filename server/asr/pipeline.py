"""
面试会话管道

把转写合并、面试官识别、回答路由串起来，并以回调的形式对外输出：
on_transcript(utterance) / on_role_resolved(assignment) / on_suggestion(suggestion) / on_error(kind, message)

ingest 是同步的，按到达顺序处理；识别与回答生成作为 asyncio 任务在后台执行，
派发时读取合并器状态快照，完成后通过 apply_roles / 建议历史写回。
"""
import asyncio
import inspect
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from core.config import agent_settings
from core.state import SessionState
from core.types import PreparationData, SpeakerRoleAssignment, Suggestion, Utterance
from agents.answer_agent import AnswerAgent
from agents.interviewer_identifier import InterviewerIdentifier
from asr.reconciler import TranscriptReconciler
from nlp.exceptions import LLMError
from services.context_budget import ContextBudgeter
from services.knowledge_store import KnowledgeStore
from services.script_matcher import ScriptMatcher
from logs import setup_logger, metrics

logger = setup_logger(__name__)


class InterviewPipeline:
    """单个面试会话的核心管道"""

    def __init__(
        self,
        sid: str,
        llm=None,
        embedder=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sid = sid
        self.state = SessionState(sid)
        self.store = KnowledgeStore()
        self.budgeter = ContextBudgeter(self.store)
        self.matcher = ScriptMatcher(embedder)
        self.identifier = InterviewerIdentifier(llm=llm, clock=clock)
        self.reconciler = TranscriptReconciler(
            role_of=self.identifier.role_of,
            clock=clock,
            on_sealed=self._on_sealed,
        )
        self.agent = AnswerAgent(self.matcher, self.budgeter, llm=llm)
        self.auto_answer = agent_settings.AUTO_ANSWER_ENABLED

        self.on_transcript: Optional[Callable[[Utterance], Any]] = None
        self.on_role_resolved: Optional[Callable[[SpeakerRoleAssignment], Any]] = None
        self.on_suggestion: Optional[Callable[[Suggestion], Any]] = None
        self.on_error: Optional[Callable[[str, str], Any]] = None

        self._tasks: Set[asyncio.Task] = set()

    def bind(
        self,
        on_transcript: Optional[Callable] = None,
        on_role_resolved: Optional[Callable] = None,
        on_suggestion: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
    ):
        """绑定输出回调（同步函数或协程函数均可）"""
        self.on_transcript = on_transcript
        self.on_role_resolved = on_role_resolved
        self.on_suggestion = on_suggestion
        self.on_error = on_error

    # ---------- 准备资料 ----------

    async def load_preparation(self, data: PreparationData) -> Dict[str, Any]:
        """
        载入准备资料：重建知识片段、解析面接稿并生成问题embedding

        Returns:
            片段数与问答数摘要
        """
        chunks = self.store.ingest(data)
        pairs = await self.matcher.load(data.interview_script.text)
        script_chunks = self.store.set_script(pairs)
        self.agent.preparation = data
        self.budgeter.reset()
        logger.info(f"[{self.sid}] 准备资料已载入: {len(chunks)} 个片段, {len(pairs)} 组问答")
        return {
            "chunks": len(chunks) + len(script_chunks),
            "script_pairs": len(pairs),
        }

    # ---------- 采集控制 ----------

    def start(self):
        self.identifier.start()
        self.state.paused = False

    def pause(self):
        """暂停：保留合并器状态与识别进度，暂停时间不计入识别计时"""
        self.state.paused = True
        self.identifier.pause()

    def resume(self):
        self.state.paused = False
        self.identifier.resume()

    # ---------- 转写输入 ----------

    def ingest(
        self,
        speaker_tag: str,
        text: str,
        is_final: bool,
        utterance_key: Optional[str] = None,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> Optional[Utterance]:
        """
        处理一条转写更新（必须在事件循环中调用）

        Returns:
            更新后的发言；空文本时返回 None
        """
        if self.identifier.state == "unresolved":
            self.identifier.start()
        self.state.increment_stats("tokens_received")
        metrics.increment("tokens_ingested")

        utterance = self.reconciler.ingest(
            speaker_tag, text, is_final,
            utterance_key=utterance_key, start_ms=start_ms, end_ms=end_ms,
        )

        if utterance is not None:
            self._emit(self.on_transcript, utterance)
            if utterance.is_final:
                self.state.increment_stats("utterances_finalized")
                self.identifier.observe(utterance)

        if self.identifier.ready():
            self._dispatch_identification()

        if utterance is not None and utterance.is_final:
            self._maybe_answer(utterance)
        return utterance

    def _on_sealed(self, utterance: Utterance):
        self._emit(self.on_transcript, utterance)
        self.identifier.observe(utterance)

    # ---------- 面试官识别 ----------

    def _dispatch_identification(self):
        ticket = self.identifier.begin_classification()
        if ticket is None:
            return
        epoch, buffer = ticket
        logger.info(f"[{self.sid}] 开始面试官识别: {len(buffer)} 条发言")
        self._spawn(self._run_identification(epoch, buffer))

    async def _run_identification(self, epoch: int, buffer):
        assignment = await self.identifier.identify(epoch, buffer)
        if assignment is not None:
            self._publish_roles(assignment)

    def _publish_roles(self, assignment: SpeakerRoleAssignment):
        changed = self.reconciler.apply_roles(self.identifier.role_of)
        self._emit(self.on_role_resolved, assignment)
        for utterance in changed:
            self._emit(self.on_transcript, utterance)

    def reidentify(self):
        """
        用户触发的重新识别

        Raises:
            IdentificationError: 正在识别或定稿发言不足（状态不变）
        """
        epoch, buffer = self.identifier.reidentify(self.reconciler.final_utterances())
        logger.info(f"[{self.sid}] 重新识别面试官: {len(buffer)} 条发言")
        self._spawn(self._run_identification(epoch, buffer))

    def toggle_interviewer(self, speaker_id: str) -> SpeakerRoleAssignment:
        assignment = self.identifier.toggle(speaker_id)
        self._publish_roles(assignment)
        return assignment

    def correct_utterance(
        self,
        utterance_id: str,
        speaker_id: Optional[str] = None,
        text: Optional[str] = None,
    ) -> Utterance:
        """
        Raises:
            KeyError: 发言不存在
            ValueError: 发言未定稿或文本为空
        """
        before = self.reconciler.get(utterance_id)
        utterance = self.reconciler.correct(utterance_id, speaker_id=speaker_id, text=text)
        if before is not None:
            self.identifier.revise(before.speaker_id, before.text, utterance)
        self._emit(self.on_transcript, utterance)
        return utterance

    # ---------- 回答 ----------

    def _maybe_answer(self, utterance: Utterance):
        if not self.auto_answer or self.identifier.state != "resolved":
            return
        if utterance.role != "interviewer":
            return
        self.state.increment_stats("questions_detected")
        # 派发时的对话快照
        conversation = self.reconciler.final_utterances()
        self._spawn(self._answer(utterance, conversation))

    async def _answer(self, utterance: Utterance, conversation: Sequence[Utterance]):
        try:
            routed = await self.agent.route(utterance.text, conversation)
        except LLMError as e:
            self.state.increment_stats("generation_errors")
            logger.error(f"[{self.sid}] 回答生成失败: {e.message}")
            self._emit(self.on_error, "generation", e.message)
            return

        if routed is None:
            self.state.increment_stats("questions_skipped")
            metrics.increment("suggestions_skipped")
            return

        existing = next(
            (s for s in self.state.suggestions if s.utterance_id == utterance.id), None
        )
        suggestion = Suggestion(
            id=existing.id if existing else uuid.uuid4().hex[:12],
            question=utterance.text,
            answer=routed.answer,
            source=routed.source,
            timestamp=time.time(),
            utterance_id=utterance.id,
        )
        if existing is not None:
            # 同一发言定稿后又被修订：替换原建议
            self.state.replace_suggestion(suggestion)
        else:
            self.state.add_suggestion(suggestion)
        metrics.increment("suggestions_generated")
        logger.info(f"[{self.sid}] 回答建议已生成 ({routed.source}/{routed.tier})")
        self._emit(self.on_suggestion, suggestion)

    async def regenerate(self, suggestion_id: str) -> Suggestion:
        """
        重新生成某条建议（只走候选仲裁与生成，不再判定是否需要回答）

        Raises:
            KeyError: 建议不存在
            LLMError: 生成失败
        """
        current = self.state.find_suggestion(suggestion_id)
        if current is None:
            raise KeyError(suggestion_id)

        routed = await self.agent.regenerate(current.question, self.reconciler.final_utterances())
        updated = current.model_copy(update={
            "answer": routed.answer,
            "source": routed.source,
            "timestamp": time.time(),
        })
        if not self.state.replace_suggestion(updated):
            # 生成期间会话被重置，建议已不存在
            logger.info(f"[{self.sid}] 重新生成结果已丢弃: {suggestion_id}")
            raise KeyError(suggestion_id)
        self._emit(self.on_suggestion, updated)
        return updated

    def request_regenerate(self, suggestion_id: str) -> asyncio.Task:
        """
        在后台重新生成建议，结果经 on_suggestion 输出，失败经 on_error 输出

        Raises:
            KeyError: 建议不存在
        """
        if self.state.find_suggestion(suggestion_id) is None:
            raise KeyError(suggestion_id)
        return self._spawn(self._regenerate_in_background(suggestion_id))

    async def _regenerate_in_background(self, suggestion_id: str):
        try:
            await self.regenerate(suggestion_id)
        except KeyError:
            self._emit(self.on_error, "regenerate", "指定的回答が見つかりません")
        except LLMError as e:
            self.state.increment_stats("generation_errors")
            logger.error(f"[{self.sid}] 重新生成失败: {e.message}")
            self._emit(self.on_error, "generation", e.message)

    # ---------- 导出 / 查询 ----------

    def export_transcript(self) -> str:
        """导出定稿转写：[时间] 面接官|あなた: 文本"""
        lines = []
        for utterance in self.reconciler.final_utterances():
            label = "面接官" if utterance.role == "interviewer" else "あなた"
            stamp = datetime.fromisoformat(utterance.created_at).strftime("%H:%M:%S")
            lines.append(f"[{stamp}] {label}: {utterance.text}")
        return "\n\n".join(lines)

    def status(self) -> Dict[str, Any]:
        return {
            "sid": self.sid,
            "identification": self.identifier.status(),
            "speakers": self.reconciler.speakers(),
            "utterances": len(self.reconciler),
            "pending_tasks": len(self._tasks),
            "stats": self.state.get_stats(),
        }

    # ---------- 任务管理 ----------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.sid}] 后台任务异常: {exc}", exc_info=exc)

    def _emit(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                self._spawn(result)
        except Exception as e:
            logger.warning(f"[{self.sid}] 回调失败: {e}")

    async def wait_idle(self):
        """等待所有后台任务结束（包括任务中新派生的任务）"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def reset(self):
        """取消所有后台任务并清空核心状态（保留已载入的准备资料）"""
        tasks: List[asyncio.Task] = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self.reconciler.reset()
        self.identifier.reset()
        self.budgeter.reset()
        self.state.reset()
        logger.info(f"[{self.sid}] 会话已重置")


# 会话管理
_pipelines: Dict[str, InterviewPipeline] = {}


def get_or_create_pipeline(sid: str) -> InterviewPipeline:
    pipeline = _pipelines.get(sid)
    if pipeline is None:
        pipeline = InterviewPipeline(sid)
        _pipelines[sid] = pipeline
    return pipeline


def get_pipeline(sid: str) -> Optional[InterviewPipeline]:
    return _pipelines.get(sid)


def remove_pipeline(sid: str) -> Optional[InterviewPipeline]:
    return _pipelines.pop(sid, None)
