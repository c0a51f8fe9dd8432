"""
面试官识别（说话人角色引擎）

状态机：unresolved -> collecting -> classifying -> resolved
手动指定可以从任意状态直接跳到 resolved。
"""
import re
import time
from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple

from pydantic import ValidationError

from config import settings
from core.config import agent_settings
from core.types import IdentificationReply, Role, SpeakerRoleAssignment, Utterance
from nlp.exceptions import ClassificationFailure, IdentificationError, LLMError, PromptError
from nlp.prompts import prompt_manager
from services.llm_service import llm_service
from logs import setup_logger, metrics

logger = setup_logger(__name__)

IdentificationState = Literal["unresolved", "collecting", "classifying", "resolved"]

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_QUESTION_MARK_RE = re.compile(r"[?？]")


def heuristic_interviewer(buffer: Sequence[Tuple[str, str]]) -> Optional[str]:
    """问号最多的说话人（同分时先出现者优先）"""
    counts: Dict[str, int] = {}
    for speaker, text in buffer:
        counts.setdefault(speaker, 0)
        if _QUESTION_MARK_RE.search(text):
            counts[speaker] += 1
    best = None
    for speaker, count in counts.items():
        if best is None or count > counts[best]:
            best = speaker
    return best


def parse_interviewers(raw: str, known_speakers: Sequence[str]) -> List[str]:
    """
    解析识别结果 {"interviewers": [...]}，只保留已知的说话人

    Raises:
        ClassificationFailure: 非 JSON 或没有可用的说话人
    """
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        raise ClassificationFailure(f"识别结果不是JSON: {(raw or '')[:100]!r}")
    try:
        reply = IdentificationReply.model_validate_json(match.group(0))
    except ValidationError as e:
        raise ClassificationFailure(f"识别结果格式不符: {e.error_count()} 处错误", cause=e)

    identified = []
    for item in reply.interviewers:
        tag = item.strip()
        if tag and tag in known_speakers and tag not in identified:
            identified.append(tag)
    if not identified:
        raise ClassificationFailure("识别结果中没有已知的说话人")
    return identified


class InterviewerIdentifier:
    """面试官识别器（每个会话一个实例）"""

    def __init__(
        self,
        llm=None,
        min_elapsed: Optional[float] = None,
        min_utterances: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm or llm_service
        self.min_elapsed = settings.IDENTIFY_MIN_ELAPSED if min_elapsed is None else min_elapsed
        self.min_utterances = settings.IDENTIFY_MIN_UTTERANCES if min_utterances is None else min_utterances
        self.clock = clock

        self.state: IdentificationState = "unresolved"
        self.assignment = SpeakerRoleAssignment()
        self.buffer: List[Tuple[str, str]] = []
        self.epoch = 0
        self._started_at: Optional[float] = None
        self._paused_at: Optional[float] = None
        self._paused_total = 0.0

    # ---------- 计时 ----------

    def start(self):
        """开始收集（已经在收集或已识别时不做任何事）"""
        if self.state == "unresolved":
            self.state = "collecting"
            self._started_at = self.clock()
            self._paused_total = 0.0
            self._paused_at = None

    def pause(self):
        if self._paused_at is None:
            self._paused_at = self.clock()

    def resume(self):
        if self._paused_at is not None:
            self._paused_total += self.clock() - self._paused_at
            self._paused_at = None

    def elapsed(self) -> float:
        """已收集时间（不含暂停时间）"""
        if self._started_at is None:
            return 0.0
        now = self.clock()
        paused = self._paused_total
        if self._paused_at is not None:
            paused += now - self._paused_at
        return max(0.0, now - self._started_at - paused)

    # ---------- 收集 ----------

    def observe(self, utterance: Utterance) -> bool:
        """
        记录一条发言，返回是否已满足发起识别的条件

        只有 collecting 状态下的 final 发言进入缓冲区；同一说话人的连续修订替换上一行。
        """
        if self.state != "collecting" or not utterance.is_final or not utterance.text:
            return False
        if self.buffer and self.buffer[-1][0] == utterance.speaker_id:
            self.buffer[-1] = (utterance.speaker_id, utterance.text)
        else:
            self.buffer.append((utterance.speaker_id, utterance.text))
        return self.ready()

    def revise(self, old_speaker: str, old_text: str, utterance: Utterance):
        """收集期间手动修正的发言同步到缓冲区（替换最近一条相同的行）"""
        if self.state != "collecting":
            return
        for index in range(len(self.buffer) - 1, -1, -1):
            if self.buffer[index] == (old_speaker, old_text):
                self.buffer[index] = (utterance.speaker_id, utterance.text)
                return

    def ready(self) -> bool:
        return (
            self.state == "collecting"
            and self.elapsed() >= self.min_elapsed
            and len(self.buffer) >= self.min_utterances
        )

    def begin_classification(self) -> Optional[Tuple[int, List[Tuple[str, str]]]]:
        """
        进入 classifying 状态并返回 (epoch, 缓冲区快照)

        非 collecting 状态返回 None，保证同一时间最多一个识别在进行。
        """
        if self.state != "collecting":
            return None
        self.state = "classifying"
        return self.epoch, list(self.buffer)

    # ---------- 识别 ----------

    async def classify(self, buffer: Sequence[Tuple[str, str]]) -> List[str]:
        """
        调用LLM判定面试官

        Raises:
            ClassificationFailure: 调用失败或结果不可用
        """
        speakers = list(dict.fromkeys(speaker for speaker, _ in buffer))
        conversation = "\n".join(f"{speaker}: {text}" for speaker, text in buffer)
        try:
            messages = prompt_manager.render(
                "identify_interviewer",
                speakers=", ".join(speakers),
                conversation=conversation,
            )
            raw = await self.llm.complete(
                messages,
                model=agent_settings.LLM_CLASSIFIER_MODEL,
                temperature=0,
            )
        except (LLMError, PromptError) as e:
            raise ClassificationFailure(f"面试官识别调用失败: {e.message}", cause=e)
        return parse_interviewers(raw, speakers)

    async def identify(self, epoch: int, buffer: Sequence[Tuple[str, str]]) -> Optional[SpeakerRoleAssignment]:
        """
        执行一次识别；LLM 失败时使用问号启发式

        Returns:
            新的角色分配；该次识别已被手动操作或重置取代时返回 None
        """
        fallback = heuristic_interviewer(buffer)
        try:
            interviewers = await self.classify(buffer)
            logger.info(f"面试官识别完成: {interviewers}")
        except ClassificationFailure as e:
            metrics.increment("identification_fallbacks")
            logger.warning(f"面试官识别失败，使用启发式结果 {fallback}: {e.message}")
            interviewers = [fallback] if fallback else []

        if epoch != self.epoch:
            logger.info("识别结果已过期（期间有手动指定或重置），丢弃")
            return None
        if not interviewers:
            # 缓冲区为空时不可能到这里；保持 collecting 等待更多发言
            self.state = "collecting"
            return None

        metrics.increment("identifications")
        self.assignment = SpeakerRoleAssignment(interviewers=interviewers)
        self.state = "resolved"
        self.buffer = []
        return self.assignment

    def reidentify(self, final_utterances: Sequence[Utterance]) -> Tuple[int, List[Tuple[str, str]]]:
        """
        用户触发的重新识别：以已定稿的转写作为种子缓冲区，立即进入 classifying

        旧的角色分配在新结果出来之前保持有效。

        Raises:
            IdentificationError: 正在识别中，或定稿发言不足
        """
        if self.state == "classifying":
            raise IdentificationError("面试官识别正在进行中")
        seed = [(u.speaker_id, u.text) for u in final_utterances if u.is_final and u.text]
        if len(seed) < self.min_utterances:
            raise IdentificationError(
                f"再識別に必要なデータが不足しています（定稿発言 {len(seed)} 件、{self.min_utterances} 件以上必要）"
            )

        self.epoch += 1
        self.buffer = seed
        self.state = "collecting"
        self._started_at = self.clock()
        self._paused_total = 0.0
        if self._paused_at is not None:
            self._paused_at = self._started_at
        return self.begin_classification()

    # ---------- 手动 ----------

    def toggle(self, speaker_id: str) -> SpeakerRoleAssignment:
        """
        切换某个说话人的面试官身份，立即进入 resolved

        移除最后一个面试官时不做任何事。
        """
        interviewers = list(self.assignment.interviewers)
        if speaker_id in interviewers:
            if len(interviewers) == 1:
                logger.warning("至少需要一名面试官，忽略本次切换")
                return self.assignment
            interviewers.remove(speaker_id)
        else:
            interviewers.append(speaker_id)

        self.epoch += 1
        self.assignment = SpeakerRoleAssignment(interviewers=interviewers)
        self.state = "resolved"
        self.buffer = []
        logger.info(f"面试官已手动指定: {interviewers}")
        return self.assignment

    def role_of(self, speaker_id: str) -> Role:
        return self.assignment.role_of(speaker_id)

    def reset(self):
        self.epoch += 1
        self.state = "unresolved"
        self.assignment = SpeakerRoleAssignment()
        self.buffer = []
        self._started_at = None
        self._paused_at = None
        self._paused_total = 0.0

    def status(self) -> Dict:
        return {
            "state": self.state,
            "interviewers": list(self.assignment.interviewers),
            "elapsed": round(self.elapsed(), 1),
            "buffered": len(self.buffer),
        }
