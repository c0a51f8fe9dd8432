"""
转写合并器

把语音识别流中不断修订的 interim / final 片段合并成稳定的发言记录。
内部状态是一张显式的键控表：

- _records: 发言 id -> Utterance（按 _order 排序输出）
- _slots: 发言键（分离器给出的 utterance key，否则为说话人标签）-> 最近一条发言
- _active_by_speaker: 说话人标签 -> 当前未定稿的发言 id（每个说话人最多一条）
"""
import bisect
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from core.types import Role, Utterance
from logs import setup_logger, metrics

logger = setup_logger(__name__)


@dataclass
class _Slot:
    utterance_id: str
    speaker_id: str
    updated_at: float


def _unresolved(_speaker_id: str) -> Role:
    return "unresolved"


class TranscriptReconciler:
    """转写合并器（每个会话一个实例，按引用传给各调用方）"""

    def __init__(
        self,
        role_of: Optional[Callable[[str], Role]] = None,
        grace_window: Optional[float] = None,
        stale_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_sealed: Optional[Callable[[Utterance], None]] = None,
    ):
        self.role_of = role_of or _unresolved
        self.grace_window = settings.RECONCILE_GRACE_WINDOW if grace_window is None else grace_window
        self.stale_after = settings.RECONCILE_STALE_AFTER if stale_after is None else stale_after
        self.clock = clock
        self.on_sealed = on_sealed

        self._records: Dict[str, Utterance] = {}
        self._order: List[Tuple[int, int, str]] = []
        self._sort_keys: Dict[str, Tuple[int, int, str]] = {}
        self._slots: Dict[str, _Slot] = {}
        self._active_by_speaker: Dict[str, str] = {}
        self._speakers: Dict[str, None] = {}
        self._seq = 0
        self._max_start = 0

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
        处理一条转写更新

        Args:
            speaker_tag: 说话人标签
            text: 当前文本（整段，而非增量）
            is_final: 是否定稿
            utterance_key: 分离器提供的发言键（可选）
            start_ms: 开始时间（毫秒，可选）
            end_ms: 结束时间（毫秒，可选）

        Returns:
            更新后的发言（副本）；空文本时返回 None
        """
        now = self.clock()
        self._collect_garbage(now)

        slot_key = utterance_key or speaker_tag
        text = (text or "").strip()

        if not text:
            if is_final:
                # "发言结束"信号：清除该键与说话人的活动映射
                slot = self._slots.pop(slot_key, None)
                if slot is not None:
                    self._release_active(slot.speaker_id, slot.utterance_id)
                self._release_active(speaker_tag)
            return None

        slot = self._slots.get(slot_key)
        record: Optional[Utterance] = None
        opened = False

        if slot is not None:
            previous = self._records.get(slot.utterance_id)
            if slot.speaker_id != speaker_tag:
                # 说话人重新分配：释放原说话人的簿记
                self._release_active(slot.speaker_id, slot.utterance_id)
                if previous is not None and not previous.is_final:
                    # 未定稿的发言整体改归新说话人（同一 id，不留重复记录）
                    record = previous
                    record.speaker_id = speaker_tag
                    record.role = self.role_of(speaker_tag)
                    self._speakers.setdefault(speaker_tag, None)
                    opened = True
            elif previous is not None:
                fresh_enough = now - slot.updated_at < self.grace_window
                if is_final:
                    record = previous if fresh_enough else None
                elif not previous.is_final:
                    record = previous

        if record is None:
            record = self._create(speaker_tag, start_ms)
            opened = True
        if opened:
            self._seal_previous_active(speaker_tag, record.id)

        record.text = text
        if start_ms is not None and record.start_ms is None:
            record.start_ms = start_ms
            self._reposition(record)
        if end_ms is not None:
            record.end_ms = end_ms if record.end_ms is None else max(record.end_ms, end_ms)

        if is_final:
            if not record.is_final:
                metrics.increment("utterances_finalized")
            record.is_final = True
            self._release_active(speaker_tag, record.id)
        else:
            self._active_by_speaker[speaker_tag] = record.id

        self._slots[slot_key] = _Slot(record.id, speaker_tag, now)
        return record.model_copy()

    def correct(
        self,
        utterance_id: str,
        speaker_id: Optional[str] = None,
        text: Optional[str] = None,
    ) -> Utterance:
        """
        手动修正已定稿的发言（说话人或文本）

        Raises:
            KeyError: 发言不存在
            ValueError: 发言尚未定稿，或修正后文本为空
        """
        record = self._records.get(utterance_id)
        if record is None:
            raise KeyError(utterance_id)
        if not record.is_final:
            raise ValueError("只能修正已定稿的发言")

        if text is not None:
            text = text.strip()
            if not text:
                raise ValueError("修正后的文本不能为空")
            record.text = text

        if speaker_id and speaker_id != record.speaker_id:
            self._rehome(record, speaker_id)

        record.role = self.role_of(record.speaker_id)
        return record.model_copy()

    def apply_roles(self, role_of: Optional[Callable[[str], Role]] = None) -> List[Utterance]:
        """按新的角色映射重新计算所有发言的角色，返回发生变化的发言"""
        if role_of is not None:
            self.role_of = role_of
        changed = []
        for _, _, utterance_id in self._order:
            record = self._records[utterance_id]
            role = self.role_of(record.speaker_id)
            if role != record.role:
                record.role = role
                changed.append(record.model_copy())
        return changed

    def get(self, utterance_id: str) -> Optional[Utterance]:
        record = self._records.get(utterance_id)
        return record.model_copy() if record else None

    def utterances(self) -> List[Utterance]:
        return [self._records[uid].model_copy() for _, _, uid in self._order]

    def final_utterances(self, limit: Optional[int] = None) -> List[Utterance]:
        finals = [u for u in self.utterances() if u.is_final]
        if limit is not None:
            return finals[-limit:] if limit > 0 else []
        return finals

    def speakers(self) -> List[str]:
        """按首次出现顺序返回说话人标签"""
        return list(self._speakers)

    def active_utterance_id(self, speaker_tag: str) -> Optional[str]:
        return self._active_by_speaker.get(speaker_tag)

    def reset(self):
        self._records.clear()
        self._order.clear()
        self._sort_keys.clear()
        self._slots.clear()
        self._active_by_speaker.clear()
        self._speakers.clear()
        self._seq = 0
        self._max_start = 0

    def __len__(self):
        return len(self._records)

    def _create(self, speaker_tag: str, start_ms: Optional[int]) -> Utterance:
        self._seq += 1
        record = Utterance(
            id=uuid.uuid4().hex[:12],
            speaker_id=speaker_tag,
            role=self.role_of(speaker_tag),
            start_ms=start_ms,
            created_at=datetime.now().isoformat(),
        )
        self._records[record.id] = record
        self._speakers.setdefault(speaker_tag, None)
        self._insert_order(record)
        return record

    def _sort_key(self, record: Utterance, seq: int) -> Tuple[int, int, str]:
        # 没有开始时间时排在目前见过的最晚开始时间处（即按到达顺序）
        start = record.start_ms if record.start_ms is not None else self._max_start
        return (start, seq, record.id)

    def _insert_order(self, record: Utterance):
        if record.start_ms is not None:
            self._max_start = max(self._max_start, record.start_ms)
        key = self._sort_key(record, self._seq)
        self._sort_keys[record.id] = key
        bisect.insort(self._order, key)

    def _reposition(self, record: Utterance):
        old_key = self._sort_keys.get(record.id)
        if old_key is None:
            return
        index = bisect.bisect_left(self._order, old_key)
        if index < len(self._order) and self._order[index] == old_key:
            self._order.pop(index)
        self._max_start = max(self._max_start, record.start_ms)
        new_key = self._sort_key(record, old_key[1])
        self._sort_keys[record.id] = new_key
        bisect.insort(self._order, new_key)

    def _release_active(self, speaker_tag: str, utterance_id: Optional[str] = None):
        current = self._active_by_speaker.get(speaker_tag)
        if current is not None and (utterance_id is None or current == utterance_id):
            del self._active_by_speaker[speaker_tag]

    def _seal_previous_active(self, speaker_tag: str, new_id: str):
        previous_id = self._active_by_speaker.pop(speaker_tag, None)
        if previous_id is None or previous_id == new_id:
            return
        previous = self._records.get(previous_id)
        if previous is None or previous.is_final:
            return
        # 同一说话人开始新发言：旧的未定稿发言直接定稿（不触发回答路由）
        previous.is_final = True
        logger.debug(f"封存未定稿发言: {previous_id} ({speaker_tag})")
        if self.on_sealed is not None:
            self.on_sealed(previous.model_copy())

    def _rehome(self, record: Utterance, new_speaker: str):
        old_speaker = record.speaker_id
        for slot in self._slots.values():
            if slot.utterance_id == record.id:
                slot.speaker_id = new_speaker

        old_slot = self._slots.get(old_speaker)
        if old_slot is not None and old_slot.utterance_id == record.id:
            del self._slots[old_speaker]
            self._slots.setdefault(new_speaker, old_slot)

        record.speaker_id = new_speaker
        self._speakers.setdefault(new_speaker, None)
        logger.info(f"发言 {record.id} 的说话人已修正: {old_speaker} -> {new_speaker}")

    def _collect_garbage(self, now: float):
        stale = []
        for key, slot in self._slots.items():
            record = self._records.get(slot.utterance_id)
            if record is None or (record.is_final and now - slot.updated_at > self.stale_after):
                stale.append(key)
        for key in stale:
            del self._slots[key]
