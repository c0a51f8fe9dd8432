"""
SessionState（回答建议历史、统计、元数据）
"""
from typing import Any, Dict, List, Optional
from datetime import datetime
from collections import deque

from config import settings
from core.types import Suggestion


class SessionState:
    """
    会话状态类
    - 每个面试会话维护一个独立的 SessionState 实例
    - 使用deque管理回答建议历史（超过上限时丢弃最旧的）
    """
    def __init__(self, sid: str, max_suggestions: Optional[int] = None):
        self.sid = sid
        self.max_suggestions = max_suggestions or settings.SUGGESTION_HISTORY_LIMIT

        self.suggestions: deque = deque(maxlen=self.max_suggestions)
        self.seq: int = 0
        self.paused: bool = False
        self.meta: Dict[str, Any] = {}
        self.stats: Dict[str, Any] = self._new_stats()

    def _new_stats(self) -> Dict[str, Any]:
        return {
            "start_time": datetime.now().isoformat(),
            "tokens_received": 0,
            "utterances_finalized": 0,
            "questions_detected": 0,
            "questions_skipped": 0,
            "suggestions_generated": 0,
            "generation_errors": 0,
        }

    def next_seq(self) -> int:
        """生成下一个消息序号"""
        self.seq += 1
        return self.seq

    def increment_stats(self, key: str, value: int = 1):
        """增加统计值"""
        if key in self.stats and isinstance(self.stats[key], (int, float)):
            self.stats[key] += value

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        start_time = datetime.fromisoformat(self.stats["start_time"])
        duration = (datetime.now() - start_time).total_seconds()
        return {
            **self.stats,
            "duration_seconds": duration,
            "suggestions_size": len(self.suggestions),
            "paused": self.paused,
        }

    def add_suggestion(self, suggestion: Suggestion):
        # deque会自动处理maxlen限制
        self.suggestions.append(suggestion)
        self.increment_stats("suggestions_generated")

    def replace_suggestion(self, suggestion: Suggestion) -> bool:
        """按 id 替换已有建议（重新生成），不存在时返回 False"""
        for index, item in enumerate(self.suggestions):
            if item.id == suggestion.id:
                self.suggestions[index] = suggestion
                return True
        return False

    def find_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        for item in self.suggestions:
            if item.id == suggestion_id:
                return item
        return None

    def get_suggestions(self, limit: Optional[int] = None) -> List[Suggestion]:
        items = list(self.suggestions)
        if limit is not None and limit > 0:
            items = items[-limit:]
        return items

    def reset(self):
        """清空状态（可复用 Session）"""
        self.suggestions.clear()
        self.seq = 0
        self.paused = False
        self.meta = {}
        self.stats = self._new_stats()

    def __repr__(self):
        return f"<SessionState sid={self.sid}, seq={self.seq}, suggestions={len(self.suggestions)}>"
