"""
Pydantic模型定义（HTTP 请求 / 响应）
"""
from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any

from core.types import PreparationData, PriorityMode, Suggestion, Utterance


# =====================================================
# 准备资料
# =====================================================

class PreparationRequest(BaseModel):
    """载入准备资料请求"""
    data: PreparationData
    priority_mode: Optional[PriorityMode] = Field(None, description="面接稿优先模式：'exact' | 'similar'")
    response_length: Optional[str] = Field(None, description="回答长度：'brief' | 'standard' | 'detailed'")
    example_amount: Optional[str] = Field(None, description="举例数量：'few' | 'normal' | 'many'")
    auto_answer: Optional[bool] = Field(None, description="是否自动生成回答建议")


class PreparationResponse(BaseModel):
    """载入结果"""
    session_id: str
    chunks: int
    script_pairs: int


class ContextOptionsRequest(BaseModel):
    """上下文预算调整"""
    max_total_chars: Optional[int] = Field(None, gt=0)
    conversation_turns: Optional[int] = Field(None, ge=0)
    recent_memory: Optional[int] = Field(None, ge=0)


# =====================================================
# 转写
# =====================================================

class TranscriptResponse(BaseModel):
    session_id: str
    utterances: List[Utterance]


class TranscriptExportResponse(BaseModel):
    session_id: str
    text: str


class CorrectUtteranceRequest(BaseModel):
    """手动修正一条定稿发言（改说话人或改文本）"""
    speaker_id: Optional[str] = None
    text: Optional[str] = None


# =====================================================
# 说话人角色
# =====================================================

class RolesResponse(BaseModel):
    session_id: str
    state: str
    interviewers: List[str]
    speakers: List[str]


class ToggleInterviewerRequest(BaseModel):
    speaker_id: str


# =====================================================
# 回答建议
# =====================================================

class SuggestionsResponse(BaseModel):
    session_id: str
    suggestions: List[Suggestion]


# =====================================================
# 会话
# =====================================================

class SessionStatusResponse(BaseModel):
    """会话状态"""
    session_id: str
    status: Dict[str, Any]


class SimpleResponse(BaseModel):
    success: bool
    message: Optional[str] = None
