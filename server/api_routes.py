"""
API路由模块
"""
from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from utils.schemas import (
    PreparationRequest, PreparationResponse,
    ContextOptionsRequest,
    TranscriptResponse, TranscriptExportResponse,
    CorrectUtteranceRequest,
    RolesResponse, ToggleInterviewerRequest,
    SuggestionsResponse,
    SessionStatusResponse, SimpleResponse,
)
from core.types import Suggestion, Utterance
from asr.pipeline import InterviewPipeline, get_or_create_pipeline, get_pipeline, remove_pipeline
from nlp.exceptions import IdentificationError, LLMError
from logs import setup_logger

logger = setup_logger(__name__)

# 创建路由器
router = APIRouter()


def _require_pipeline(session_id: str) -> InterviewPipeline:
    pipeline = get_pipeline(session_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="会话不存在")
    return pipeline


# =====================================================
# 准备资料
# =====================================================

@router.post("/sessions/{session_id}/preparation", response_model=PreparationResponse)
async def load_preparation(session_id: str, request: PreparationRequest):
    """载入准备资料（简历、职务经历、面接稿等），替换之前的全部资料"""
    pipeline = get_or_create_pipeline(session_id)
    pipeline.agent.update_preferences(
        priority_mode=request.priority_mode,
        response_length=request.response_length,
        example_amount=request.example_amount,
    )
    if request.auto_answer is not None:
        pipeline.auto_answer = request.auto_answer

    try:
        summary = await pipeline.load_preparation(request.data)
    except Exception:
        logger.exception("载入准备资料失败")
        raise HTTPException(status_code=500, detail="内部服务器错误")

    return PreparationResponse(session_id=session_id, **summary)


@router.put("/sessions/{session_id}/context-options", response_model=SimpleResponse)
async def update_context_options(session_id: str, request: ContextOptionsRequest):
    pipeline = _require_pipeline(session_id)
    pipeline.budgeter.update_options(
        max_total_chars=request.max_total_chars,
        conversation_turns=request.conversation_turns,
        recent_memory=request.recent_memory,
    )
    return SimpleResponse(success=True)


@router.get("/sessions/{session_id}/status", response_model=SessionStatusResponse)
async def get_status(session_id: str):
    pipeline = _require_pipeline(session_id)
    return SessionStatusResponse(session_id=session_id, status=pipeline.status())


# =====================================================
# 转写
# =====================================================

@router.get("/sessions/{session_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(session_id: str, final_only: bool = False):
    """获取当前转写（按开始时间排序）"""
    pipeline = _require_pipeline(session_id)
    if final_only:
        utterances = pipeline.reconciler.final_utterances()
    else:
        utterances = pipeline.reconciler.utterances()
    return TranscriptResponse(session_id=session_id, utterances=utterances)


@router.get("/sessions/{session_id}/transcript/export")
async def export_transcript(session_id: str, format: str = "json"):
    """
    导出定稿转写

    format=text 时直接返回纯文本（便于下载）
    """
    pipeline = _require_pipeline(session_id)
    text = pipeline.export_transcript()
    if format == "text":
        return PlainTextResponse(text)
    return TranscriptExportResponse(session_id=session_id, text=text)


@router.patch("/sessions/{session_id}/utterances/{utterance_id}", response_model=Utterance)
async def correct_utterance(session_id: str, utterance_id: str, request: CorrectUtteranceRequest):
    """手动修正定稿发言的说话人或文本"""
    pipeline = _require_pipeline(session_id)
    try:
        return pipeline.correct_utterance(utterance_id, speaker_id=request.speaker_id, text=request.text)
    except KeyError:
        raise HTTPException(status_code=404, detail="发言不存在")
    except ValueError as e:
        logger.warning(f"修正发言失败: {e}")
        raise HTTPException(status_code=400, detail=str(e))


# =====================================================
# 说话人角色
# =====================================================

def _roles_response(session_id: str, pipeline: InterviewPipeline) -> RolesResponse:
    return RolesResponse(
        session_id=session_id,
        state=pipeline.identifier.state,
        interviewers=list(pipeline.identifier.assignment.interviewers),
        speakers=pipeline.reconciler.speakers(),
    )


@router.get("/sessions/{session_id}/roles", response_model=RolesResponse)
async def get_roles(session_id: str):
    pipeline = _require_pipeline(session_id)
    return _roles_response(session_id, pipeline)


@router.post("/sessions/{session_id}/roles/toggle", response_model=RolesResponse)
async def toggle_interviewer(session_id: str, request: ToggleInterviewerRequest):
    """切换某个说话人的面试官标记（唯一的面试官不能被取消）"""
    pipeline = _require_pipeline(session_id)
    pipeline.toggle_interviewer(request.speaker_id)
    return _roles_response(session_id, pipeline)


@router.post("/sessions/{session_id}/roles/reidentify", response_model=RolesResponse)
async def reidentify(session_id: str):
    """用已定稿的发言重新识别面试官（结果经由 WebSocket 推送）"""
    pipeline = _require_pipeline(session_id)
    try:
        pipeline.reidentify()
    except IdentificationError as e:
        status = 409 if pipeline.identifier.state == "classifying" else 400
        raise HTTPException(status_code=status, detail=e.message)
    return _roles_response(session_id, pipeline)


# =====================================================
# 回答建议
# =====================================================

@router.get("/sessions/{session_id}/suggestions", response_model=SuggestionsResponse)
async def get_suggestions(session_id: str, limit: int = None):
    pipeline = _require_pipeline(session_id)
    return SuggestionsResponse(
        session_id=session_id,
        suggestions=pipeline.state.get_suggestions(limit),
    )


@router.post("/sessions/{session_id}/suggestions/{suggestion_id}/regenerate", response_model=Suggestion)
async def regenerate_suggestion(session_id: str, suggestion_id: str):
    """重新生成一条回答建议"""
    pipeline = _require_pipeline(session_id)
    try:
        return await pipeline.regenerate(suggestion_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="回答建议不存在")
    except LLMError as e:
        logger.error(f"重新生成失败: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)


# =====================================================
# 会话
# =====================================================

@router.post("/sessions/{session_id}/reset", response_model=SimpleResponse)
async def reset_session(session_id: str):
    """清空转写、识别结果和建议历史（保留准备资料）"""
    pipeline = _require_pipeline(session_id)
    await pipeline.reset()
    return SimpleResponse(success=True, message="会话已重置")


@router.delete("/sessions/{session_id}", response_model=SimpleResponse)
async def delete_session(session_id: str):
    pipeline = remove_pipeline(session_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="会话不存在")
    await pipeline.reset()
    return SimpleResponse(success=True, message="会话已删除")
