"""
核心类型定义
"""
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator


Role = Literal["interviewer", "candidate", "unresolved"]
ChunkType = Literal[
    "profile",
    "resume",
    "career_history",
    "position",
    "company_research",
    "interview_script",
    "custom",
]
AnswerSource = Literal["script", "generated"]
PriorityMode = Literal["exact", "similar"]


class Utterance(BaseModel):
    """一条稳定的发言（同一说话人的一段连续语音）"""
    id: str
    speaker_id: str  # 原始分离标签（如 spk1）
    role: Role = "unresolved"
    text: str = ""
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    is_final: bool = False
    created_at: str  # ISO 时间


class SpeakerRoleAssignment(BaseModel):
    """被判定为面试官的说话人标签集合（空集合表示尚未识别）"""
    interviewers: List[str] = []

    def role_of(self, speaker_id: str) -> Role:
        if not self.interviewers:
            return "unresolved"
        return "interviewer" if speaker_id in self.interviewers else "candidate"


class KnowledgeChunk(BaseModel):
    """知识片段"""
    id: str
    type: ChunkType
    title: str
    content: str
    base_priority: float
    keywords: List[str] = []
    question_tokens: Optional[List[str]] = None  # 仅面接稿片段
    always_include: bool = False
    # 面接稿片段保留原始问答，序列化时单独输出
    question: Optional[str] = None
    answer: Optional[str] = None


class QAPair(BaseModel):
    """面接稿中的一组问答"""
    question: str
    answer: str


class FileInfo(BaseModel):
    name: str
    size: int = 0


class FileOrText(BaseModel):
    """上传文件或手动输入文本"""
    type: Literal["none", "file", "text"] = "none"
    file: Optional[FileInfo] = None
    text: str = ""


class CustomDocument(BaseModel):
    title: str
    content: str = ""
    file: Optional[FileInfo] = None


class PreparationData(BaseModel):
    """面试准备资料"""
    resume: FileOrText = Field(default_factory=FileOrText)
    career_history: FileOrText = Field(default_factory=FileOrText)
    interview_script: FileOrText = Field(default_factory=FileOrText)
    position: FileOrText = Field(default_factory=FileOrText)
    company_research: FileOrText = Field(default_factory=FileOrText)
    custom_documents: List[CustomDocument] = []
    industry: str = ""
    company: str = ""
    voice_calibrated: bool = False


class MatchResult(BaseModel):
    """面接稿匹配结果"""
    match: Optional[QAPair] = None
    similarity: float = 0.0
    source: Literal["exact", "similar", "none"] = "none"


class ScriptCandidate(BaseModel):
    qa: QAPair
    score: float


def _answer_text(value):
    """answer 字段：缺省或 null 视为空串，其余必须是字符串"""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("answer 字段必须是字符串")
    return value.strip()


class ScriptChoice(BaseModel):
    """仲裁结果：采用第 candidate_index 个候选（从1开始）"""
    model_config = ConfigDict(populate_by_name=True)

    source: Literal["script"] = "script"
    candidate_index: StrictInt = Field(alias="candidate")
    text: str = Field(default="", alias="answer")

    @field_validator("text", mode="before")
    @classmethod
    def normalize_text(cls, value):
        return _answer_text(value)


class GeneratedAnswer(BaseModel):
    """仲裁结果：需要自由生成（text 为模型顺带给出的回答，可为空）"""
    model_config = ConfigDict(populate_by_name=True)

    source: Literal["generated"] = "generated"
    text: str = Field(default="", alias="answer")

    @field_validator("text", mode="before")
    @classmethod
    def normalize_text(cls, value):
        return _answer_text(value)


ArbitrationResult = Annotated[Union[ScriptChoice, GeneratedAnswer], Field(discriminator="source")]


class IdentificationReply(BaseModel):
    """面试官识别调用的响应 {"interviewers": [...]}"""
    interviewers: List[StrictStr]


class RoutedAnswer(BaseModel):
    answer: str
    source: AnswerSource
    tier: Literal["direct", "arbitration", "generation"]


class SnapshotResult(BaseModel):
    """上下文快照构建结果"""
    context: str  # 序列化后的 JSON 文本
    used_chunk_ids: List[str] = []
    total_chars: int = 0
    truncated: bool = False


class Suggestion(BaseModel):
    """对外输出的回答建议"""
    id: str
    question: str
    answer: str
    source: AnswerSource
    timestamp: float  # Unix时间戳
    utterance_id: Optional[str] = None
