"""
统一异常体系

只有 TransportError 会终止当前会话；其余异常都在回答路由内部降级处理。
"""
from typing import Optional


class AgentError(Exception):
    """Agent相关异常的基类"""
    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class TransportError(AgentError):
    """语音识别流断开 / 鉴权失败（致命，停止采集）"""
    def __init__(self, message: str, cause: Optional[Exception] = None, code: Optional[int] = None):
        super().__init__(message, cause)
        self.code = code


class LLMError(AgentError):
    """LLM调用失败异常"""
    pass


class ClassificationFailure(AgentError):
    """面试官识别或提问判定调用失败（本地降级，不致命）"""
    pass


class MatchingFailure(AgentError):
    """Embedding调用失败（跳过相似度匹配）"""
    pass


class ArbitrationParseError(AgentError):
    """仲裁响应格式不合法（回退到生成）"""
    pass


class IdentificationError(AgentError):
    """用户触发的识别操作被拒绝（状态未改变）"""
    pass


class PromptError(AgentError):
    """Prompt模板错误异常"""
    pass
