"""
扩展配置模块（AI Agent相关）
"""
import os
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import ConfigDict

# 获取server目录的绝对路径
SERVER_DIR = Path(__file__).parent.parent.resolve()
ENV_FILE_PATH = SERVER_DIR / ".env"


class AgentSettings(BaseSettings):
    """AI Agent配置"""

    # 自动回答配置
    AUTO_ANSWER_ENABLED: bool = os.getenv("AUTO_ANSWER_ENABLED", "true").lower() == "true"

    # LLM模型配置
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", "")
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")  # 回答生成模型
    LLM_CLASSIFIER_MODEL: str = os.getenv("LLM_CLASSIFIER_MODEL", "gpt-4o-mini")  # 轻量判定模型（是否提问、识别面试官、仲裁）
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "1200"))
    LLM_TIMEOUT: float = float(os.getenv("LLM_TIMEOUT", "30"))
    LLM_CONCURRENCY_LIMIT: int = int(os.getenv("LLM_CONCURRENCY_LIMIT", "5"))

    # Embedding配置
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_API_KEY: str = os.getenv("EMBEDDING_API_KEY", "")
    EMBEDDING_BASE_URL: str = os.getenv("EMBEDDING_BASE_URL", "https://api.openai.com/v1")
    EMBEDDING_TIMEOUT: float = float(os.getenv("EMBEDDING_TIMEOUT", "10"))

    # 面接稿匹配配置
    SCRIPT_PRIORITY: str = os.getenv("SCRIPT_PRIORITY", "similar")  # exact or similar
    SCRIPT_SIMILARITY_THRESHOLD: float = float(os.getenv("SCRIPT_SIMILARITY_THRESHOLD", "0.84"))
    SCRIPT_EXACT_THRESHOLD: float = float(os.getenv("SCRIPT_EXACT_THRESHOLD", "0.97"))
    SCRIPT_CANDIDATE_LIMIT: int = int(os.getenv("SCRIPT_CANDIDATE_LIMIT", "5"))

    # 回答偏好
    RESPONSE_LENGTH: str = os.getenv("RESPONSE_LENGTH", "standard")  # brief / standard / detailed
    EXAMPLE_AMOUNT: str = os.getenv("EXAMPLE_AMOUNT", "normal")  # few / normal / many

    # Pydantic V2 配置
    model_config = ConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


# 全局Agent配置实例
agent_settings = AgentSettings()
