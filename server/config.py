"""
统一配置模块
"""
import os
from pathlib import Path
from typing import List
from pydantic_settings import BaseSettings
from pydantic import ConfigDict

# 获取server目录的绝对路径
SERVER_DIR = Path(__file__).parent.resolve()
ENV_FILE_PATH = SERVER_DIR / ".env"


class Settings(BaseSettings):
    """应用配置"""

    # 应用基础配置
    APP_NAME: str = "面接コパイロット"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # 服务器配置
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    # 语音识别传输配置（流式 WebSocket）
    STT_API_KEY: str = os.getenv("STT_API_KEY", "")
    STT_URL: str = os.getenv("STT_URL", "wss://stt-rt.soniox.com/transcribe-websocket")
    STT_MODEL: str = os.getenv("STT_MODEL", "stt-rt-preview")
    STT_AUDIO_FORMAT: str = "pcm_s16le"
    STT_SAMPLE_RATE: int = int(os.getenv("STT_SAMPLE_RATE", "24000"))
    STT_NUM_CHANNELS: int = 1
    STT_LANGUAGE_HINTS: List[str] = ["ja", "en"]
    STT_CONTEXT: str = os.getenv("STT_CONTEXT", "")
    STT_ENABLE_DIARIZATION: bool = True
    STT_ENABLE_LANGUAGE_ID: bool = False
    STT_ENABLE_ENDPOINT_DETECTION: bool = True
    STT_KEEPALIVE_INTERVAL: float = 10.0  # 暂停期间保活消息间隔（秒）

    # 转写合并配置
    RECONCILE_GRACE_WINDOW: float = float(os.getenv("RECONCILE_GRACE_WINDOW", "2.0"))  # final 归并到上一条的时间窗口（秒）
    RECONCILE_STALE_AFTER: float = float(os.getenv("RECONCILE_STALE_AFTER", "120.0"))  # final 记录簿记过期时间（秒）

    # 面试官识别配置
    IDENTIFY_MIN_ELAPSED: float = float(os.getenv("IDENTIFY_MIN_ELAPSED", "60.0"))  # 至少收集多少秒
    IDENTIFY_MIN_UTTERANCES: int = int(os.getenv("IDENTIFY_MIN_UTTERANCES", "3"))  # 至少多少条 final 发言

    # 上下文预算配置
    CONTEXT_MAX_CHARS: int = int(os.getenv("CONTEXT_MAX_CHARS", "9000"))
    CONTEXT_CONVERSATION_TURNS: int = int(os.getenv("CONTEXT_CONVERSATION_TURNS", "6"))
    CONTEXT_RECENT_MEMORY: int = int(os.getenv("CONTEXT_RECENT_MEMORY", "4"))
    CHUNK_MAX_LENGTH: int = int(os.getenv("CHUNK_MAX_LENGTH", "700"))

    # 回答建议历史
    SUGGESTION_HISTORY_LIMIT: int = int(os.getenv("SUGGESTION_HISTORY_LIMIT", "20"))

    # WebSocket 背压配置
    WS_AUDIO_QUEUE_MAX_SIZE: int = 50
    WS_AUDIO_QUEUE_DROP_OLDEST: bool = True  # 队列满时丢弃最旧

    # 日志配置
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")  # json or text

    # Pydantic V2 配置
    model_config = ConfigDict(
        env_file=str(ENV_FILE_PATH),  # 使用绝对路径，确保能找到.env文件
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


# 全局配置实例
settings = Settings()
