"""
WebSocket 工具函数
"""
import json
from typing import Any, Dict

from starlette.websockets import WebSocketState

from logs import setup_logger

logger = setup_logger(__name__)


async def send_json(ws, payload: Dict[str, Any]) -> bool:
    """
    发送JSON消息到WebSocket客户端（连接已关闭时静默跳过）

    Args:
        ws: WebSocket连接对象
        payload: 要发送的字典数据

    Returns:
        是否发送成功
    """
    if getattr(ws, "application_state", None) == WebSocketState.DISCONNECTED:
        return False
    try:
        await ws.send_text(json.dumps(payload, ensure_ascii=False))
        return True
    except (RuntimeError, ConnectionError) as e:
        logger.debug(f"[WS SEND ERROR] {e}")
        return False


def parse_json_message(text: str) -> Dict[str, Any]:
    """
    解析客户端文本消息

    Returns:
        解析后的字典；不是JSON对象时返回空字典
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"JSON解析错误: {text[:100]}")
        return {}
    return data if isinstance(data, dict) else {}
