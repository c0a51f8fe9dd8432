"""
FastAPI 入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from core.config import agent_settings
from logs import setup_logger
from asr.pipeline import _pipelines, remove_pipeline
from gateway.ws_audio import handle_interview_websocket
from api_routes import router

logger = setup_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("🚀 启动应用...")

    if not settings.STT_API_KEY:
        logger.warning("STT_API_KEY未设置，开始采集时需由客户端提供密钥")
    if not agent_settings.LLM_API_KEY:
        logger.warning("LLM_API_KEY未设置，回答生成与面试官识别将不可用")
    if not (agent_settings.EMBEDDING_API_KEY or agent_settings.LLM_API_KEY):
        logger.warning("Embedding API密钥未配置，面接稿仅支持精确匹配")

    yield

    logger.info("🛑 关闭应用...")
    for sid in list(_pipelines):
        pipeline = remove_pipeline(sid)
        if pipeline is not None:
            await pipeline.reset()


# 创建FastAPI应用
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# 添加CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册API路由
app.include_router(router, prefix="/api")


# WebSocket路由：/ws/interview/{session_id}
@app.websocket("/ws/interview/{session_id}")
async def ws_interview(ws: WebSocket, session_id: str):
    """
    面试WebSocket端点

    Args:
        session_id: 会话ID
    """
    await handle_interview_websocket(ws, session_id)


# 健康检查
@app.get("/")
async def root():
    return {
        "message": f"{settings.APP_NAME} 后端服务运行中",
        "status": "ok",
        "version": settings.APP_VERSION
    }


@app.get("/health")
async def health():
    """健康检查端点"""
    return {
        "status": "healthy",
        "stt_configured": bool(settings.STT_API_KEY),
        "llm_configured": bool(agent_settings.LLM_API_KEY),
    }


@app.get("/metrics")
async def metrics():
    """指标端点"""
    from logs import metrics
    return metrics.summary()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
