#!/usr/bin/env python3
"""
启动面接コパイロット后端服务
"""
import subprocess
import sys
import os


def main():
    print("启动面接コパイロット后端服务...")

    # 切换到server目录
    server_dir = os.path.dirname(os.path.abspath(__file__))
    os.chdir(server_dir)

    # 检查依赖
    try:
        import fastapi  # noqa: F401
        import uvicorn  # noqa: F401
        import aiohttp  # noqa: F401
        import numpy  # noqa: F401
        import langchain_core  # noqa: F401
        print("✅ 所有依赖已安装")
    except ImportError as e:
        print(f"❌ 缺少依赖: {e}")
        print("请运行: pip install -e .")
        sys.exit(1)

    from config import settings

    # 启动服务
    try:
        print("🌐 启动WebSocket服务器...")
        print(f"📡 服务地址: http://localhost:{settings.PORT}")
        print(f"🔗 WebSocket: ws://localhost:{settings.PORT}/ws/interview/<session_id>")
        print("💡 按 Ctrl+C 停止服务")
        print("-" * 50)

        args = [
            sys.executable, "-m", "uvicorn",
            "main:app",
            "--host", settings.HOST,
            "--port", str(settings.PORT),
        ]
        if settings.DEBUG:
            args.append("--reload")
        subprocess.run(args, check=True)
    except KeyboardInterrupt:
        print("\n👋 服务已停止")
    except subprocess.CalledProcessError as e:
        print(f"❌ 启动失败: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
