"""
HTTP 接口模块（api 包）。

- app.py    : create_app()，装配 FastAPI 应用
- routes.py : /health、/chat、/history 路由
- models.py : 请求/响应模型
"""

from chatrelay.api.app import create_app

__all__ = ["create_app"]
