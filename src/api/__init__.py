"""
HTTP/WebSocket API 패키지
"""

from src.api.server import DanmuApiServer, create_app

__all__ = ["DanmuApiServer", "create_app"]
