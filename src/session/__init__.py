"""
시청 세션 패키지
"""

from src.session.viewing_session import ActiveDisplayInstance, ViewingSession

__all__ = ["ActiveDisplayInstance", "ViewingSession"]
