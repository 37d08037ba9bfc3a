"""
재생 시각 기준 활성 댓글 필터 패키지
"""

from src.timeline.window_filter import TemporalWindowFilter, WindowUpdate, filter_active

__all__ = ["TemporalWindowFilter", "WindowUpdate", "filter_active"]
