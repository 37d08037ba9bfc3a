"""
화면 레인 배치 패키지
"""

from src.layout.lane_allocator import LaneAllocator, LaneAssignment

__all__ = ["LaneAllocator", "LaneAssignment"]
