"""
댓글 애니메이션 명세 및 스케줄러 패키지
"""

from src.render.animation import AnimationScheduler, AnimationSpec, estimate_text_width, parse_color

__all__ = ["AnimationScheduler", "AnimationSpec", "estimate_text_width", "parse_color"]
