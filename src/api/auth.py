"""
요청자 인증 모듈입니다.

역할:
- Authorization: Bearer <token> 헤더에서 토큰 추출
- 토큰 검증은 교체 가능한 TokenVerifier에 위임 (실서비스는 외부 ID 공급자)
- 개발용 StaticTokenVerifier는 설정 파일의 api.tokens 테이블로 검증
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from src.config.schema import ApiConfig, TokenEntryConfig
from src.danmu import Actor
from src.danmu.errors import AuthRequired

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


class TokenVerifier(ABC):
    """토큰을 검증하여 요청자를 돌려주는 계약입니다."""

    @abstractmethod
    def verify(self, token: str) -> Optional[Actor]:
        """유효한 토큰이면 Actor, 아니면 None을 반환합니다."""

    def actor_from_header(self, authorization: Optional[str]) -> Optional[Actor]:
        """
        Authorization 헤더를 해석합니다.

        반환값:
            Optional[Actor]: 헤더가 없으면 None (익명 요청)

        에러:
            AuthRequired: 헤더 형식이 잘못되었거나 토큰 검증에 실패한 경우
        """
        if not authorization:
            return None
        if not authorization.lower().startswith(_BEARER_PREFIX):
            raise AuthRequired("Invalid authorization header")
        token = authorization[len(_BEARER_PREFIX):].strip()
        if not token:
            raise AuthRequired("Invalid authorization header")

        actor = self.verify(token)
        if actor is None:
            logger.warning("토큰 검증 실패")
            raise AuthRequired("Invalid or expired token")
        return actor


class StaticTokenVerifier(TokenVerifier):
    """설정에 적힌 토큰 → 사용자 테이블로 검증하는 개발용 구현입니다."""

    def __init__(
        self,
        tokens: dict[str, TokenEntryConfig],
        moderator_ids: tuple[str, ...] = (),
    ) -> None:
        self._tokens = dict(tokens)
        self._moderator_ids = frozenset(moderator_ids)

    @classmethod
    def from_config(cls, api: ApiConfig, moderator_ids: list[str]) -> "StaticTokenVerifier":
        return cls(api.tokens, tuple(moderator_ids))

    def verify(self, token: str) -> Optional[Actor]:
        entry = self._tokens.get(token)
        if entry is None:
            return None
        roles = tuple(entry.roles)
        if entry.uid in self._moderator_ids and "moderator" not in roles:
            roles = roles + ("moderator",)
        return Actor(uid=entry.uid, roles=roles)
