"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 의존성을 정의합니다.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException, Request

from peercall import CallStateMachine

# 접근 비밀번호 설정 (비어 있으면 인증 생략)
ACCESS_PASSWORD = os.getenv("ACCESS_PASSWORD", "")


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """Authorization 헤더를 검증합니다.

    Args:
        authorization: Authorization 헤더 값

    Returns:
        bool: 검증 성공 시 True

    Raises:
        HTTPException: 인증 실패 시
    """
    if not ACCESS_PASSWORD:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if parts[1] != ACCESS_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def get_call_machine(request: Request) -> CallStateMachine:
    """lifespan에서 만든 CallStateMachine을 반환합니다.

    Raises:
        HTTPException: 서버 초기화가 끝나지 않은 경우 (503)
    """
    machine = getattr(request.app.state, "call_machine", None)
    if machine is None:
        raise HTTPException(status_code=503, detail="통화 서비스가 초기화되지 않았습니다")
    return machine
