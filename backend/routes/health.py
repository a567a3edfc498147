"""Health Check API 라우터.

서비스 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check(request: Request):
    """시그널링 저장소와 통화 상태를 확인합니다.

    Returns:
        dict: 저장소 백엔드 이름과 현재 통화 단계
    """
    machine = getattr(request.app.state, "call_machine", None)
    if machine is None:
        return {"status": "not_initialized", "store": None, "call_phase": None}

    return {
        "status": "ok",
        "store": machine.signaling.store.name,
        "call_phase": machine.phase.value,
    }
