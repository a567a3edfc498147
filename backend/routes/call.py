"""통화 제어 API 라우터.

통화 생성 / 참가 / 종료 / 상태 조회 엔드포인트들을 제공합니다.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from peercall import CallStateMachine, MediaConstraints, ice_config
from .deps import get_call_machine, verify_auth_header

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["call"])


class ConstraintsRequest(BaseModel):
    """캡처 제약 조건. 생략하면 서버 설정의 기본값을 사용합니다."""
    audio: bool = True
    video: bool = True

    def to_constraints(self) -> MediaConstraints:
        return MediaConstraints(audio=self.audio, video=self.video)


class CreateCallRequest(BaseModel):
    """통화 생성 요청 모델."""
    constraints: Optional[ConstraintsRequest] = None


class JoinCallRequest(BaseModel):
    """통화 참가 요청 모델."""
    channel_id: str
    constraints: Optional[ConstraintsRequest] = None


def _constraints(request: Optional[ConstraintsRequest]) -> Optional[MediaConstraints]:
    return request.to_constraints() if request is not None else None


@router.post("/call")
async def create_call(
    request: Optional[CreateCallRequest] = None,
    machine: CallStateMachine = Depends(get_call_machine),
    _: bool = Depends(verify_auth_header),
):
    """caller로 새 통화를 만들고 상대에게 전달할 채널 ID를 반환합니다.

    Returns:
        dict: {"channel_id": str | None} (설정 중 통화가 종료되면 None)
    """
    constraints = _constraints(request.constraints) if request is not None else None
    channel_id = await machine.create_call(constraints)
    return {"channel_id": channel_id}


@router.post("/call/join")
async def join_call(
    request: JoinCallRequest,
    machine: CallStateMachine = Depends(get_call_machine),
    _: bool = Depends(verify_auth_header),
):
    """callee로 채널에 참가합니다.

    Returns:
        dict: {"phase": str, "channel_id": str}
    """
    await machine.join_call(request.channel_id, _constraints(request.constraints))
    snapshot = machine.snapshot()
    return {"phase": snapshot["phase"], "channel_id": snapshot["channel_id"]}


@router.delete("/call")
async def hang_up(
    machine: CallStateMachine = Depends(get_call_machine),
    _: bool = Depends(verify_auth_header),
):
    """현재 통화를 종료하고 종료 후 상태를 반환합니다."""
    await machine.hang_up()
    return machine.snapshot()


@router.get("/call")
async def get_call(
    machine: CallStateMachine = Depends(get_call_machine),
    _: bool = Depends(verify_auth_header),
):
    """현재 통화 상태를 조회합니다."""
    return machine.snapshot()


@router.get("/ice-servers")
async def get_ice_servers(_: bool = Depends(verify_auth_header)):
    """브라우저 피어용 ICE 서버 설정을 제공합니다.

    Returns:
        list: iceServers 배열 (STUN, 설정된 경우 TURN 포함)

    Environment Variables:
        TURN_SERVER_URL, TURN_USERNAME, TURN_CREDENTIAL, STUN_SERVER_URL
    """
    servers = ice_config.as_dicts()
    if ice_config.has_turn_server:
        logger.info("ICE 서버 제공: STUN + TURN")
    else:
        logger.info("ICE 서버 제공: STUN만 (TURN 미설정)")
    return servers
