"""통화 모듈.

Classes:
    CallStateMachine: caller/callee 흐름과 종료 정리를 담당하는 오케스트레이터
    CallSession: 통화 세션 상태
    CallPhase: 통화 진행 단계
    CallRole: caller / callee
"""

from .session import CallPhase, CallRole, CallSession
from .state_machine import CallStateMachine

__all__ = [
    "CallStateMachine",
    "CallSession",
    "CallPhase",
    "CallRole",
]
