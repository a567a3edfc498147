"""통화 도메인 예외 모듈.

시그널링/미디어/피어 연결 계층에서 발생하는 오류를 하나의 계층으로 정의합니다.
HTTP 계층은 status_code를 그대로 응답 코드로 사용합니다.

Hierarchy:
    CallError
    ├── MediaUnavailable     (캡처 권한 거부 / 장치 없음)
    ├── StoreUnavailable     (문서 저장소 일시 장애)
    ├── ChannelNotFound      (존재하지 않는 채널)
    ├── InvalidChannelId     (빈 값 / 형식 오류 채널 ID)
    ├── ProtocolError        (offer/answer 중복 게시 등 프로토콜 위반)
    ├── NegotiationError     (잘못된 단계의 SDP 처리)
    ├── SessionClosed        (close 이후 호출)
    └── CallInProgress       (이전 통화가 아직 정리되지 않음)
"""

from __future__ import annotations


class CallError(Exception):
    status_code: int = 500
    default_detail: str = "통화 처리 중 오류가 발생했습니다."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MediaUnavailable(CallError):
    status_code = 503
    default_detail = "카메라/마이크를 사용할 수 없습니다."


class StoreUnavailable(CallError):
    status_code = 503
    default_detail = "시그널링 저장소에 연결할 수 없습니다."


class ChannelNotFound(CallError):
    status_code = 404
    default_detail = "채널을 찾을 수 없습니다."


class InvalidChannelId(CallError):
    status_code = 400
    default_detail = "유효하지 않은 채널 ID입니다."


class ProtocolError(CallError):
    status_code = 409
    default_detail = "시그널링 프로토콜 위반입니다."


class NegotiationError(CallError):
    status_code = 409
    default_detail = "세션 협상에 실패했습니다."


class SessionClosed(CallError):
    status_code = 409
    default_detail = "이미 종료된 세션입니다."


class CallInProgress(CallError):
    status_code = 409
    default_detail = "진행 중인 통화가 있습니다."
