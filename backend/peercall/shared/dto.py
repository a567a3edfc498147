"""시그널링 문서에 저장되는 wire DTO."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionDescription(BaseModel):
    """SDP offer/answer. 로컬/원격 description으로 설정된 뒤에는 변경되지 않는다."""

    model_config = ConfigDict(frozen=True)

    type: Literal["offer", "answer"]
    sdp: str

    def to_wire(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


class IceCandidatePayload(BaseModel):
    """RTCIceCandidate.toJSON() 과 동일한 형태의 ICE candidate."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    candidate: str = Field(default="", description="'candidate:' 로 시작하는 SDP 속성 문자열")
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None
    usernameFragment: Optional[str] = None

    @property
    def key(self) -> tuple:
        """중복 판별용 키."""
        return (self.candidate.strip(), self.sdpMid, self.sdpMLineIndex)

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)
