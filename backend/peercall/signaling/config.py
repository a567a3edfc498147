"""시그널링 모듈 설정.

문서 저장소 종류, Firebase 인증, 후보 추가 재시도 정책 등 시그널링 관련 설정.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env 파일 로드
_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


class SignalingSettings(BaseSettings):
    """시그널링 설정 클래스.

    환경 변수를 Python 객체로 매핑하고 유효성을 검증합니다.
    """

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    # 저장소 선택
    STORE_BACKEND: Literal["firestore", "memory"] = Field(
        default="firestore",
        description="시그널링 문서 저장소 (firestore | memory)"
    )

    # Firebase / Firestore
    FIREBASE_PROJECT_ID: Optional[str] = Field(
        default=None,
        description="Firebase 프로젝트 ID"
    )
    FIREBASE_SERVICE_ACCOUNT_PATH: Optional[str] = Field(
        default=None,
        description="서비스 계정 키 JSON 경로"
    )
    FIREBASE_USE_EMULATOR: bool = Field(
        default=False,
        description="Firestore 에뮬레이터 사용 여부"
    )
    FIRESTORE_EMULATOR_HOST: str = Field(
        default="localhost:8080",
        description="Firestore 에뮬레이터 주소"
    )

    # 채널 문서 컬렉션 이름
    CHANNELS_COLLECTION: str = Field(
        default="channels",
        description="채널 문서가 저장되는 최상위 컬렉션"
    )

    # 후보 추가 재시도
    CANDIDATE_APPEND_MAX_RETRIES: int = Field(
        default=5,
        ge=0,
        description="ICE 후보 추가 실패 시 최대 재시도 횟수"
    )
    CANDIDATE_APPEND_BACKOFF_SECONDS: float = Field(
        default=0.2,
        ge=0.0,
        description="재시도 기본 대기 시간 (지수 증가)"
    )


@lru_cache()
def get_signaling_settings() -> SignalingSettings:
    """설정 인스턴스를 반환합니다 (캐시됨)."""
    settings = SignalingSettings()
    logger.info(
        f"[Signaling Config] 저장소={settings.STORE_BACKEND}, "
        f"컬렉션={settings.CHANNELS_COLLECTION}, 에뮬레이터={settings.FIREBASE_USE_EMULATOR}"
    )
    return settings
