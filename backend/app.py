"""FastAPI Peer Call Server.

이 모듈은 Firestore 문서를 시그널링 릴레이로 사용하는 1:1 WebRTC 통화
백엔드의 HTTP 제어 서버를 제공합니다. 통화 생성/참가/종료를 REST API로
노출합니다.

주요 기능:
    - 통화 생성 (caller): 채널 ID 발급
    - 통화 참가 (callee): 채널 ID로 참가
    - 통화 종료 및 시그널링 데이터 정리
    - 통화 상태 / ICE 서버 설정 조회

Architecture:
    - CallStateMachine: 통화 하나의 전체 흐름 관리
    - SignalingChannel + DocumentStore: Firestore(또는 메모리) 시그널링
    - MediaStreamRegistry: 로컬 장치 캡처, 원격 트랙 관리
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from peercall import (
    CallError,
    CallStateMachine,
    MediaStreamRegistry,
    RemoteMediaSink,
    SignalingChannel,
    create_document_store,
    get_signaling_settings,
)
from routes import health_router, call_router

# 환경변수 로드 (config/.env)
load_dotenv(Path(__file__).parent / "config" / ".env")


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{__import__('datetime').datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import datetime, timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            filename = os.path.basename(log_file)
            date_str = filename.replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")

            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


def build_call_machine(store_backend: Optional[str] = None) -> CallStateMachine:
    """설정에 맞는 저장소로 CallStateMachine을 구성합니다.

    Args:
        store_backend: "firestore" 또는 "memory" (None이면 STORE_BACKEND 설정)
    """
    settings = get_signaling_settings()
    store = create_document_store(store_backend or settings.STORE_BACKEND)
    signaling = SignalingChannel(store, settings)
    return CallStateMachine(
        signaling=signaling,
        media=MediaStreamRegistry(),
        sink_factory=RemoteMediaSink,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 시작: 오래된 로그 정리, 저장소/상태 머신 생성
        - 종료: 진행 중인 통화 종료 (채널 데이터 삭제 포함), 저장소 연결 종료
    """
    logger.info("Peer Call 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    machine = build_call_machine()
    app.state.call_machine = machine
    logger.info(f"통화 서비스 준비 완료 (저장소: {machine.signaling.store.name})")

    yield

    logger.info("서버 종료 중...")
    await machine.hang_up()
    await machine.signaling.store.close()
    app.state.call_machine = None
    logger.info("통화 서비스 종료됨")


app = FastAPI(title="Peer Call Server", lifespan=lifespan)

# CORS - 개발 환경에서는 모든 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(call_router)


@app.exception_handler(CallError)
async def call_error_handler(request: Request, exc: CallError):
    """CallError를 상태 코드가 포함된 JSON 응답으로 변환합니다."""
    logger.warning(f"{request.method} {request.url.path} 실패: {type(exc).__name__}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보
            - status (str): "ok"
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "Peer Call Server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
