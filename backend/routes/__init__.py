"""FastAPI 라우터 모듈.

app.py에서 분리된 API 엔드포인트들을 제공합니다.
"""

from .health import router as health_router
from .call import router as call_router
from .deps import verify_auth_header, get_call_machine

__all__ = [
    "health_router",
    "call_router",
    "verify_auth_header",
    "get_call_machine",
]
