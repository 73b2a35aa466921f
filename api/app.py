"""
api/app.py — FastAPI 앱 인스턴스 + 세션 미들웨어 + 만료 세션 정리
"""

import asyncio
import contextlib
import logging
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import API_BASE_URL, SESSION_TTL
from api.routes import router
from api.sample_test import build_sample_backend
import api.session as session
from language_test_cbt.services.backend import ExamBackend, HttpExamBackend
from language_test_cbt.services.memory_backend import InMemoryExamBackend

logger = logging.getLogger(__name__)

SESSION_COOKIE = "cbt_session"
CLEANUP_INTERVAL = 300  # 5분


def default_backend_factory() -> ExamBackend:
    """API_BASE_URL 이 있으면 원격 백엔드, 없으면 샘플 인메모리 백엔드."""
    if API_BASE_URL:
        return HttpExamBackend()
    return build_sample_backend()


async def _release_all(states: List[dict]) -> None:
    """세션 상태들을 정리한다. 하나가 실패해도 나머지는 계속 정리한다."""
    for state in states:
        try:
            await session.release(state)
        except Exception:
            logger.exception("세션 정리 실패")


async def _cleanup_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        expired = session.cleanup_expired()
        await _release_all(expired)
        if expired:
            logger.info(f"만료 세션 {len(expired)}개 정리")


def create_app(backend_factory: Optional[Callable[[], ExamBackend]] = None) -> FastAPI:

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup = asyncio.create_task(_cleanup_loop(CLEANUP_INTERVAL))
        try:
            yield
        finally:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup
            await _release_all(session.drain_all())

    app = FastAPI(title="Language Test CBT", docs_url=None, redoc_url=None, lifespan=lifespan)

    # 백엔드는 앱당 하나. 샘플 시험도 같은 인메모리 저장소를 써야 응시 재개가 가능하다
    backend = (backend_factory or default_backend_factory)()
    app.state.backend = backend
    app.state.sample_backend = (
        backend if isinstance(backend, InMemoryExamBackend) else build_sample_backend()
    )

    # CORS (모바일 브라우저 등 다양한 출처 허용)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 세션 미들웨어: 쿠키에서 세션 ID를 읽고, 없으면 새로 발급
    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        sid = request.cookies.get(SESSION_COOKIE)
        if not sid or session.get_session(sid) is None:
            sid = session.create_session()

        request.state.session_id = sid
        response: Response = await call_next(request)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=sid,
            httponly=True,
            samesite="lax",
            max_age=SESSION_TTL,
        )
        return response

    app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {"ok": True}

    return app
