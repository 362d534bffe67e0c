from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import os

from mockprep.api.deps import EngineContext, build_engine_context
from mockprep.api.interview import router as interview_router
from mockprep.api.ws_interview import router as interview_ws_router
from mockprep.auth import get_user_id_async
from mockprep.core.config import (
    QA_MODE,
    SESSION_CLEANUP_INTERVAL_SEC,
    SESSION_CLEANUP_TTL_SEC,
    SESSION_DURATION_SEC,
)
from mockprep.system_metrics import get_metrics_snapshot, set_metric

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("mockprep.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


def create_app(engine: EngineContext | None = None) -> FastAPI:
    app = FastAPI(title="MockPrep Interview Sessions")
    app.state.engine = engine or build_engine_context()
    app.state.cleanup_task = None

    allowed_origins = _get_allowed_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    @app.on_event("startup")
    async def startup_banner():
        if QA_MODE:
            logger.info("[SYSTEM] QA_MODE ENABLED: dev prep grants available")
        logger.info("[SYSTEM] CORS allow_origins=%s", allowed_origins)
        logger.info(
            "[SYSTEM] ledger=%s completions=%s session_duration_sec=%s",
            app.state.engine.ledger.store.__class__.__name__,
            app.state.engine.completion_store.__class__.__name__,
            SESSION_DURATION_SEC,
        )

        async def _session_cleanup_loop():
            while True:
                await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SEC)
                removed = app.state.engine.registry.cleanup_inactive(SESSION_CLEANUP_TTL_SEC)
                if removed > 0:
                    logger.info("[SYSTEM] cleaned inactive sessions=%s", removed)

        app.state.cleanup_task = asyncio.create_task(_session_cleanup_loop())

    @app.on_event("shutdown")
    async def shutdown_handler():
        task = app.state.cleanup_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            finally:
                app.state.cleanup_task = None
        logger.info("[SYSTEM] shutdown complete")

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "backend"}

    @app.get("/api/system/metrics")
    async def system_metrics_route(request: Request):
        await get_user_id_async(request)
        set_metric("sessions_live", float(app.state.engine.registry.count_live()))
        return get_metrics_snapshot(extra={
            "session_duration_sec": SESSION_DURATION_SEC,
        })

    app.include_router(interview_router)
    app.include_router(interview_ws_router)
    return app


app = create_app()
