"""
HTTP endpoints for SafeWatch observability.

This module implements health, readiness, metrics, and info endpoints
for monitoring and operational visibility, and mounts the engine API
when an engine is supplied.
"""

import time
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from safewatch.api.routes import create_router, install_error_handlers
from safewatch.orchestrators.orchestrator import SafetyEngine
from safewatch.settings import Settings
from safewatch.observability.logging_setup import get_logger

log = get_logger("safewatch.http")


def create_app(settings: Settings, engine: Optional[SafetyEngine] = None) -> FastAPI:
    """FastAPI 애플리케이션을 생성합니다."""
    app = FastAPI(
        title=settings.observability.service_name,
        version=settings.observability.build_version,
        description="SafeWatch Safety Coordination Engine"
    )

    start_time = time.time()

    @app.get("/health")
    async def health():
        """헬스 체크 엔드포인트"""
        return JSONResponse({
            "status": "ok",
            "service": settings.observability.service_name,
            "timestamp": time.time()
        })

    @app.get("/ready")
    async def ready():
        """레디니스 체크 엔드포인트 (복구 완료 후 ready)"""
        is_ready = engine is not None and engine.ready
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={
                "status": "ready" if is_ready else "starting",
                "service": settings.observability.service_name,
                "timestamp": time.time()
            },
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus 메트릭 엔드포인트"""
        if not settings.observability.metrics_enabled:
            raise HTTPException(status_code=503, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/info")
    async def info():
        """서비스 정보 엔드포인트"""
        return JSONResponse({
            "service": settings.observability.service_name,
            "version": settings.observability.build_version,
            "build_date": settings.observability.build_date,
            "uptime_seconds": int(time.time() - start_time),
            "metrics_enabled": settings.observability.metrics_enabled,
            "log_level": settings.observability.log_level,
            "dry_run": settings.dry_run,
        })

    if engine is not None:
        install_error_handlers(app)
        app.include_router(create_router(engine), prefix="/api")

    return app
