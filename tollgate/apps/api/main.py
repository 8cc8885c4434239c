from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from tollgate.apps.api.envelope import API_VERSION, install_exception_handlers
from tollgate.apps.api.routes.ai import router as ai_router
from tollgate.apps.api.routes.health import router as health_router
from tollgate.apps.api.routes.ops import router as ops_router
from tollgate.apps.api.routes.webhooks import router as webhooks_router
from tollgate.core.config import get_settings
from tollgate.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_exception_handlers(app)

    # Client-facing AI governance lives under /v1 with the response envelope.
    app.include_router(ai_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    # Provider callbacks and probes keep stable unversioned paths.
    app.include_router(health_router, include_in_schema=False)
    app.include_router(webhooks_router)
    app.include_router(ops_router)

    return app


app = create_app()
