from __future__ import annotations

import os
from datetime import UTC, datetime

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.artifacts import router as artifacts_router
from .routers.chat import router as chat_router
from .routers.projects import router as projects_router
from ..core.state_machine import StageGatingError
from ..infrastructure.artifact_store import ArtifactNotFoundError
from ..observability.metrics import metrics_middleware_factory, record_rejection
from ..services.chat_gateway import GatewayError

load_dotenv()  # INFLOW_*, JWT_SECRET, REDIS_URL, MONGO_URL from .env if present

app = FastAPI(title="InFlow Chat Gateway", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    record_rejection(exc.status)
    return JSONResponse(status_code=exc.status, content={"error": exc.message}, headers=exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 401:
        record_rejection(401)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(StageGatingError)
async def stage_gating_handler(request: Request, exc: StageGatingError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": str(exc),
            "stage": exc.stage.value,
            "next_required": exc.next_required.value if exc.next_required else None,
        },
    )


@app.exception_handler(ArtifactNotFoundError)
async def artifact_not_found_handler(request: Request, exc: ArtifactNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


# Routers
app.include_router(chat_router)
app.include_router(projects_router)
app.include_router(artifacts_router)

# Same routers under /api, where the web client calls them
app.include_router(chat_router, prefix="/api")
app.include_router(projects_router, prefix="/api")
app.include_router(artifacts_router, prefix="/api")

# CORS (for the web client dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Prompt-Version", "X-Cache-Status", "Retry-After"],
)


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
        },
    }


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    """Serve the app with uvicorn; INFLOW_HOST / INFLOW_PORT override the bind address."""
    host = os.getenv("INFLOW_HOST", "127.0.0.1")
    try:
        port = int(os.getenv("INFLOW_PORT", "8000"))
    except ValueError:
        port = 8000
    uvicorn.run("src.inflow.api.main:app", host=host, port=port)


if __name__ == "__main__":
    run()
