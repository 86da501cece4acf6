"""Request gateway main application."""

import time
from contextlib import asynccontextmanager

import uvicorn
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from libs.common.auth import create_auth_manager_from_config
from libs.common.config import GatewayConfig
from libs.common.logging import configure_logging
from libs.common.metrics import get_metrics_collector
from libs.common.security import SecurityHeaders, create_input_sanitizer
from libs.common.tracing import configure_tracing_from_config
from service_worker.app.runtime.components import build_components
from service_worker.app.workers.job_worker import JobWorker
from service_worker.app.workers.pool import WorkerPool

from .api.routes import router as api_router

logger = structlog.get_logger("gateway")

SERVICE_NAME = "genai-gateway"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    config = GatewayConfig()
    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format)
    app.state.config = config
    app.state.tracer = configure_tracing_from_config(SERVICE_NAME, config)

    logger.info("Starting request gateway")

    app.state.metrics_collector = get_metrics_collector(SERVICE_NAME)
    app.state.auth_manager = create_auth_manager_from_config(config)
    app.state.input_sanitizer = create_input_sanitizer()
    app.state.components = build_components(config, with_backend=config.ml_embedded_worker)

    app.state.worker_pool = None
    if config.ml_embedded_worker:
        components = app.state.components
        worker = JobWorker(
            queue=components.queue,
            status_store=components.status_store,
            ledger=components.ledger,
            asset_store=components.asset_store,
            model_store=components.model_store,
            backend=components.backend,
            event_publisher=components.event_publisher,
            metrics=app.state.metrics_collector,
            tracer=app.state.tracer,
        )
        app.state.worker_pool = WorkerPool(
            worker,
            components.queue,
            components.status_store,
            poll_wait_seconds=1.0,
            event_publisher=components.event_publisher,
            metrics=app.state.metrics_collector,
        )
        await app.state.worker_pool.scale_to(config.ml_embedded_worker_concurrency)
        logger.info("Embedded worker pool started", replicas=config.ml_embedded_worker_concurrency)

    logger.info("Request gateway started successfully")

    yield

    # Shutdown
    logger.info("Shutting down request gateway")
    if app.state.worker_pool is not None:
        await app.state.worker_pool.drain(grace_seconds=10.0)
    await app.state.components.close()
    logger.info("Request gateway shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="GenAI Request Gateway",
    description="Multi-tenant job submission, asset access and provenance ledger API",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security and processing time headers to responses."""
    start_time = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = str(time.time() - start_time)
    for name, value in SecurityHeaders.get_security_headers().items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Collect metrics for HTTP requests."""
    start_time = time.time()

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as e:
        logger.exception("Unhandled request error", path=request.url.path, error=str(e))
        status_code = 500
        response = JSONResponse(status_code=500, content={"error": "Internal server error"})

    # Templated path keeps label cardinality bounded.
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    if hasattr(app.state, "metrics_collector"):
        app.state.metrics_collector.record_http_request(
            method=request.method,
            endpoint=endpoint,
            status=status_code,
            duration=time.time() - start_time
        )
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    try:
        depth = await app.state.components.queue.depth()
        digest = await app.state.components.ledger.digest()
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)}
        )

    pool = app.state.worker_pool
    backend = app.state.components.backend
    backend_health = await backend.health_check() if backend is not None else None
    degraded = backend_health is not None and backend_health.get("status") != "healthy"
    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "queue_backlog": depth.backlog,
        "ledger_length": digest.length,
        "embedded_workers": pool.get_stats() if pool is not None else None,
        "inference_backend": backend_health,
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if hasattr(app.state, "metrics_collector"):
        return Response(content=app.state.metrics_collector.get_metrics(), media_type="text/plain")
    return Response(content="# No metrics available\n", media_type="text/plain")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": "0.1.0",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "metrics": "/metrics",
            "jobs": "/api/v1/jobs",
            "uploads": "/api/v1/uploads",
            "assets": "/api/v1/assets/{key}",
            "ledger": "/api/v1/ledger/digest",
            "models": "/api/v1/models",
        }
    }


if __name__ == "__main__":
    uvicorn.run(
        "service_gateway.app.main:app",
        host="0.0.0.0",
        port=GatewayConfig().ml_gateway_port,
        log_level="info"
    )
