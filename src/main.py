"""
Imagery Transform & Tile Service - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Pluggable storage (Azure primary, Azure SAS, S3)
- Background tile pyramid jobs on Celery
"""

import html
import time
from contextlib import asynccontextmanager
from urllib.parse import quote

import PIL
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
import redis.asyncio as redis

from src.core.config import settings
from src.core.logging import setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.health import HealthReporter
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.api.v1 import api_v1_router
from src.api.dependencies import get_health_reporter

# Captured once per process, reported by /health
PROCESS_STARTED_AT = time.time()


# Upload forms served by /form: (title, operation, query string)
FORM_OPERATIONS = [
    ("Resize", "resize", "width=300&height=200&type=jpeg"),
    ("Force resize", "resize", "width=300&height=200&force=true"),
    ("Crop", "crop", "width=300&quality=95"),
    ("SmartCrop", "crop", "width=300&height=260&quality=95&gravity=smart"),
    ("Extract", "extract", "top=100&left=100&areawidth=300&areaheight=150"),
    ("Enlarge", "enlarge", "width=1440&height=900&quality=95"),
    ("Rotate", "rotate", "rotate=180"),
    ("AutoRotate", "autorotate", "quality=90"),
    ("Flip", "flip", ""),
    ("Flop", "flop", ""),
    ("Thumbnail", "thumbnail", "width=100"),
    ("Zoom", "zoom", "factor=2&areawidth=300&areaheight=150&top=80&left=80"),
    ("Color space (black&white)", "resize", "width=400&height=300&colorspace=bw"),
    ("Add watermark", "watermark", "textwidth=100&text=Hello&font=sans%2012&opacity=0.5&color=255,200,50"),
    ("Convert format", "convert", "type=png"),
    ("Image metadata", "info", ""),
    ("Gaussian blur", "blur", "sigma=15.0&minampl=0.2"),
    (
        "Pipeline (image reduction via multiple transformations)",
        "pipeline",
        "operations=" + quote(
            '[{"operation": "crop", "params": {"width": 300, "height": 260}},'
            ' {"operation": "convert", "params": {"type": "webp"}}]'
        ),
    ),
]


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    # Broker connection, used by the readiness check
    app.state.redis = redis.from_url(
        settings.CELERY_BROKER_URL or settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )

    # Set Prometheus app info
    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info(
        "application_ready",
        startup_time_seconds=startup_time,
        tile_tool=settings.TILE_TOOL_BINARY,
        eager_jobs=settings.CELERY_TASK_ALWAYS_EAGER
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.redis.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Image transformation and tile pyramid service.

    - **Transforms**: resize, crop, rotate, convert, watermark and more via
      `/api/v1/images/{operation}`, reading from an upload, Azure Blob
      Storage or S3, and answering inline or writing back to storage
    - **Content negotiation**: `type=auto` picks webp, png or jpeg from `Accept`
    - **Tile pyramids**: `/api/v1/tiles` builds a Deep Zoom pyramid in the
      background and reports progress through a `<name>.txt` marker object
    - **Observability**: Structured logging, Prometheus metrics
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)
app.state.started_at = PROCESS_STARTED_AT


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template so /images/{operation} stays one series
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Service and engine versions."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "pillow": PIL.__version__,
    }


@app.get("/form", tags=["root"], response_class=HTMLResponse)
async def upload_form():
    """One multipart upload form per image operation, for manual testing."""
    forms = []
    for title, operation, args in FORM_OPERATIONS:
        action = f"/api/v1/images/{operation}" + (f"?{args}" if args else "")
        forms.append(
            f"<h1>{html.escape(title)}</h1>\n"
            f'<form method="POST" action="{html.escape(action)}" enctype="multipart/form-data">\n'
            '<input type="file" name="file" />\n'
            '<input type="submit" value="Upload" />\n'
            "</form>"
        )
    return "<html><body>\n" + "\n".join(forms) + "\n</body></html>"


@app.get("/health", tags=["health"])
async def health(reporter: HealthReporter = Depends(get_health_reporter)):
    """Process health snapshot."""
    return reporter.snapshot().model_dump(by_alias=True)


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies the job broker is reachable."""
    checks = {"broker": False}

    if settings.CELERY_TASK_ALWAYS_EAGER:
        checks["broker"] = True
    else:
        try:
            await request.app.state.redis.ping()
            checks["broker"] = True
        except Exception as e:
            logger.warning("broker_unreachable", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
