from collections import defaultdict
from dataclasses import dataclass, field
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import make_url

from giftpool.api.routes import balance, fees, gifts, settlements
from giftpool.core.balance_cache import balance_cache
from giftpool.core.config import settings
from giftpool.core.errors import GiftPoolError
from giftpool.core.logger import configure_logging
from giftpool.db.session import ensure_schema_ready


logger = configure_logging()

app = FastAPI(
    title=settings.app_name,
    description="Group gift contributions, gift card float and settlement decisions",
    version="0.1.0",
)


@dataclass
class PathStats:
    count: int = 0
    errors: int = 0
    latency_total_ms: float = 0.0

    def add(self, duration_ms: float, failed: bool) -> None:
        self.count += 1
        self.latency_total_ms += duration_ms
        if failed:
            self.errors += 1

    @property
    def avg_latency_ms(self) -> float:
        return self.latency_total_ms / self.count if self.count else 0.0


@dataclass
class RequestMetrics:
    total: PathStats = field(default_factory=PathStats)
    by_path: defaultdict = field(default_factory=lambda: defaultdict(PathStats))

    def record(self, path: str, duration_ms: float, failed: bool) -> None:
        self.total.add(duration_ms, failed)
        self.by_path[path].add(duration_ms, failed)

    def snapshot(self) -> dict[str, object]:
        return {
            "requests_total": self.total.count,
            "errors_total": self.total.errors,
            "avg_latency_ms": self.total.avg_latency_ms,
            "by_path": {
                path: {"count": s.count, "errors": s.errors, "avg_latency_ms": s.avg_latency_ms}
                for path, s in self.by_path.items()
            },
        }


metrics = RequestMetrics()

cors_origins = settings.backend_cors_origins
if not cors_origins and settings.frontend_url:
    cors_origins = [settings.frontend_url]

logger.info("CORS origins parsed=%s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    max_age=600,
)


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    path = request.url.path
    start = perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (perf_counter() - start) * 1000.0
        metrics.record(path, duration_ms, failed=True)
        logger.exception(
            "Request failed id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            path,
            duration_ms,
        )
        raise

    duration_ms = (perf_counter() - start) * 1000.0
    metrics.record(path, duration_ms, failed=response.status_code >= 500)
    logger.info(
        "Request completed id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        path,
        response.status_code,
        duration_ms,
    )
    response.headers["X-Request-Id"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


@app.on_event("startup")
async def on_startup() -> None:
    settings.validate_secrets()
    try:
        db_url = make_url(settings.postgres_dsn)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except Exception:
        logger.warning("DB config parse failed", exc_info=True)

    if not settings.reloadly_configured:
        logger.warning("Reloadly credentials missing; gift cards will never be offered")
    if not settings.slack_webhook_url:
        logger.warning("SLACK_WEBHOOK_URL not set; balance alerts are logged only")

    await ensure_schema_ready()


@app.exception_handler(GiftPoolError)
async def domain_error_handler(request: Request, exc: GiftPoolError):
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "Request rejected method=%s path=%s status=%s error=%s detail=%s",
        request.method,
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.detail,
    )
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field_name = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    detail = f"{field_name}: {message}" if field_name else str(message)
    logger.info("Request invalid method=%s path=%s detail=%s", request.method, request.url.path, detail)
    return JSONResponse(status_code=400, content={"detail": detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(gifts.router)
app.include_router(settlements.router)
app.include_router(settlements.redirect_router)
app.include_router(balance.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def get_metrics() -> dict[str, object]:
    return {**metrics.snapshot(), "float_cache": await balance_cache.get_stats()}
