"""
FormGen backend entry point.

Builds the FastAPI app: startup checks, CORS, per-request timing, mapping of
FormGenError subclasses to HTTP responses, and the API routers.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from formgen.config import settings
from formgen.database import close_db, init_db
from formgen.exceptions import FormGenError, LockConflictError, status_code_for
from formgen.routers import documents, health, overrides, services, storage, templates
from formgen.services.storage import ensure_storage_root

API_VERSION = "0.1.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Paths polled by load balancers; not worth a log line each
QUIET_PATHS = {"/", "/api/health/"}

ROUTERS = [
    (health.router, "/api/health", "Health"),
    (templates.router, "/api/templates", "Templates"),
    (storage.router, "/api/storage", "Storage"),
    (services.router, "/api/services", "Services"),
    (overrides.router, "/api/overrides", "Overrides"),
    (documents.router, "/api/documents", "Documents"),
]


# ---------------------------------------------------------------------------
# Startup checks
# ---------------------------------------------------------------------------

async def _check_llm_model() -> bool:
    """
    Ask Ollama which models are pulled and warn when the extraction model is
    missing.  The backend still starts: uploads simply land in ``error`` until
    the model is available and the template is reparsed.
    """
    wanted = settings.OLLAMA_LLM_MODEL
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(f"{settings.OLLAMA_BASE_URL}/api/tags")
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Ollama not reachable at %s (%s)", settings.OLLAMA_BASE_URL, exc)
        return False

    pulled = [m.get("name", "") for m in resp.json().get("models", [])]
    family = wanted.split(":")[0]
    if any(name == wanted or name.startswith(family) for name in pulled):
        logger.info("Extraction model %s available", wanted)
        return True

    logger.warning("Extraction model %s missing (have: %s); run `ollama pull %s`",
                   wanted, ", ".join(pulled) or "none", wanted)
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("FormGen backend starting")

    # The database is mandatory; let a failure abort startup
    await init_db()
    await _check_llm_model()
    logger.info("Blob storage under %s", ensure_storage_root())

    logger.info("Listening on http://%s:%d", settings.HOST, settings.PORT)
    try:
        yield
    finally:
        await close_db()
        logger.info("FormGen backend stopped")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FormGen API",
    description=(
        "Upload PDF/DOCX templates, review the intake fields the LLM finds in "
        "them, and generate filled documents per client service.\n\n"
        "Typical flow: `POST /api/templates/upload`, `PUT` the bytes to the "
        "returned signed URL, poll `GET /api/templates/{id}` until `parsed`, "
        "then `POST /api/documents/generate`."
    ),
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    """Stamp ``X-Process-Time`` (ms) on every response and log non-health traffic."""
    started = time.perf_counter()
    response = await call_next(request)
    took_ms = (time.perf_counter() - started) * 1000

    if request.url.path not in QUIET_PATHS:
        logger.info("%s %s %d %.1fms", request.method, request.url.path,
                    response.status_code, took_ms)
    response.headers["X-Process-Time"] = f"{took_ms:.2f}ms"
    return response


@app.exception_handler(FormGenError)
async def handle_formgen_error(request: Request, exc: FormGenError):
    code = status_code_for(exc)
    log = logger.error if code >= 500 else logger.info
    log("%s %s failed with %s: %s", request.method, request.url.path,
        type(exc).__name__, exc.message)

    body = {
        "detail": exc.message,
        "error_type": type(exc).__name__,
        "path": request.url.path,
    }
    if isinstance(exc, LockConflictError) and exc.holder_id:
        body["holder_id"] = exc.holder_id
    return JSONResponse(status_code=code, content=body)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


for router, prefix, tag in ROUTERS:
    app.include_router(router, prefix=prefix, tags=[tag])


@app.get("/", include_in_schema=False)
async def root():
    return {
        "name": app.title,
        "version": API_VERSION,
        "docs": app.docs_url,
        "endpoints": {tag.lower(): prefix for _, prefix, tag in ROUTERS},
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("formgen.main:app", host=settings.HOST, port=settings.PORT, reload=True)
