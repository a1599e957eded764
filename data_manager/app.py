# data_manager/app.py
import os
import re
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

# Load .env BEFORE any data_manager imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request, Depends, Path
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from data_manager import monitoring
from data_manager import auth as authmod
from data_manager import db as dbmod
from data_manager.db import RecordStore
from data_manager.schemas import (
    EntryBody, Entry, Envelope, ListResponse, Pagination,
    SearchResponse, Stats, StatsResponse,
)

API_PREFIX = "/api"
API_KEY_HEADER = "x-api-key"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
}

logger = monitoring.logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A corrupt backing file raises StoreLoadError here and aborts startup.
    store = RecordStore(dbmod.DB_PATH)
    store.init()
    app.state.store = store
    try:
        yield
    finally:
        store.close()


app = FastAPI(title="Data Manager API", lifespan=lifespan)


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------
def _respond(model: Envelope, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(exclude_unset=True))


def _error(status_code: int, message: str) -> JSONResponse:
    return _respond(Envelope(success=False, error=message), status_code)


_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")
# SQLite INTEGER is 64-bit signed; larger LIMIT/OFFSET values cannot be bound
SQLITE_MAX_INT = 2 ** 63 - 1


def _parse_int(raw: Optional[str], default: int, minimum: int) -> int:
    """Leading-integer parse of a query param; unusable values fall back to the default."""
    m = _INT_PREFIX.match(raw or "")
    if not m:
        return default
    n = min(int(m.group(1)), SQLITE_MAX_INT)
    return n if n >= minimum else default


def _encode_metadata(metadata) -> Optional[str]:
    # NaN and Infinity are accepted by the body parser but are not JSON
    return json.dumps(metadata, allow_nan=False) if metadata is not None else None


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (innermost; gates /api/* paths before routing)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if path != API_PREFIX and not path.startswith(API_PREFIX + "/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        monitoring.inc_auth_rejection()
        return _error(401, "Unauthorized: Invalid or missing API key")

    client = request.client.host if request.client else ""
    allowed, remaining = authmod.check_rate_limit(client)
    if not allowed:
        monitoring.inc_rate_limited()
        resp = _error(429, "Too many requests from this IP, please try again later.")
        resp.headers["Retry-After"] = str(authmod.RATE_LIMIT_WINDOW_SECONDS)
        return resp

    response = await call_next(request)
    if remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        logger.exception("Unhandled exception in request", extra={"path": request.url.path})
        raise
    finally:
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        monitoring.observe_request(start, endpoint, method, status)


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # an unsupported method on a known path is an unknown route too
    if exc.status_code in (404, 405):
        return _error(404, "Route not found")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return _error(400, f"{field}: {msg}" if field else msg)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # already logged with traceback by metrics_middleware
    return _error(500, "Internal server error")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get(API_PREFIX + "/data")
def list_entries(
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    store: RecordStore = Depends(get_store),
):
    """
    GET /api/data?limit=&offset=
    Newest first. Non-numeric or missing values fall back to 100 / 0.
    """
    lim = _parse_int(limit, dbmod.DEFAULT_LIMIT, minimum=1)
    off = _parse_int(offset, dbmod.DEFAULT_OFFSET, minimum=0)
    try:
        rows = store.list(lim, off)
        total = store.count()
    except Exception:
        logger.exception("Unexpected error in GET /api/data handler")
        return _error(500, "Internal server error")
    return _respond(ListResponse(
        success=True,
        data=[Entry(**r) for r in rows],
        pagination=Pagination(total=total, limit=lim, offset=off, hasMore=off + lim < total),
    ))


@app.get(API_PREFIX + "/data/{entry_id}")
def get_entry(
    entry_id: str = Path(..., description="Entry ID to fetch"),
    store: RecordStore = Depends(get_store),
):
    try:
        rec = store.get_by_id(entry_id)
    except Exception:
        logger.exception("Unexpected error in GET /api/data/{id} handler")
        return _error(500, "Internal server error")
    if not rec:
        return _error(404, "Data not found")
    return _respond(Envelope(success=True, data=Entry(**rec).model_dump()))


@app.get(API_PREFIX + "/search")
def search_entries(q: Optional[str] = None, store: RecordStore = Depends(get_store)):
    """
    GET /api/search?q=
    Case-insensitive substring match on name or value.
    """
    if not q:
        return _error(400, "Search query is required")
    try:
        rows = store.search(q)
    except Exception:
        logger.exception("Unexpected error in GET /api/search handler")
        return _error(500, "Internal server error")
    return _respond(SearchResponse(success=True, data=[Entry(**r) for r in rows], count=len(rows)))


@app.post(API_PREFIX + "/data")
def create_entry(body: Optional[EntryBody] = None, store: RecordStore = Depends(get_store)):
    """
    POST /api/data
    Body: { "name": "...", "value": "...", "metadata": {...} }
    """
    if body is None or not body.name:
        return _error(400, "Name is required")
    try:
        metadata = _encode_metadata(body.metadata)
    except ValueError:
        return _error(400, "Metadata must be valid JSON")

    entry_id = str(uuid.uuid4())
    try:
        created = store.create({
            "id": entry_id,
            "name": body.name,
            "value": body.value or None,
            "metadata": metadata,
        })
        if not created:
            return _error(500, "Failed to create data")
        rec = store.get_by_id(entry_id)
    except Exception:
        logger.exception("Unexpected error in POST /api/data handler")
        return _error(500, "Internal server error")
    logger.info("Created entry", extra={"entry_id": entry_id})
    return _respond(
        Envelope(success=True, data=Entry(**rec).model_dump(), message="Data created successfully"),
        status_code=201,
    )


@app.put(API_PREFIX + "/data/{entry_id}")
def update_entry(
    entry_id: str = Path(..., description="Entry ID to update"),
    body: Optional[EntryBody] = None,
    store: RecordStore = Depends(get_store),
):
    if body is None or not body.name:
        return _error(400, "Name is required")
    try:
        metadata = _encode_metadata(body.metadata)
    except ValueError:
        return _error(400, "Metadata must be valid JSON")
    try:
        # existence check and update are separate store calls
        if not store.get_by_id(entry_id):
            return _error(404, "Data not found")
        updated = store.update(entry_id, {
            "name": body.name,
            "value": body.value or None,
            "metadata": metadata,
        })
        if not updated:
            return _error(500, "Failed to update data")
        rec = store.get_by_id(entry_id)
    except Exception:
        logger.exception("Unexpected error in PUT /api/data/{id} handler")
        return _error(500, "Internal server error")
    if not rec:
        # deleted between the update and the re-read
        return _error(404, "Data not found")
    return _respond(Envelope(success=True, data=Entry(**rec).model_dump(), message="Data updated successfully"))


@app.delete(API_PREFIX + "/data/{entry_id}")
def delete_entry(
    entry_id: str = Path(..., description="Entry ID to delete"),
    store: RecordStore = Depends(get_store),
):
    try:
        if not store.get_by_id(entry_id):
            return _error(404, "Data not found")
        if not store.delete_by_id(entry_id):
            return _error(500, "Failed to delete data")
    except Exception:
        logger.exception("Unexpected error in DELETE /api/data/{id} handler")
        return _error(500, "Internal server error")
    logger.info("Deleted entry", extra={"entry_id": entry_id})
    return _respond(Envelope(success=True, message="Data deleted successfully"))


@app.get(API_PREFIX + "/stats")
def get_stats(store: RecordStore = Depends(get_store)):
    try:
        total = store.count()
    except Exception:
        logger.exception("Unexpected error in GET /api/stats handler")
        return _error(500, "Internal server error")
    return _respond(StatsResponse(success=True, stats=Stats(totalEntries=total)))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
