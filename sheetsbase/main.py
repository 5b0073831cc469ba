"""
SheetsBase API: a Google Sheets spreadsheet served as a queryable table store.
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from sheetsbase import __version__
from sheetsbase.core.container import container
from sheetsbase.core.errors import SheetsBaseError
from sheetsbase.core.logging import configure_logging, get_logger
from sheetsbase.routers import query

settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

STARTED_AT = time.time()

ENDPOINTS = {
    "query": "POST /api/query",
    "insert": "POST /api/insert",
    "update": "PUT /api/update",
    "delete": "DELETE /api/delete",
    "cache_stats": "GET /api/cache/stats",
    "cache_clear": "POST /api/cache/clear",
    "health": "GET /health",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting SheetsBase",
                spreadsheet_configured=settings.sheets_configured,
                cache_enabled=settings.cache_enabled)

    await container.cache().startup()

    logger.info("Services started successfully")
    yield

    await container.cache().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="SheetsBase",
    version=__version__,
    description="Google Sheets as a queryable table store",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(SheetsBaseError)
async def sheetsbase_error_handler(request: Request, exc: SheetsBaseError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, **exc.context)
    else:
        logger.warning("Request rejected", path=request.url.path, error=exc.message, **exc.context)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        content = {
            "success": False,
            "error": "Route not found",
            "path": request.url.path,
            "availableEndpoints": list(ENDPOINTS.values()),
        }
    else:
        content = {"success": False, "error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location}: {first.get('msg', 'malformed body')}" if location \
        else f"Invalid request: {first.get('msg', 'malformed body')}"
    logger.warning("Request rejected", path=request.url.path, error=message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message},
    )


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception",
                         method=request.method,
                         path=request.url.path,
                         error_type=type(e).__name__,
                         exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": f"Internal server error: {type(e).__name__}"},
            )


app.add_middleware(CatchAllExceptionsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router)


@app.get("/")
async def root():
    """Service banner."""
    return {
        "message": "SheetsBase API",
        "version": __version__,
        "status": "running",
        "endpoints": ENDPOINTS,
    }


@app.get("/health")
async def health_check():
    """Detailed health check."""
    return {
        "status": "ok",
        "service": "sheetsbase",
        "version": __version__,
        "environment": "development" if settings.debug else "production",
        "spreadsheet_configured": settings.sheets_configured,
        "cache": await container.cache().get_stats(),
        "uptime": round(time.time() - STARTED_AT, 3),
        "timestamp": datetime.now().isoformat()
    }


def run():
    """Console entry point."""
    import uvicorn
    logger.info("Starting SheetsBase", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "sheetsbase.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )


if __name__ == "__main__":
    run()
