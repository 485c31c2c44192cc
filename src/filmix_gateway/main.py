from contextlib import asynccontextmanager
from typing import Optional
import re
import uuid

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.filmix_gateway.dependencies import build_services
from src.filmix_gateway.errors import GatewayError, RateLimited
from src.filmix_gateway.logger import REQUEST_ID, logger, setup_logging
from src.filmix_gateway.routers import api
from src.filmix_gateway.services.rate_limit import is_rate_limited_route
from src.filmix_gateway.settings import Settings, settings as default_settings

CORS_HEADERS = {
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Range",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Expose-Headers": "Content-Range, Content-Length, Accept-Ranges, X-Request-ID",
}


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
        headers={"Cache-Control": "no-store", **exc.headers},
    )


def is_allowed_origin(origin: Optional[str], allowed: list, allow_localhost: bool) -> bool:
    if not origin:
        return True
    if allow_localhost and origin.startswith("http://localhost:"):
        return True
    return origin in allowed


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for") or ""
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")


def request_id_from(value: Optional[str]) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex[:16]


def create_app(settings: Settings = default_settings, client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    services = build_services(settings, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Started (%s)", settings.environment)
        yield
        logger.info("Shutdown")
        await services.aclose()

    app = FastAPI(title="Filmix Gateway", lifespan=lifespan)
    app.state.services = services
    app.include_router(api.router)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        path = request.url.path
        if is_rate_limited_route(path):
            limiter = request.app.state.services.rate_limiter
            if limiter.hit(f"{client_ip(request)}:{path}"):
                logger.info("Rate limited %s for %s", path, client_ip(request))
                return error_response(RateLimited())
        return await call_next(request)

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        origin = request.headers.get("origin")
        if not is_allowed_origin(origin, settings.cors_origins, settings.localhost_origins_allowed):
            return JSONResponse(status_code=403, content={"error": "CORS origin is not allowed"})
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        if origin:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
        response.headers.update(CORS_HEADERS)
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request_id_from(request.headers.get("x-request-id"))
        token = REQUEST_ID.set(rid)
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    return app


setup_logging()
app = create_app()
