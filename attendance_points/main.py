import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from attendance_points.errors import ApiError, PointsEngineError, error_response
from attendance_points.logging_utils import setup_json_logging
from attendance_points.routers import points
from attendance_points.settings import get_cors_origins, get_settings

logger = logging.getLogger("attendance_points.request")


async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor_id = (request.headers.get("X-Actor-Id") or "").strip() or "system"

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )


async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


async def handle_engine_error(request: Request, exc: PointsEngineError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "points_engine_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "code": exc.code,
            "details": exc.details,
        },
    )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


def create_app() -> FastAPI:
    settings = get_settings()
    setup_json_logging(settings.log_level)

    app_instance = FastAPI(title=settings.app_name, version="0.1.0")
    app_instance.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app_instance.middleware("http")(request_middleware)
    app_instance.add_exception_handler(ApiError, handle_api_error)
    app_instance.add_exception_handler(PointsEngineError, handle_engine_error)
    app_instance.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app_instance.add_exception_handler(RequestValidationError, handle_validation_error)
    app_instance.add_exception_handler(Exception, handle_unexpected_error)
    app_instance.include_router(points.router)

    @app_instance.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app_instance


app = create_app()
