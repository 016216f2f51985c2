import logging
import time
import traceback
import uuid
from typing import Optional

import sentry_sdk
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi import HTTPException as FastAPIHTTPException
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.starlette import StarletteIntegration
from sqlalchemy.exc import SQLAlchemyError

from eventpass.api import events, health, orders, payments, subscriptions
from eventpass.core.errors import GATEWAY_RETRY_AFTER, ErrorKind, ServiceError
from eventpass.core.logging_utils import configure_logging, request_id_var
from eventpass.core.middleware_compression import add_compression_middleware
from eventpass.core.settings import settings
from eventpass.models import AppErrorLog
from eventpass.services.auth import get_user_id_from_request
from db import get_db

load_dotenv()


app = FastAPI(title="EventPass")
add_compression_middleware(app)

# Configure logging (console + rotating file; JSON by default)
configure_logging(settings)
logger = logging.getLogger("app")

# Initialize Sentry if DSN provided
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[StarletteIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0.0),
        send_default_pii=False,
    )

app.include_router(health.router)
app.include_router(events.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(subscriptions.router)


# Request logging middleware with request id and caller context
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start = time.perf_counter()
    duration_ms: Optional[int] = None
    request.state.request_id = request_id
    token = request_id_var.set(request_id)

    extra_ctx = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
        "user_id": get_user_id_from_request(request),
        "user_agent": request.headers.get("user-agent"),
    }
    logger.info("request.start", extra=extra_ctx)
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception("request.error", extra={**extra_ctx, "duration_ms": duration_ms})
        request_id_var.reset(token)
        # Re-raise to be handled by 500 handler
        raise

    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request.end",
        extra={**extra_ctx, "status_code": response.status_code, "duration_ms": duration_ms},
    )
    request_id_var.reset(token)
    return response


def _record_error(
    request: Request,
    status: int,
    message: str,
    kind: Optional[str] = None,
    stack: Optional[str] = None,
) -> None:
    """Best-effort AppErrorLog row; never masks the original error."""
    request_id = getattr(request.state, "request_id", None)
    db_gen = get_db()
    db = next(db_gen)
    try:
        db.add(
            AppErrorLog(
                RequestID=str(request_id) if request_id else None,
                Path=str(request.url.path)[:500],
                Method=request.method,
                StatusCode=int(status),
                UserID=get_user_id_from_request(request),
                ClientIP=request.client.host if request.client else None,
                UserAgent=(request.headers.get("user-agent") or "")[:255] or None,
                ErrorKind=kind,
                Message=message,
                StackTrace=stack,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("error_log.write_failed", extra={"error": str(e)})
    finally:
        db_gen.close()


def _with_request_id(request: Request, resp: JSONResponse) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        resp.headers["X-Request-ID"] = str(request_id)
    return resp


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    status = exc.status_code
    level = logging.ERROR if status >= 500 else logging.INFO
    logger.log(
        level,
        "request.service_error",
        extra={"path": request.url.path, "kind": exc.kind.value, "detail": exc.message},
    )
    _record_error(request, status, exc.message, kind=exc.kind.value)
    resp = JSONResponse(exc.to_dict(), status_code=status)
    if exc.kind == ErrorKind.GATEWAY_UNAVAILABLE:
        resp.headers["Retry-After"] = str(GATEWAY_RETRY_AFTER)
    return _with_request_id(request, resp)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    """Log HTTPException (>=400) to DB, then mirror FastAPI's default JSON body."""
    status = getattr(exc, "status_code", 500) or 500
    if status >= 400:
        _record_error(request, status, str(getattr(exc, "detail", "HTTP error")))
    resp = JSONResponse({"detail": exc.detail}, status_code=status, headers=exc.headers)
    return _with_request_id(request, resp)


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    _record_error(
        request,
        500,
        str(exc),
        stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
    request_id = getattr(request.state, "request_id", None)
    resp = JSONResponse(
        {"error": "InternalError", "detail": "Internal Server Error", "requestId": request_id},
        status_code=500,
    )
    return _with_request_id(request, resp)
