from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text

from auth import extract_bearer_token
from config import (
    API_HOST,
    API_PORT,
    APP_VERSION,
    CORS_ORIGINS,
    LICENSE_PUBLIC_KEY,
    LOG_LEVEL,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_SCOPE,
)
from errors import explain_error
from licensing import (
    FixedWindowRateLimiter,
    InvalidRequestError,
    LicenseError,
    LicenseService,
    RateLimitedError,
    SignatureMismatchError,
    build_license_service,
    calculate_status,
    init_license_db,
)
from licensing.errors import ConfigurationError
from licensing.license_crypto import LicenseKeyError, load_public_key
from observability import configure_json_logging, get_logger, log_event, trace_context

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("vipserver.api")

RATE_LIMITER = FixedWindowRateLimiter.from_config()
LICENSE_SERVICE: Optional[LicenseService] = None

RATE_LIMIT_EXEMPT_PATHS = {"/health", "/healthz"}
# Details of these errors stay in the logs, never in the response body.
_OPAQUE_ERROR_CODES = {"SIGNATURE_MISMATCH", "CONFIGURATION_ERROR", "GATEWAY_UNAVAILABLE"}
RETURN_PAGE_TEXT = "支付完成，请返回插件查看激活状态。"


def get_license_service() -> LicenseService:
    global LICENSE_SERVICE
    if LICENSE_SERVICE is None:
        LICENSE_SERVICE = build_license_service()
    return LICENSE_SERVICE


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_license_db()
    try:
        get_license_service()
    except ConfigurationError as exc:
        # Keep serving /health so the misconfiguration is visible.
        log_event(APP_LOGGER, logging.ERROR, "startup.license_service_unavailable", error=str(exc))
    yield


app = FastAPI(title="VIP License Server", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    expose_headers=["X-Trace-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
)


class CreatePaymentRequest(BaseModel):
    userId: Optional[str] = Field(None, description="Host application user id.")
    term: Optional[str] = Field(None, description="7d | 1m | 1y | Lifetime")

    model_config = ConfigDict(extra="ignore")


class AdminGenerateCodeRequest(BaseModel):
    userId: Optional[str] = None
    term: Optional[str] = None
    adminToken: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class VipStatusRequest(BaseModel):
    userId: Optional[str] = None
    vipKeys: List[str] = Field(default_factory=list)
    freeTrialUsed: bool = False

    model_config = ConfigDict(extra="ignore")


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


def _client_ip(request: Request) -> str:
    if request.client is not None and request.client.host:
        return str(request.client.host)
    forwarded = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or "unknown"


def _rate_limit_subject(request: Request) -> str:
    if RATE_LIMIT_SCOPE == "global":
        return "global"
    return f"ip:{_client_ip(request)}"


def _require(value: Optional[str], message: str) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise InvalidRequestError(message)
    return normalized


def _error_body(exc: LicenseError, trace_id: str) -> Dict[str, Any]:
    explained = explain_error(exc.error_code) or {}
    body: Dict[str, Any] = {
        "success": False,
        "error_code": exc.error_code,
        "message": explained.get("message") or exc.error_code,
        "hint": explained.get("hint", ""),
        "trace_id": trace_id,
    }
    if exc.error_code not in _OPAQUE_ERROR_CODES:
        body["detail"] = str(exc)
    return body


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if (
        not RATE_LIMIT_ENABLED
        or request.method.upper() == "OPTIONS"
        or request.url.path in RATE_LIMIT_EXEMPT_PATHS
    ):
        return await call_next(request)
    try:
        verdict = RATE_LIMITER.enforce(_rate_limit_subject(request))
    except RateLimitedError as exc:
        trace_id = _request_trace_id(request)
        log_event(APP_LOGGER, logging.WARNING, "rate_limit.rejected", path=request.url.path, limit=exc.limit)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc, trace_id),
            headers={
                "Retry-After": str(exc.retry_after_seconds),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(verdict.limit)
    response.headers["X-RateLimit-Remaining"] = str(verdict.remaining)
    return response


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    with trace_context(trace_id):
        response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(LicenseError)
async def license_error_handler(request: Request, exc: LicenseError) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        "request.license_error",
        trace_id=trace_id,
        path=request.url.path,
        error_code=exc.error_code,
        error=str(exc),
    )
    headers = {"X-Trace-Id": trace_id}
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc, trace_id), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for item in exc.errors():
        field = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        problems.append(f"{field or 'body'}: {item.get('msg', 'invalid')}")
    return await license_error_handler(request, InvalidRequestError("; ".join(problems) or "invalid request body"))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


@app.get("/health")
async def health() -> dict:
    report: Dict[str, Any] = {
        "status": "ok",
        "version": APP_VERSION,
        "rate_limiter": RATE_LIMITER.backend,
    }
    try:
        service = get_license_service()
        report["gateway"] = service.gateway.name
    except ConfigurationError as exc:
        report["status"] = "degraded"
        report["config"] = str(exc)
    try:
        from licensing.db import ENGINE

        with ENGINE.connect() as conn:
            conn.execute(text("SELECT 1"))
        report["db"] = "ok"
    except Exception as exc:  # noqa: BLE001
        report["status"] = "degraded"
        report["db"] = f"error: {exc.__class__.__name__}"
    return report


@app.post("/api/create-payment")
async def create_payment(payload: CreatePaymentRequest, request: Request) -> dict:
    if not str(payload.userId or "").strip() or not str(payload.term or "").strip():
        raise InvalidRequestError("缺少必要参数: userId, term")
    service = get_license_service()
    result = await asyncio.to_thread(
        service.create_order,
        str(payload.userId),
        str(payload.term),
        _client_ip(request),
        base_url=str(request.base_url),
    )
    if result.activation_code is not None:
        return {
            "success": True,
            "status": 1,
            "message": "试用激活码生成成功" if result.trial_created else "返回已有试用激活码",
            "activation_code": result.activation_code,
        }
    return {
        "success": True,
        "qrcode": result.qrcode,
        "img": result.img,
        "out_trade_no": result.out_trade_no,
        "money": result.money,
    }


@app.get("/api/check-status")
async def check_status(out_trade_no: Optional[str] = Query(None, max_length=64)) -> dict:
    key = _require(out_trade_no, "缺少订单号")
    service = get_license_service()
    status = await asyncio.to_thread(service.query_status, key)
    body: Dict[str, Any] = {
        "success": True,
        "status": status.status,
        "message": status.message,
    }
    if status.activation_code:
        body["activation_code"] = status.activation_code
    return body


@app.api_route("/api/notify", methods=["GET", "POST"])
async def gateway_notify(request: Request) -> PlainTextResponse:
    if request.method.upper() == "POST":
        form = await request.form()
        params: Dict[str, Any] = {key: str(value) for key, value in form.items()}
    else:
        params = dict(request.query_params)
    service = get_license_service()
    try:
        await asyncio.to_thread(service.process_notify, params)
    except SignatureMismatchError:
        return PlainTextResponse("sign error", status_code=400)
    except LicenseError as exc:
        log_event(
            APP_LOGGER,
            logging.WARNING,
            "notify.failed",
            trace_id=_request_trace_id(request),
            error_code=exc.error_code,
            error=str(exc),
        )
        return PlainTextResponse("fail", status_code=exc.status_code)
    return PlainTextResponse("success")


@app.get("/api/return")
async def gateway_return() -> PlainTextResponse:
    return PlainTextResponse(RETURN_PAGE_TEXT)


@app.get("/api/subscription")
async def subscription(userId: Optional[str] = Query(None, max_length=256)) -> dict:
    user_id = _require(userId, "缺少用户ID")
    service = get_license_service()
    view = await asyncio.to_thread(service.get_subscription, user_id)
    if not view.has_tokens:
        return {"success": True, "subscribed": False, "message": "未订阅"}
    return {
        "success": True,
        "subscribed": view.subscribed,
        "expire_date": view.expire_at * 1000,
        "expire_at": view.expire_at,
        "expire_date_text": view.expire_date,
        "is_lifetime": view.is_lifetime,
    }


@app.post("/api/admin/generate-code")
async def admin_generate_code(payload: AdminGenerateCodeRequest, request: Request) -> dict:
    admin_token = str(payload.adminToken or "").strip() or extract_bearer_token(request.headers.get("Authorization"))
    service = get_license_service()
    code = await asyncio.to_thread(
        service.issue_admin_token,
        str(payload.userId or ""),
        str(payload.term or ""),
        admin_token,
    )
    return {"success": True, "code": code}


@app.get("/api/freeTrialUsed")
async def free_trial_used(userId: Optional[str] = Query(None, max_length=256)) -> dict:
    user_id = _require(userId, "缺少用户ID")
    service = get_license_service()
    used = await asyncio.to_thread(service.has_used_trial, user_id)
    return {"success": True, "used": bool(used)}


@app.post("/api/vip-status")
async def vip_status(payload: VipStatusRequest) -> dict:
    user_id = _require(payload.userId, "缺少用户ID")
    if LICENSE_PUBLIC_KEY:
        try:
            public_key = load_public_key(LICENSE_PUBLIC_KEY)
        except (LicenseKeyError, ValueError) as exc:
            raise ConfigurationError(f"invalid LICENSE_PUBLIC_KEY: {exc}") from exc
    else:
        public_key = get_license_service().public_key
    status = await asyncio.to_thread(
        calculate_status,
        user_id,
        payload.vipKeys,
        public_key,
        free_trial_used=payload.freeTrialUsed,
    )
    body = status.to_dict()
    body["success"] = True
    return body


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=API_HOST, port=API_PORT)
