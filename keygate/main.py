"""FastAPI application exposing the gateway.

Three route groups are mounted:

* ``/auth``  admin login and OAuth token exchange (session cookies)
* ``/admin`` key management for a logged-in admin
* ``/v1``    the OpenAI-compatible surface, authenticated by API key

Run with ``uvicorn keygate.main:app``.  Tests build isolated instances via
:func:`create_app`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from keygate.claude_auth import ClaudeAuthStore, describe_files
from keygate.config import Settings, get_settings
from keygate.engine import (
    AVAILABLE_MODELS,
    ChatCompletionRequest,
    CompletionEngine,
    build_engine,
    complete,
    stream_chunks,
)
from keygate.errors import (
    AuthError,
    AuthFailure,
    ExternalStoreError,
    InvalidRequestError,
    KeyGateError,
    NotFoundError,
    PersistenceError,
)
from keygate.key_manager import EXTERNAL_SYNC_FAILURES, KeyContext, KeyRegistry
from keygate.rate_limit import RateLimiter
from keygate.security import (
    AUTH_FAILURES,
    SESSION_COOKIE,
    SESSION_TAG_COOKIE,
    SecurityGateway,
    hash_identifier,
)
from keygate.time_utils import isoformat_z

OAUTH_TOKEN_PREFIX = "sk-ant-oat01-"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


class LoginModel(BaseModel):
    admin_password: Optional[str] = Field(default=None, alias="adminPassword")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExchangeModel(BaseModel):
    oauth_token: Optional[str] = Field(default=None, alias="oauthToken")
    key_name: Optional[str] = Field(default=None, alias="keyName")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _error_body(message: str, error_type: str, code: str) -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)
    response.delete_cookie(SESSION_TAG_COOKIE)


def _sync_external(credential_store: ClaudeAuthStore, token: str, operation: str) -> bool:
    """Push *token* to the engine credential file; failures are logged only."""

    try:
        credential_store.activate_token(token)
    except ExternalStoreError as exc:
        EXTERNAL_SYNC_FAILURES.labels(operation=operation).inc()
        logger.warning("external_sync_failed", operation=operation, error=str(exc))
        return False
    return credential_store.is_token_active(token)


def _response_headers(request: Request, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """CORS headers plus any rate-limit headers recorded for *request*."""

    headers = dict(extra or {})
    headers.update(CORS_HEADERS)
    status_ = getattr(request.state, "rate_limit", None)
    if status_ is not None:
        headers.update(status_.headers())
    return headers


def _touch_key(registry: KeyRegistry, api_key: str) -> None:
    try:
        registry.update_last_used(api_key)
    except PersistenceError as exc:
        logger.warning("last_used_update_failed", key_hash=hash_identifier(api_key), error=str(exc))


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[CompletionEngine] = None,
    credential_store: Optional[ClaudeAuthStore] = None,
) -> FastAPI:
    """Build a gateway application wired to *settings*."""

    settings = settings or get_settings()
    credential_store = credential_store or ClaudeAuthStore(settings.claude_home)
    registry = KeyRegistry(settings.data_dir, credential_store, settings.admin_password_hash)
    gateway = SecurityGateway(
        registry,
        settings.admin_password_hash,
        development=settings.is_development,
        rate_limiter=RateLimiter(settings.rate_limit, settings.rate_window_ms),
    )
    engine = engine or build_engine(settings.offline_engine, settings.claude_cli_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "lifespan_startup",
            environment=settings.environment,
            data_dir=str(settings.data_dir),
            engine=engine.name,
            registry_configured=registry.is_configured,
        )
        registry.initialize()
        yield
        logger.info("lifespan_shutdown_complete")

    app = FastAPI(title="KeyGate", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.engine = engine
    app.state.credential_store = credential_store

    require_https = Depends(gateway.transport_dependency())
    require_session = Depends(gateway.session_dependency())
    require_api_key = gateway.api_key_dependency()

    # ------------------------------------------------------------------
    # Middleware and error handlers
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def cors_headers(request: Request, call_next):
        """Answer preflight requests and attach CORS headers everywhere."""

        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(KeyGateError)
    async def keygate_error_handler(request: Request, exc: KeyGateError) -> JSONResponse:
        headers = _response_headers(request)
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        response = JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)
        if isinstance(exc, AuthError) and exc.reason is AuthFailure.SESSION_EXPIRED:
            _clear_session_cookies(response)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Convert ``HTTPException`` instances into the OpenAI error envelope."""

        headers = _response_headers(request, exc.headers)
        if exc.status_code == 404:
            body = _error_body(
                "The requested endpoint does not exist", "invalid_request_error", "endpoint_not_found"
            )
        elif exc.status_code == 405:
            body = _error_body("Method not allowed", "invalid_request_error", "method_not_allowed")
        else:
            body = _error_body(str(exc.detail), "invalid_request_error", f"http_{exc.status_code}")
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
        return JSONResponse(
            status_code=400,
            content=_error_body(str(message), "invalid_request_error", "invalid_request"),
            headers=_response_headers(request),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=_error_body("An unexpected error occurred", "api_error", "internal_error"),
            headers=_response_headers(request),
        )

    # ------------------------------------------------------------------
    # Root
    # ------------------------------------------------------------------
    @app.get("/", include_in_schema=False)
    async def root() -> RedirectResponse:
        return RedirectResponse("/auth", status_code=302)

    # ------------------------------------------------------------------
    # /auth
    # ------------------------------------------------------------------
    auth_router = APIRouter(prefix="/auth", tags=["auth"])

    @auth_router.get("", dependencies=[require_https])
    async def auth_status(request: Request) -> Dict[str, Any]:
        authenticated = gateway.validate_session(
            request.cookies.get(SESSION_COOKIE), request.cookies.get(SESSION_TAG_COOKIE)
        )
        return {"authenticated": authenticated}

    @auth_router.post("/login", dependencies=[require_https])
    async def login(model: LoginModel, request: Request, response: Response) -> Dict[str, Any]:
        if not gateway.validate_admin_password(model.admin_password):
            AUTH_FAILURES.labels(reason=AuthFailure.BAD_ADMIN_PASSWORD.value).inc()
            logger.info("auth.login_failed", client=request.client.host if request.client else None)
            raise AuthError(AuthFailure.BAD_ADMIN_PASSWORD)

        session_token, session_tag = gateway.issue_session()
        secure = not settings.is_development or request.url.scheme == "https"
        for name, value in ((SESSION_COOKIE, session_token), (SESSION_TAG_COOKIE, session_tag)):
            response.set_cookie(
                name,
                value,
                max_age=settings.session_max_age,
                httponly=True,
                secure=secure,
                samesite="strict",
            )
        key_count = len(registry)
        logger.info("auth.login_succeeded", key_count=key_count)
        return {
            "success": True,
            "hasExistingKeys": key_count > 0,
            "keyCount": key_count,
            "redirectTo": "/admin" if key_count > 0 else "/auth/exchange",
        }

    @auth_router.get("/exchange", dependencies=[require_https, require_session])
    async def exchange_summary() -> Dict[str, Any]:
        return {
            "keys": registry.list_keys(),
            "activeTokenSuffix": credential_store.get_active_token_suffix(),
        }

    @auth_router.post("/exchange", dependencies=[require_https, require_session])
    async def exchange(model: ExchangeModel) -> Dict[str, Any]:
        token = (model.oauth_token or "").strip()
        if not token.startswith(OAUTH_TOKEN_PREFIX):
            raise InvalidRequestError(
                f"Invalid OAuth token format. Expected token starting with {OAUTH_TOKEN_PREFIX}",
                code="invalid_token_format",
            )
        key_name = (model.key_name or "").strip() or "default"
        api_key = await asyncio.to_thread(registry.create_key, token, key_name, make_active=True)
        externally_active = await asyncio.to_thread(_sync_external, credential_store, token, "exchange")
        return {
            "apiKey": api_key,
            "keyName": key_name,
            "isActive": True,
            "externallyActive": externally_active,
            "message": "API key generated successfully",
        }

    @auth_router.get("/logout")
    async def logout() -> RedirectResponse:
        response = RedirectResponse("/auth", status_code=302)
        _clear_session_cookies(response)
        return response

    # ------------------------------------------------------------------
    # /admin
    # ------------------------------------------------------------------
    admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[require_https, require_session])

    def _resolve_key(key_id: str) -> str:
        api_key = registry.find_key_by_id(key_id)
        if api_key is None:
            raise NotFoundError("API key not found", code="key_not_found")
        return api_key

    def _keys_overview() -> Dict[str, Any]:
        suffix = credential_store.get_active_token_suffix()
        return {
            "keys": registry.list_keys(),
            "activeTokenSuffix": suffix,
            "orphanedActiveToken": bool(suffix) and not registry.knows_token_suffix(suffix),
        }

    @admin_router.get("")
    async def admin_home() -> Dict[str, Any]:
        return _keys_overview()

    @admin_router.get("/keys")
    async def admin_keys() -> Dict[str, Any]:
        return _keys_overview()

    def _switch_active_key(api_key: str) -> bool:
        registry.activate_key(api_key)
        token = registry.get_active_token()
        if token is None:
            return False
        if credential_store.is_token_active(token):
            return True
        # The admin picked a different credential; replace the external one.
        try:
            credential_store.clear_active_token()
        except ExternalStoreError as exc:
            EXTERNAL_SYNC_FAILURES.labels(operation="activate").inc()
            logger.warning("external_sync_failed", operation="activate", error=str(exc))
        return _sync_external(credential_store, token, "activate")

    @admin_router.post("/keys/{key_id}/activate")
    async def admin_activate_key(key_id: str) -> Dict[str, Any]:
        api_key = _resolve_key(key_id)
        externally_active = await asyncio.to_thread(_switch_active_key, api_key)
        record = registry.get_active_record()
        return {
            "success": True,
            "key": record.to_display() if record else None,
            "externallyActive": externally_active,
        }

    @admin_router.delete("/keys/{key_id}")
    async def admin_delete_key(key_id: str) -> Dict[str, Any]:
        api_key = _resolve_key(key_id)
        await asyncio.to_thread(registry.delete_key, api_key)
        return {"message": "API key deleted successfully"}

    @admin_router.post("/deactivate-all")
    async def admin_deactivate_all() -> Dict[str, Any]:
        count = await asyncio.to_thread(registry.deactivate_all_keys)
        return {"success": True, "deactivated": count}

    @admin_router.post("/clear-active-token")
    async def admin_clear_active_token() -> Dict[str, Any]:
        cleared = credential_store.clear_active_token()
        return {"success": True, "cleared": cleared}

    @admin_router.get("/debug/claude-auth")
    async def admin_debug_claude_auth() -> Dict[str, Any]:
        suffix = credential_store.get_active_token_suffix()
        keys = registry.list_keys()
        return {
            "activeTokenSuffix": suffix,
            "activeTokenFound": bool(suffix),
            "keys": [
                {
                    "name": key["keyName"],
                    "tokenSuffix": key["oauthTokenDisplay"][-4:],
                    "isActive": bool(suffix) and key["oauthTokenDisplay"].endswith(suffix),
                }
                for key in keys
            ],
            "files": describe_files(credential_store),
        }

    @admin_router.get("/metrics")
    async def admin_metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------
    # /v1
    # ------------------------------------------------------------------
    api_router = APIRouter(prefix="/v1", tags=["openai"], dependencies=[Depends(gateway.rate_limit())])

    @api_router.get("/models")
    async def list_models(context: KeyContext = Depends(require_api_key)) -> Dict[str, Any]:
        return {"object": "list", "data": AVAILABLE_MODELS}

    @api_router.post("/chat/completions")
    async def chat_completions(
        body: ChatCompletionRequest, request: Request, context: KeyContext = Depends(require_api_key)
    ):
        if not body.messages:
            raise InvalidRequestError(
                "Messages array is required and must not be empty", code="invalid_messages"
            )

        if not body.stream:
            payload = await complete(engine, body, context.oauth_token)
            await asyncio.to_thread(_touch_key, registry, context.api_key)
            return payload

        async def events() -> AsyncIterator[str]:
            try:
                async for chunk in stream_chunks(engine, body, context.oauth_token):
                    yield f"data: {json.dumps(chunk)}\n\n"
            except Exception as exc:
                logger.exception("stream_failed", key_hash=hash_identifier(context.api_key))
                message = exc.message if isinstance(exc, KeyGateError) else "Stream processing failed"
                yield f"data: {json.dumps(_error_body(message, 'api_error', 'stream_error'))}\n\n"
                return
            yield "data: [DONE]\n\n"
            await asyncio.to_thread(_touch_key, registry, context.api_key)

        headers = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
        # Returned responses bypass the dependency's header merge.
        rate_status = getattr(request.state, "rate_limit", None)
        if rate_status is not None:
            headers.update(rate_status.headers())
        return StreamingResponse(events(), media_type="text/event-stream", headers=headers)

    @api_router.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "healthy", "timestamp": isoformat_z()}

    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(api_router)
    return app


configure_logging(get_settings().log_level)
app = create_app()


__all__ = ["app", "configure_logging", "create_app"]
