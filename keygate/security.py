"""Request gating: transport checks, admin sessions, API keys and rate limits.

:class:`SecurityGateway` holds the pure checks.  The ``*_dependency``
factories wrap them as FastAPI dependencies so routes can declare what they
require with ``Depends``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Callable, Optional, Tuple

import structlog
from fastapi import HTTPException, Request, Response, status
from prometheus_client import Counter

from keygate.errors import AuthError, AuthFailure, RateLimitExceeded
from keygate.key_manager import KeyContext, KeyRegistry
from keygate.rate_limit import RateLimiter

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "sessionToken"
SESSION_TAG_COOKIE = "sessionHash"
ANONYMOUS_RATE_KEY = "anonymous"

AUTH_FAILURES = Counter(
    "keygate_auth_failures_total",
    "Rejected API key or session checks",
    ("reason",),
)

RATE_LIMIT_REJECTIONS = Counter(
    "keygate_rate_limit_rejections_total",
    "Requests rejected by the per-key rate limiter",
)


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from a ``Bearer <token>`` header value."""

    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer ") :].strip()
    return token or None


class SecurityGateway:
    """Authentication and throttling checks in front of the key registry."""

    def __init__(
        self,
        registry: KeyRegistry,
        admin_password_hash: Optional[str],
        *,
        development: bool = False,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.registry = registry
        self._admin_password_hash = admin_password_hash
        self.development = development
        self.rate_limiter = rate_limiter or RateLimiter()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def require_transport_security(self, request: Request) -> Optional[str]:
        """Return the HTTPS URL to redirect to, or ``None`` when allowed."""

        if self.development:
            return None
        if request.url.scheme == "https":
            return None
        if request.headers.get("x-forwarded-proto", "").lower() == "https":
            return None
        return str(request.url.replace(scheme="https"))

    # ------------------------------------------------------------------
    # Admin sessions
    # ------------------------------------------------------------------
    def validate_admin_password(self, password: Optional[str]) -> bool:
        if not password or not self._admin_password_hash:
            return False
        return hmac.compare_digest(_sha256_hex(password), self._admin_password_hash)

    def _session_tag(self, session_token: str) -> str:
        return _sha256_hex(session_token + (self._admin_password_hash or ""))

    def issue_session(self) -> Tuple[str, str]:
        """Return a fresh ``(session_token, session_tag)`` pair."""

        session_token = secrets.token_hex(32)
        return session_token, self._session_tag(session_token)

    def validate_session(self, session_token: Optional[str], session_tag: Optional[str]) -> bool:
        if not session_token or not session_tag or not self._admin_password_hash:
            return False
        return hmac.compare_digest(self._session_tag(session_token), session_tag)

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------
    def validate_api_key(self, authorization: Optional[str]) -> KeyContext:
        token = bearer_token(authorization)
        if token is None:
            AUTH_FAILURES.labels(reason=AuthFailure.MISSING_HEADER.value).inc()
            raise AuthError(AuthFailure.MISSING_HEADER)
        context = self.registry.validate_key(token)
        if context is None:
            AUTH_FAILURES.labels(reason=AuthFailure.INVALID_KEY.value).inc()
            logger.info("security.invalid_api_key", key_hash=hash_identifier(token))
            raise AuthError(AuthFailure.INVALID_KEY)
        return context

    # ------------------------------------------------------------------
    # FastAPI dependencies
    # ------------------------------------------------------------------
    def transport_dependency(self) -> Callable[[Request], None]:
        def dependency(request: Request) -> None:
            target = self.require_transport_security(request)
            if target is not None:
                raise HTTPException(
                    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
                    detail="HTTPS required",
                    headers={"Location": target},
                )

        return dependency

    def session_dependency(self) -> Callable[[Request], None]:
        def dependency(request: Request) -> None:
            if not self.validate_session(
                request.cookies.get(SESSION_COOKIE), request.cookies.get(SESSION_TAG_COOKIE)
            ):
                AUTH_FAILURES.labels(reason=AuthFailure.SESSION_EXPIRED.value).inc()
                raise AuthError(AuthFailure.SESSION_EXPIRED)

        return dependency

    def api_key_dependency(self) -> Callable[[Request], KeyContext]:
        def dependency(request: Request) -> KeyContext:
            context = self.validate_api_key(request.headers.get("authorization"))
            request.state.key_context = context
            return context

        return dependency

    def rate_limit(
        self, max_requests: Optional[int] = None, window_ms: Optional[int] = None
    ) -> Callable[[Request, Response], None]:
        """Return a dependency enforcing a per-bearer-token request budget.

        Without arguments the gateway's own limiter is used; passing limits
        creates a dedicated limiter for the dependency.
        """

        if max_requests is None and window_ms is None:
            limiter = self.rate_limiter
        else:
            limiter = RateLimiter(
                max_requests if max_requests is not None else self.rate_limiter.max_requests,
                window_ms if window_ms is not None else int(self.rate_limiter.window_seconds * 1000),
            )

        def dependency(request: Request, response: Response) -> None:
            key = bearer_token(request.headers.get("authorization")) or ANONYMOUS_RATE_KEY
            status_ = limiter.hit(key)
            request.state.rate_limit = status_
            response.headers.update(status_.headers())
            if not status_.allowed:
                RATE_LIMIT_REJECTIONS.inc()
                logger.info("security.rate_limited", key_hash=hash_identifier(key))
                raise RateLimitExceeded(status_.limit, status_.reset_at)

        return dependency


__all__ = [
    "ANONYMOUS_RATE_KEY",
    "SESSION_COOKIE",
    "SESSION_TAG_COOKIE",
    "SecurityGateway",
    "bearer_token",
    "hash_identifier",
]
