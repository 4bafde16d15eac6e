import hmac
import threading
from typing import Optional
from fastapi import Depends, Request
from sqlalchemy.orm import Session
from app.auth_local import decode_access_token
from app.application.errors import AuthError, ErrorKind, StorefrontError
from app.application.payment_service import PaymentService
from app.core_settings import Settings
from app.infrastructure.db import get_db
from app.infrastructure.phonepe import PhonePeClient

BEARER_PREFIX = "Bearer "
AUTH_COOKIE = "auth_token"

gateway_lock = threading.Lock()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith(BEARER_PREFIX):
        return auth_header[len(BEARER_PREFIX):].strip() or None
    return None


def optional_user(request: Request) -> Optional[dict]:
    """Decoded token claims if the caller sent a valid token, else None."""
    token = request.cookies.get(AUTH_COOKIE) or _bearer_token(request)
    if not token:
        return None
    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        return None
    return claims


def verify_token(user: Optional[dict] = Depends(optional_user)) -> dict:
    if user is None:
        raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    return user


def require_admin(user: dict = Depends(verify_token)) -> dict:
    if user.get("role") != "admin":
        raise StorefrontError(ErrorKind.FORBIDDEN, "Admin access required", status_code=403)
    return user


def verify_cron_secret(request: Request, settings: Settings = Depends(get_app_settings)) -> None:
    provided = _bearer_token(request)
    if not settings.CRON_SECRET or not provided or not hmac.compare_digest(
        provided.encode("utf-8"), settings.CRON_SECRET.encode("utf-8")
    ):
        raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized")


def get_gateway(request: Request) -> PhonePeClient:
    """Shared gateway client, built on first use so a missing config only fails payment calls."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is not None:
        return gateway
    with gateway_lock:
        if request.app.state.gateway is None:
            request.app.state.gateway = PhonePeClient.from_settings(request.app.state.settings)
        return request.app.state.gateway


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PhonePeClient = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> PaymentService:
    return PaymentService(
        db,
        gateway,
        retry_attempts=settings.PAYMENT_RETRY_ATTEMPTS,
        retry_base_delay=settings.PAYMENT_RETRY_BASE_DELAY,
    )
