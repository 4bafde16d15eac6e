"""
PhonePe payment gateway client.

Talks to the PhonePe OAuth token endpoint and the PG pay/status endpoints.
Authenticated calls use the provider's ``O-Bearer`` scheme, not ``Bearer``.

The pay endpoint answers in one of several shapes depending on product and
API version; each shape has its own decoder and the decoders are tried in
order, so supporting a new shape means adding one decoder.
"""

import base64
import binascii
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
from cachetools import TLRUCache
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from shared.core import get_logger
from app.application.errors import ErrorKind, PaymentGatewayError
from app.application.validation import normalize_phone

logger = get_logger(__name__)

TOKEN_PATH = "/v1/oauth/token"
PAY_PATH = "/pg/v1/pay"
STATUS_PATH = "/pg/v1/status/{merchant_id}/{merchant_order_id}"

PRODUCTION_API_HOST = "api.phonepe.com"
PRODUCTION_CHECKOUT_URL = "https://mercury.phonepe.com/transact/pg?token={token}"
SANDBOX_CHECKOUT_URL = "https://mercury-stg.phonepe.com/transact/pg?token={token}"

MIN_AMOUNT_PAISE = 100
TOKEN_EXPIRY_BUFFER_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3600
MERCHANT_ORDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,63}$")

MERCHANT_NOT_CONFIGURED_CODES = {"KEY_NOT_CONFIGURED", "MERCHANT_NOT_CONFIGURED", "MERCHANT_NOT_ACTIVATED"}
BAD_REQUEST_CODES = {"BAD_REQUEST", "INVALID_REQUEST", "PR000", "INVALID_TRANSACTION_ID"}
AUTH_ERROR_CODES = {"UNAUTHORIZED", "AUTHORIZATION_FAILED"}


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class CustomerContact:
    name: str
    email: str
    phone: str


@dataclass(frozen=True)
class PaymentRedirect:
    payment_url: str
    transaction_id: Optional[str]
    merchant_order_id: str
    shape: str


@dataclass(frozen=True)
class PaymentStatus:
    success: bool
    status: str
    state: str
    transaction_id: Optional[str]
    amount: Optional[int]
    payment_instrument: Optional[Dict[str, Any]]
    code: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    merchant_order_id: Optional[str]
    transaction_id: Optional[str]
    code: Optional[str]
    state: Optional[str]
    amount: Optional[int]
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.code == "PAYMENT_SUCCESS" or self.state in ("COMPLETED", "SUCCESS")

    @property
    def is_failure(self) -> bool:
        return self.code in ("PAYMENT_ERROR", "PAYMENT_DECLINED") or self.state == "FAILED"


def to_minor_units(amount_rupees) -> int:
    """Rupees to paise, rounded half-up to a whole paisa."""
    paise = Decimal(str(amount_rupees)) * 100
    return int(paise.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def ensure_minimum_amount(amount_rupees) -> int:
    paise = to_minor_units(amount_rupees)
    if paise < MIN_AMOUNT_PAISE:
        raise PaymentGatewayError(
            ErrorKind.MINIMUM_AMOUNT_ERROR,
            f"Online payment requires a minimum of ₹1 (100 paise). "
            f"Order amount is ₹{Decimal(paise) / 100:.2f} ({paise} paise).",
            status_code=400,
        )
    return paise


def generate_merchant_order_id(prefix: str = "CHULBULI") -> str:
    """``{prefix}-{unix millis}-{8 uppercase hex}``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def compute_webhook_hash(base64_body: str, secret: str) -> str:
    return hashlib.sha256((base64_body + secret).encode("utf-8")).hexdigest()


def verify_webhook_signature(raw_body, signature_header: Optional[str], secret: str) -> bool:
    """Check ``sha256(base64Body + secret)###<saltIndex>`` in constant time.

    Never raises; anything unparseable is a rejection.
    """
    try:
        if not raw_body or not signature_header or not secret:
            return False
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8")
        received = signature_header.split("###", 1)[0].strip().lower()
        if not received:
            return False
        expected = compute_webhook_hash(raw_body, secret)
        return hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8"))
    except Exception:
        return False


# -- pay response shapes ------------------------------------------------------

class _RedirectInfo(BaseModel):
    url: str = Field(min_length=1)

class _InstrumentResponse(BaseModel):
    redirectInfo: _RedirectInfo

class _InstrumentData(BaseModel):
    instrumentResponse: _InstrumentResponse
    transactionId: Optional[str] = None
    merchantTransactionId: Optional[str] = None

class InstrumentRedirectResponse(BaseModel):
    """``{success, data: {instrumentResponse: {redirectInfo: {url}}}}``"""
    success: bool
    data: _InstrumentData

class CheckoutOrderResponse(BaseModel):
    """``{orderId, state}``; the hosted checkout URL is derived from orderId."""
    orderId: str = Field(min_length=1)
    state: str
    redirectUrl: Optional[str] = None

class DirectUrlResponse(BaseModel):
    """``{paymentUrl}``"""
    paymentUrl: str = Field(min_length=1)
    transactionId: Optional[str] = None


def _decode_instrument_redirect(body, client, merchant_order_id) -> PaymentRedirect:
    parsed = InstrumentRedirectResponse.model_validate(body)
    return PaymentRedirect(
        payment_url=parsed.data.instrumentResponse.redirectInfo.url,
        transaction_id=parsed.data.transactionId or parsed.data.merchantTransactionId or merchant_order_id,
        merchant_order_id=merchant_order_id,
        shape="instrument_redirect",
    )

def _decode_checkout_order(body, client, merchant_order_id) -> PaymentRedirect:
    parsed = CheckoutOrderResponse.model_validate(body)
    return PaymentRedirect(
        payment_url=parsed.redirectUrl or client.hosted_checkout_url(parsed.orderId),
        transaction_id=parsed.orderId,
        merchant_order_id=merchant_order_id,
        shape="checkout_order",
    )

def _decode_direct_url(body, client, merchant_order_id) -> PaymentRedirect:
    parsed = DirectUrlResponse.model_validate(body)
    return PaymentRedirect(
        payment_url=parsed.paymentUrl,
        transaction_id=parsed.transactionId or merchant_order_id,
        merchant_order_id=merchant_order_id,
        shape="direct_url",
    )

# Tried in order, first match wins
RESPONSE_DECODERS: Tuple[Callable[..., PaymentRedirect], ...] = (
    _decode_instrument_redirect,
    _decode_checkout_order,
    _decode_direct_url,
)


def classify_provider_error(http_status: int, body: Dict[str, Any], raw_body: str) -> PaymentGatewayError:
    """Map a provider error response onto an error kind."""
    code = body.get("code") or body.get("errorCode")
    message = body.get("message") or raw_body or f"HTTP {http_status}"
    text = str(message).lower()

    if code in MERCHANT_NOT_CONFIGURED_CODES or "not configured" in text or "not activated" in text:
        return PaymentGatewayError(
            ErrorKind.MERCHANT_NOT_CONFIGURED,
            "PhonePe merchant account is not configured for checkout",
            provider_code=code, provider_message=message, raw_body=raw_body,
            http_status=http_status, retryable=False,
        )
    if "minimum amount" in text or "greater than or equal to 100" in text:
        return PaymentGatewayError(
            ErrorKind.MINIMUM_AMOUNT_ERROR,
            "Online payment requires a minimum of ₹1 (100 paise)",
            provider_code=code, provider_message=message, raw_body=raw_body,
            http_status=http_status, retryable=False, status_code=400,
        )
    if code in AUTH_ERROR_CODES or http_status in (401, 403):
        return PaymentGatewayError(
            ErrorKind.GATEWAY_AUTH_ERROR,
            f"PhonePe rejected the access token: {message}",
            provider_code=code, provider_message=message, raw_body=raw_body,
            http_status=http_status, retryable=False,
        )
    if code in BAD_REQUEST_CODES or http_status == 400:
        return PaymentGatewayError(
            ErrorKind.BAD_REQUEST,
            f"PhonePe rejected the request: {message}",
            provider_code=code, provider_message=message, raw_body=raw_body,
            http_status=http_status, retryable=False,
        )
    return PaymentGatewayError(
        ErrorKind.GATEWAY_ERROR,
        f"PhonePe request failed: {message} (Status: {http_status})",
        provider_code=code, provider_message=message, raw_body=raw_body,
        http_status=http_status, retryable=http_status >= 500 or http_status == 429,
    )


def _token_expiry(_key, token: AccessToken, now: float) -> float:
    return now + max(token.expires_in - TOKEN_EXPIRY_BUFFER_SECONDS, 0)


def _parse_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class PhonePeClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client_version: str = "1",
        base_url: str = "https://api.phonepe.com/apis/pg",
        auth_url: str = "https://api.phonepe.com/apis/identity-manager",
        app_url: str = "http://localhost:3000",
        timeout: float = 15.0,
        merchant_order_prefix: str = "CHULBULI",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        client_id = (client_id or "").strip()
        client_secret = (client_secret or "").strip()
        if not client_id or not client_secret:
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_MISCONFIGURED,
                "PhonePe configuration missing: PHONEPE_CLIENT_ID and PHONEPE_CLIENT_SECRET must be set",
                status_code=503,
            )
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = (client_version or "1").strip()
        self.base_url = base_url.strip().rstrip("/")
        self.auth_url = auth_url.strip().rstrip("/")
        self.app_url = app_url.strip().rstrip("/")
        self.merchant_order_prefix = merchant_order_prefix
        self._http = httpx.Client(timeout=timeout, transport=transport)
        self._token_cache: TLRUCache = TLRUCache(maxsize=1, ttu=_token_expiry)
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "PhonePeClient":
        return cls(
            client_id=settings.PHONEPE_CLIENT_ID,
            client_secret=settings.PHONEPE_CLIENT_SECRET,
            client_version=settings.PHONEPE_CLIENT_VERSION,
            base_url=settings.PHONEPE_BASE_URL,
            auth_url=settings.PHONEPE_AUTH_URL,
            app_url=settings.APP_URL,
            timeout=settings.PHONEPE_TIMEOUT_SECONDS,
            merchant_order_prefix=settings.MERCHANT_ORDER_PREFIX,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def merchant_id(self) -> str:
        # Client ids follow ``{merchantId}_{suffix}``
        return self.client_id.split("_", 1)[0]

    @property
    def is_production(self) -> bool:
        return PRODUCTION_API_HOST in self.base_url

    @property
    def token_endpoint(self) -> str:
        if self.auth_url.endswith(TOKEN_PATH):
            return self.auth_url
        return f"{self.auth_url}{TOKEN_PATH}"

    def hosted_checkout_url(self, provider_order_id: str) -> str:
        template = PRODUCTION_CHECKOUT_URL if self.is_production else SANDBOX_CHECKOUT_URL
        return template.format(token=quote(provider_order_id, safe=""))

    def generate_merchant_order_id(self) -> str:
        return generate_merchant_order_id(self.merchant_order_prefix)

    # -- token ----------------------------------------------------------

    def acquire_token(self, force_refresh: bool = False) -> AccessToken:
        # Routes run in a threadpool; the cache and the fetch share one lock
        with self._token_lock:
            if not force_refresh:
                cached = self._token_cache.get("token")
                if cached is not None:
                    return cached
            self._token_cache.pop("token", None)
            token = self._fetch_token()
            self._token_cache["token"] = token
        logger.info("PhonePe OAuth token obtained", extra={'extra_fields': {'expires_in': token.expires_in}})
        return token

    def _fetch_token(self) -> AccessToken:
        response = self._send("POST", self.token_endpoint, data={
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
            "client_version": self.client_version,
        })
        body = _parse_json(response)

        if not response.is_success:
            logger.error(
                "PhonePe token request failed",
                extra={'extra_fields': {'status_code': response.status_code, 'endpoint': self.token_endpoint}}
            )
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_AUTH_ERROR,
                f"Failed to get PhonePe token: {body.get('message') or body.get('code') or response.reason_phrase} "
                f"(Status: {response.status_code})",
                provider_code=body.get("code"),
                provider_message=body.get("message"),
                raw_body=response.text,
                http_status=response.status_code,
                retryable=response.status_code >= 500,
            )
        if not body.get("access_token"):
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_AUTH_ERROR,
                "PhonePe token response missing access_token",
                raw_body=response.text,
                http_status=response.status_code,
            )

        return AccessToken(
            access_token=body["access_token"],
            expires_in=int(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS),
        )

    # -- payments ---------------------------------------------------------

    def create_payment_order(
        self,
        merchant_order_id: str,
        amount_rupees,
        order_id: str,
        customer: CustomerContact,
    ) -> PaymentRedirect:
        amount_paise = ensure_minimum_amount(amount_rupees)
        if not merchant_order_id or not MERCHANT_ORDER_ID_RE.match(merchant_order_id):
            raise PaymentGatewayError(
                ErrorKind.BAD_REQUEST,
                "merchantOrderId must be <= 63 chars and contain only letters, digits, underscore, and hyphen",
                status_code=400,
            )
        phone = normalize_phone(customer.phone)
        if phone is None:
            raise PaymentGatewayError(
                ErrorKind.BAD_REQUEST, "Customer phone must be a 10 digit number", status_code=400,
            )

        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": merchant_order_id,
            "merchantUserId": f"MUID{phone}",
            "amount": amount_paise,
            "redirectUrl": f"{self.app_url}/order-success?orderId={quote(order_id, safe='')}",
            "redirectMode": "REDIRECT",
            "callbackUrl": f"{self.app_url}/api/payment/phonepe/webhook",
            "mobileNumber": phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }

        response = self._authorized("POST", f"{self.base_url}{PAY_PATH}", json=payload)
        body = _parse_json(response)

        if not response.is_success or body.get("success") is False:
            error = classify_provider_error(response.status_code, body, response.text)
            logger.error(
                "PhonePe payment creation failed",
                extra={'extra_fields': {
                    'merchant_order_id': merchant_order_id,
                    'status_code': response.status_code,
                    'kind': error.kind.value,
                    'provider_code': error.provider_code,
                }}
            )
            raise error

        redirect = self._decode_pay_response(body, merchant_order_id)
        if redirect is None:
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_RESPONSE_UNRECOGNIZED,
                f"Unrecognized PhonePe pay response: {response.text}",
                raw_body=response.text,
                http_status=response.status_code,
            )

        logger.info(
            "PhonePe payment created",
            extra={'extra_fields': {
                'merchant_order_id': merchant_order_id,
                'order_id': order_id,
                'amount_paise': amount_paise,
                'shape': redirect.shape,
            }}
        )
        return redirect

    def _decode_pay_response(self, body: Dict[str, Any], merchant_order_id: str) -> Optional[PaymentRedirect]:
        for decoder in RESPONSE_DECODERS:
            try:
                return decoder(body, self, merchant_order_id)
            except PydanticValidationError:
                continue
        return None

    def verify_payment_status(self, merchant_order_id: str) -> PaymentStatus:
        """Poll the provider for a payment's state; fallback for a late webhook."""
        if not merchant_order_id:
            raise PaymentGatewayError(ErrorKind.BAD_REQUEST, "merchantOrderId is required", status_code=400)

        url = f"{self.base_url}{STATUS_PATH}".format(
            merchant_id=quote(self.merchant_id, safe=""),
            merchant_order_id=quote(merchant_order_id, safe=""),
        )
        response = self._authorized("GET", url)
        body = _parse_json(response)

        if not response.is_success:
            raise classify_provider_error(response.status_code, body, response.text)

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        details = body.get("paymentDetails") or []
        first_attempt = details[0] if details and isinstance(details[0], dict) else {}
        code = body.get("code")

        state = data.get("state") or body.get("state")
        if not state:
            if code == "PAYMENT_SUCCESS":
                state = "COMPLETED"
            elif code in ("PAYMENT_ERROR", "PAYMENT_DECLINED"):
                state = "FAILED"
            else:
                state = "PENDING"

        if state == "COMPLETED":
            status = "PAYMENT_SUCCESS"
        elif state == "FAILED":
            status = "PAYMENT_ERROR"
        else:
            status = "PAYMENT_PENDING"

        instrument = data.get("paymentInstrument")
        if instrument is None and first_attempt.get("paymentMode"):
            instrument = {"type": first_attempt["paymentMode"]}

        return PaymentStatus(
            success=state == "COMPLETED",
            status=status,
            state=state,
            transaction_id=data.get("transactionId") or first_attempt.get("transactionId") or body.get("orderId"),
            amount=data.get("amount", body.get("amount")),
            payment_instrument=instrument,
            code=code,
        )

    # -- webhooks ---------------------------------------------------------

    def verify_webhook_signature(self, raw_body, signature_header: Optional[str]) -> bool:
        return verify_webhook_signature(raw_body, signature_header, self.client_secret)

    @staticmethod
    def decode_webhook_payload(base64_body: str) -> Dict[str, Any]:
        try:
            decoded = base64.b64decode(base64_body, validate=True).decode("utf-8")
            payload = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PaymentGatewayError(
                ErrorKind.BAD_REQUEST, f"Malformed webhook payload: {exc}", status_code=400,
            ) from exc
        if not isinstance(payload, dict):
            raise PaymentGatewayError(ErrorKind.BAD_REQUEST, "Malformed webhook payload", status_code=400)
        return payload

    @staticmethod
    def parse_webhook_event(payload: Dict[str, Any]) -> WebhookEvent:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return WebhookEvent(
            merchant_order_id=(
                data.get("merchantTransactionId")
                or data.get("merchantOrderId")
                or payload.get("merchantOrderId")
            ),
            transaction_id=data.get("transactionId") or payload.get("transactionId"),
            code=payload.get("code"),
            state=data.get("state") or data.get("status") or payload.get("status"),
            amount=data.get("amount"),
            raw=payload,
        )

    # -- transport --------------------------------------------------------

    def _authorized(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send with ``O-Bearer`` auth; on 401 retry once with a fresh token."""
        token = self.acquire_token()
        response = self._send(method, url, headers=self._auth_headers(token), **kwargs)
        if response.status_code == 401 or _parse_json(response).get("code") == "UNAUTHORIZED":
            logger.info("PhonePe token rejected, retrying with a fresh token")
            token = self.acquire_token(force_refresh=True)
            response = self._send(method, url, headers=self._auth_headers(token), **kwargs)
        return response

    @staticmethod
    def _auth_headers(token: AccessToken) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"O-Bearer {token.access_token}",
        }

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_ERROR, f"PhonePe request timed out: {url}", retryable=True, status_code=504,
            ) from exc
        except httpx.TransportError as exc:
            raise PaymentGatewayError(
                ErrorKind.GATEWAY_ERROR, f"Could not reach PhonePe: {exc}", retryable=True,
            ) from exc
