"""Online checkout and payment settlement on top of the PhonePe client."""

import random
import time
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.core import get_logger
from app.domain.models import Order, Product
from app.infrastructure.phonepe import CustomerContact, PaymentRedirect, PhonePeClient, ensure_minimum_amount
from .errors import AuthError, ErrorKind, OrderNotFound, PaymentGatewayError, ProductNotFound, ValidationError
from .schemas import PaymentInitiated, PaymentStatusRead, PhonePeCheckout
from .service import OrderService, compute_unit_price, round_money, validate_checkout

logger = get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        db: Session,
        gateway: PhonePeClient,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway
        self.orders = OrderService(db)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    def checkout_online(self, request: PhonePeCheckout) -> PaymentInitiated:
        """Place a pending online order, then start a payment for it.

        The order is committed before the gateway is called. If the gateway
        call fails for good the order stays pending until a webhook, a status
        poll or the stale-order cleanup settles it.
        """
        validate_checkout(request.items, request.customer(), request.address(), "online")
        ensure_minimum_amount(self._estimate_total(request))

        merchant_order_id = self.gateway.generate_merchant_order_id()
        order = self.orders.place_order(
            request.items,
            request.customer(),
            request.address(),
            user_id=request.user_id,
            payment_method="online",
            payment_status="pending",
            merchant_order_id=merchant_order_id,
        )

        try:
            redirect = self._create_payment_with_retry(order)
        except PaymentGatewayError as e:
            logger.error(
                "Payment initiation failed, order left pending",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'merchant_order_id': merchant_order_id,
                    'kind': e.kind.value,
                    'provider_code': e.provider_code,
                    'http_status': e.http_status,
                }}
            )
            raise

        self.orders.set_transaction_id(order, redirect.transaction_id)
        return PaymentInitiated(
            payment_url=redirect.payment_url,
            order_id=order.id,
            order_number=order.order_number,
            merchant_order_id=merchant_order_id,
            transaction_id=redirect.transaction_id,
        )

    def _estimate_total(self, request: PhonePeCheckout) -> Decimal:
        """Unlocked read of current prices; the order transaction recomputes them."""
        ids = {line.product_id for line in request.items}
        try:
            prices = {
                row.id: (row.price, row.discount)
                for row in self.db.execute(
                    select(Product.id, Product.price, Product.discount).where(Product.id.in_(ids))
                )
            }
        finally:
            self.db.rollback()
        total = Decimal("0")
        for line in request.items:
            if line.product_id not in prices:
                raise ProductNotFound(line.product_id)
            price, discount = prices[line.product_id]
            total += compute_unit_price(price, discount) * line.quantity
        return round_money(total)

    def _create_payment_with_retry(self, order: Order) -> PaymentRedirect:
        customer = CustomerContact(
            name=order.customer_name, email=order.customer_email, phone=order.customer_phone,
        )
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.gateway.create_payment_order(
                    order.merchant_order_id, order.total_price, order.id, customer,
                )
            except PaymentGatewayError as e:
                if not e.retryable or attempt == self.retry_attempts:
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                delay += random.uniform(0, self.retry_base_delay)
                logger.warning(
                    f"Payment creation failed (attempt {attempt}/{self.retry_attempts}), retrying in {delay:.2f}s",
                    extra={'extra_fields': {'merchant_order_id': order.merchant_order_id, 'kind': e.kind.value}}
                )
                self._sleep(delay)

    # -- settlement -------------------------------------------------------

    def _find_order(self, merchant_order_id: str) -> Order:
        try:
            order = self.orders.get_by_merchant_order_id(merchant_order_id)
        finally:
            # Settlement runs in its own transaction; the lookup must not hold one open
            self.db.commit()
        if order is None:
            raise OrderNotFound(merchant_order_id)
        return order

    def handle_webhook(self, base64_body: Optional[str], signature_header: Optional[str]) -> Order:
        if not self.gateway.verify_webhook_signature(base64_body, signature_header):
            logger.warning(
                "Rejected PhonePe webhook with invalid signature",
                extra={'extra_fields': {'signature_present': bool(signature_header)}}
            )
            raise AuthError(ErrorKind.INVALID_SIGNATURE, "Invalid signature")

        event = self.gateway.parse_webhook_event(self.gateway.decode_webhook_payload(base64_body))
        if not event.merchant_order_id:
            raise ValidationError(ErrorKind.BAD_REQUEST, "Webhook payload has no merchant order id")

        order = self._find_order(event.merchant_order_id)

        logger.info(
            "PhonePe webhook received",
            extra={'extra_fields': {
                'order_id': order.id,
                'merchant_order_id': event.merchant_order_id,
                'code': event.code,
                'state': event.state,
            }}
        )

        if event.is_success:
            if order.status == "cancelled":
                logger.warning(
                    "Payment success received for a cancelled order",
                    extra={'extra_fields': {'order_id': order.id, 'merchant_order_id': order.merchant_order_id}}
                )
            else:
                self.orders.mark_payment_completed(order, event.transaction_id)
        elif event.is_failure:
            self.orders.mark_payment_failed(order, event.transaction_id)
        return order

    def refresh_payment_status(self, merchant_order_id: str) -> PaymentStatusRead:
        """Ask the gateway for a payment the webhook has not settled yet."""
        order = self._find_order(merchant_order_id)

        if order.payment_status != "pending":
            return self._status_read(order, None, f"Payment already {order.payment_status}")

        status = self.gateway.verify_payment_status(merchant_order_id)
        if status.success:
            self.orders.mark_payment_completed(order, status.transaction_id)
            message = "Payment completed"
        elif status.state == "FAILED":
            self.orders.mark_payment_failed(order, status.transaction_id)
            message = "Payment failed"
        else:
            message = "Payment is still pending"
        return self._status_read(order, status.state, message)

    @staticmethod
    def _status_read(order: Order, state: Optional[str], message: str) -> PaymentStatusRead:
        return PaymentStatusRead(
            success=order.payment_status == "completed",
            order_id=order.id,
            merchant_order_id=order.merchant_order_id,
            payment_status=order.payment_status,
            state=state,
            transaction_id=order.transaction_id,
            message=message,
        )
