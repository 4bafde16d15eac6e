"""Order placement and order lifecycle.

``OrderService.place_order`` is the checkout transaction: every product row
touched by the cart is locked with ``SELECT ... FOR UPDATE`` before its stock
is read, prices come from the database only, and stock decrements plus the
order rows are committed together or not at all.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from shared.core import get_logger
from app.domain.models import (
    Order, OrderCounter, OrderItem, Product, ORDER_STATUSES, PAYMENT_METHODS, utcnow,
)
from .errors import (
    AuthError, ErrorKind, InsufficientStock, OrderNotFound, ProductNotFound,
    StockUpdateConflict, ValidationError,
)
from .schemas import AddressIn, CartItemIn, CustomerIn
from .validation import (
    sanitize_text, validate_email, validate_phone, validate_pincode, validate_quantity,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_COUNTER = "order_number"
# Forward progression; cancelled is reachable from any non-terminal status
STATUS_RANK = {"placed": 0, "packed": 1, "shipped": 2, "delivered": 3}
TERMINAL_STATUSES = ("delivered", "cancelled")


def round_money(amount: Decimal) -> Decimal:
    """Round half away from zero to 2 decimal places."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_unit_price(price, discount) -> Decimal:
    """Unit price after a percentage discount, as stored on order items."""
    price = Decimal(str(price))
    discount = Decimal(str(discount or 0))
    return round_money(price - (price * discount) / Decimal(100))


@dataclass
class CheckoutData:
    """Sanitized, validated customer and address fields."""
    name: str
    email: str
    phone: str
    line1: str
    line2: Optional[str]
    city: str
    state: str
    pincode: str


def validate_checkout(
    cart_items: Sequence[CartItemIn],
    customer: CustomerIn,
    address: AddressIn,
    payment_method: str = "cod",
) -> CheckoutData:
    if not cart_items:
        raise ValidationError(ErrorKind.EMPTY_CART, "Cart is empty")

    required = (customer.name, customer.email, customer.phone,
                address.line1, address.city, address.state, address.pincode)
    if any(not sanitize_text(value) for value in required):
        raise ValidationError(ErrorKind.MISSING_FIELDS, "All address fields are required")

    email = validate_email(customer.email)
    phone = validate_phone(customer.phone)
    pincode = validate_pincode(address.pincode)

    for item in cart_items:
        validate_quantity(item.quantity)

    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            ErrorKind.INVALID_PAYMENT_METHOD,
            f"Unsupported payment method: {payment_method}",
        )

    return CheckoutData(
        name=sanitize_text(customer.name),
        email=email,
        phone=phone,
        line1=sanitize_text(address.line1),
        line2=sanitize_text(address.line2) or None,
        city=sanitize_text(address.city),
        state=sanitize_text(address.state),
        pincode=pincode,
    )


class OrderService:
    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Order]:
        return self.db.execute(
            select(Order).where(Order.merchant_order_id == merchant_order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_orders_for_user(self, user_id: Optional[str]) -> List[Order]:
        """Orders of a verified user, newest first, with items and products."""
        if not user_id:
            raise AuthError(ErrorKind.UNAUTHORIZED, "Unauthorized")
        stmt = (
            select(Order)
            .where(Order.user_id == user_id)
            .options(selectinload(Order.items).selectinload(OrderItem.product))
            .order_by(Order.created_at.desc(), Order.order_number.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    # -- checkout ---------------------------------------------------------

    def place_order(
        self,
        cart_items: Sequence[CartItemIn],
        customer: CustomerIn,
        address: AddressIn,
        user_id: Optional[str] = None,
        payment_method: str = "cod",
        payment_status: str = "pending",
        merchant_order_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        payment_signature: Optional[str] = None,
    ) -> Order:
        checkout = validate_checkout(cart_items, customer, address, payment_method)

        try:
            order = self._create_order(
                cart_items, checkout, sanitize_text(user_id) or None,
                payment_method, payment_status,
                merchant_order_id, transaction_id, payment_signature,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Order placed",
            extra={'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'total_price': str(order.total_price),
                'payment_method': order.payment_method,
                'lines': len(order.items),
            }}
        )
        return order

    def _create_order(
        self, cart_items, checkout: CheckoutData, user_id, payment_method,
        payment_status, merchant_order_id, transaction_id, payment_signature,
    ) -> Order:
        total = Decimal("0")
        items: List[OrderItem] = []

        for position, line in enumerate(cart_items):
            product = self._lock_product(line.product_id)
            if product is None:
                raise ProductNotFound(line.product_id)
            if product.stock < line.quantity:
                raise InsufficientStock(product.id, product.name, product.stock, line.quantity)

            unit_price = compute_unit_price(product.price, product.discount)
            total += unit_price * line.quantity
            product_name = product.name

            if self._decrement_stock(product, line.quantity) == 0:
                raise StockUpdateConflict(product.id, product_name)

            items.append(OrderItem(
                product_id=line.product_id,
                position=position,
                quantity=line.quantity,
                price=unit_price,
                product_name_snapshot=product_name,
            ))

        order = Order(
            order_number=self._next_order_number(),
            user_id=user_id,
            total_price=round_money(total),
            status="placed",
            customer_name=checkout.name,
            customer_email=checkout.email,
            customer_phone=checkout.phone,
            address_line1=checkout.line1,
            address_line2=checkout.line2,
            city=checkout.city,
            state=checkout.state,
            pincode=checkout.pincode,
            payment_method=payment_method,
            payment_provider="phonepe" if payment_method == "online" else "cod",
            payment_status=payment_status,
            merchant_order_id=merchant_order_id,
            transaction_id=transaction_id,
            payment_signature=payment_signature,
            items=items,
        )
        self.db.add(order)
        self.db.flush()
        return order

    def _lock_product(self, product_id: str) -> Optional[Product]:
        stmt = (
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _decrement_stock(self, product: Product, quantity: int) -> int:
        """Conditional decrement; returns the number of rows updated."""
        result = self.db.execute(
            update(Product)
            .where(Product.id == product.id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.expire(product, ["stock", "updated_at"])
        return result.rowcount

    def _restock(self, items: Iterable[OrderItem]) -> None:
        for item in items:
            self.db.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .values(stock=Product.stock + item.quantity, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            product = self.db.identity_map.get(self.db.identity_key(Product, item.product_id))
            if product is not None:
                self.db.expire(product, ["stock", "updated_at"])

    def _next_order_number(self) -> int:
        """Bump the order-number counter row inside the current transaction."""
        value = self.db.execute(
            update(OrderCounter)
            .where(OrderCounter.name == ORDER_NUMBER_COUNTER)
            .values(value=OrderCounter.value + 1)
            .returning(OrderCounter.value)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if value is not None:
            return value

        # First order on a database the migrations did not seed
        value = self.db.execute(
            select(func.coalesce(func.max(Order.order_number), 0))
        ).scalar_one() + 1
        self.db.add(OrderCounter(name=ORDER_NUMBER_COUNTER, value=value))
        self.db.flush()
        return value

    # -- lifecycle --------------------------------------------------------

    def update_status(self, order_id: str, status: str) -> Order:
        if status not in ORDER_STATUSES:
            raise ValidationError(ErrorKind.INVALID_STATUS, "Invalid status")

        try:
            order = self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if order is None:
                raise OrderNotFound(order_id)

            if order.status != status:
                self._check_transition(order, status)
                if status == "cancelled":
                    self._restock(order.items)
                order.status = status
                order.updated_at = utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Order status updated",
            extra={'extra_fields': {'order_id': order.id, 'status': status}}
        )
        return order

    @staticmethod
    def _check_transition(order: Order, status: str) -> None:
        if order.payment_status == "failed" and status != "cancelled":
            raise ValidationError(
                ErrorKind.INVALID_STATUS_TRANSITION,
                "Failed payment orders can only be set to cancelled",
            )
        if order.status in TERMINAL_STATUSES:
            raise ValidationError(
                ErrorKind.INVALID_STATUS_TRANSITION,
                f"Order is already {order.status}",
            )
        if status != "cancelled" and STATUS_RANK[status] < STATUS_RANK[order.status]:
            raise ValidationError(
                ErrorKind.INVALID_STATUS_TRANSITION,
                f"Cannot move order from {order.status} back to {status}",
            )

    def mark_payment_completed(self, order: Order, transaction_id: Optional[str]) -> bool:
        return self._settle_payment(order, "completed", transaction_id)

    def mark_payment_failed(self, order: Order, transaction_id: Optional[str]) -> bool:
        return self._settle_payment(order, "failed", transaction_id)

    def _settle_payment(self, order: Order, payment_status: str, transaction_id: Optional[str]) -> bool:
        """Move a pending payment to its final state; False if already settled."""
        values = {"payment_status": payment_status, "updated_at": utcnow()}
        if transaction_id:
            values["transaction_id"] = transaction_id
        conditions = [Order.id == order.id, Order.payment_status == "pending"]
        if payment_status == "completed":
            conditions.append(Order.status != "cancelled")
        try:
            result = self.db.execute(
                update(Order)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            # Reload inside the transaction; committing does not expire it again
            self.db.refresh(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        changed = result.rowcount > 0
        logger.info(
            "Payment settled" if changed else "Payment already settled, skipping",
            extra={'extra_fields': {
                'order_id': order.id,
                'merchant_order_id': order.merchant_order_id,
                'payment_status': order.payment_status,
                'requested_status': payment_status,
            }}
        )
        return changed

    def set_transaction_id(self, order: Order, transaction_id: Optional[str]) -> Order:
        if transaction_id:
            order.transaction_id = transaction_id
            order.updated_at = utcnow()
            self.db.commit()
        return order

    def cancel_stale_pending_orders(
        self, older_than: timedelta, now: Optional[datetime] = None
    ) -> List[Order]:
        """Cancel and restock online orders whose payment never completed."""
        cutoff = (now or datetime.now(timezone.utc)) - older_than
        try:
            stale = list(self.db.execute(
                select(Order)
                .where(
                    Order.payment_method == "online",
                    Order.payment_status.in_(("pending", "failed")),
                    Order.status == "placed",
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .with_for_update(skip_locked=True)
            ).scalars().all())

            for order in stale:
                self._restock(order.items)
                order.status = "cancelled"
                order.payment_status = "failed"
                order.updated_at = utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if stale:
            logger.info(
                f"Cancelled {len(stale)} abandoned online orders",
                extra={'extra_fields': {'order_ids': [o.id for o in stale], 'cutoff': cutoff}}
            )
        return stale
