import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.application.errors import (
    AuthError, ErrorKind, InsufficientStock, OrderNotFound, ProductNotFound,
    StockUpdateConflict, ValidationError,
)
from app.application.schemas import AddressIn, CartItemIn, CustomerIn
from app.application.service import OrderService, compute_unit_price
from app.domain.models import Order, OrderCounter, OrderItem, Product, utcnow
from conftest import cart


def stock_of(session_factory, product_id):
    with session_factory() as session:
        return session.get(Product, product_id).stock


def order_count(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(Order)).scalar_one()


def test_place_order_uses_database_price_and_decrements_stock(db, session_factory, make_product, customer, address):
    pid = make_product(price=Decimal("100.00"), discount=Decimal("10"), stock=5)

    order = OrderService(db).place_order(cart((pid, 2)), customer, address)

    assert order.order_number == 1
    assert order.status == "placed"
    assert order.payment_method == "cod"
    assert order.payment_provider == "cod"
    assert order.payment_status == "pending"
    assert order.total_price == Decimal("180.00")
    assert len(order.items) == 1
    assert order.items[0].price == Decimal("90.00")
    assert order.items[0].quantity == 2
    assert order.items[0].product_name_snapshot == "Kundan Necklace 1"
    assert stock_of(session_factory, pid) == 3


def test_place_order_ignores_client_prices(db, make_product, customer, address):
    pid = make_product(price=Decimal("2500.00"), stock=3)
    items = [CartItemIn(product_id=pid, quantity=1, price=1.0)]

    order = OrderService(db).place_order(items, customer, address)

    assert order.items[0].price == Decimal("2500.00")
    assert order.total_price == Decimal("2500.00")


def test_place_order_persists_normalized_customer_fields(db, make_product, address):
    pid = make_product()
    customer = CustomerIn(name="  <b>Asha</b>\x00   Verma ", email="  ASHA@Example.COM ", phone="+91 (987) 654-3210")

    order = OrderService(db).place_order(cart((pid, 1)), customer, address)

    assert order.customer_name == "Asha Verma"
    assert order.customer_email == "asha@example.com"
    assert order.customer_phone == "9876543210"
    assert order.pincode == "302001"
    assert order.address_line2 == "Flat 4B"


def test_total_is_sum_of_rounded_line_prices(db, make_product, customer, address):
    p1 = make_product(price=Decimal("99.99"), discount=Decimal("33"), stock=10)
    p2 = make_product(price=Decimal("10.05"), discount=Decimal("50"), stock=10)

    order = OrderService(db).place_order(cart((p1, 3), (p2, 1)), customer, address)

    prices = {item.product_id: item.price for item in order.items}
    assert prices[p1] == Decimal("66.99")
    # 5.025 rounds half-up
    assert prices[p2] == Decimal("5.03")
    assert order.total_price == sum(item.price * item.quantity for item in order.items)
    assert order.total_price == Decimal("206.00")


def test_compute_unit_price_rounds_half_up():
    assert compute_unit_price(Decimal("0.05"), Decimal("50")) == Decimal("0.03")
    assert compute_unit_price("100", None) == Decimal("100.00")


def test_concurrent_checkouts_never_oversell(session_factory, make_product, customer, address):
    pid = make_product(stock=5)
    barrier = threading.Barrier(2)
    results = []

    def buy():
        with session_factory() as session:
            barrier.wait()
            try:
                results.append(OrderService(session).place_order(cart((pid, 3)), customer, address))
            except InsufficientStock as e:
                results.append(e)

    threads = [threading.Thread(target=buy) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    orders = [r for r in results if isinstance(r, Order)]
    failures = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(orders) == 1
    assert len(failures) == 1
    assert failures[0].kind == ErrorKind.INSUFFICIENT_STOCK
    assert failures[0].available == 2
    assert failures[0].requested == 3
    assert stock_of(session_factory, pid) == 2
    assert order_count(session_factory) == 1


def test_many_concurrent_checkouts_sell_exactly_the_stock(session_factory, make_product, customer, address):
    pid = make_product(stock=4)
    barrier = threading.Barrier(6)
    outcomes = []

    def buy():
        with session_factory() as session:
            barrier.wait()
            try:
                OrderService(session).place_order(cart((pid, 1)), customer, address)
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("sold out")

    threads = [threading.Thread(target=buy) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert outcomes.count("ok") == 4
    assert outcomes.count("sold out") == 2
    assert stock_of(session_factory, pid) == 0
    with session_factory() as session:
        numbers = sorted(session.execute(select(Order.order_number)).scalars())
    assert numbers == [1, 2, 3, 4]


def test_insufficient_stock_on_later_line_rolls_back_everything(db, session_factory, make_product, customer, address):
    p1 = make_product(stock=5)
    p2 = make_product(stock=1, name="Jhumka Earrings")

    with pytest.raises(InsufficientStock) as exc:
        OrderService(db).place_order(cart((p1, 2), (p2, 3)), customer, address)

    assert "Jhumka Earrings" in exc.value.message
    assert exc.value.details == {
        "product_id": p2, "product_name": "Jhumka Earrings", "available": 1, "requested": 3,
    }
    assert stock_of(session_factory, p1) == 5
    assert stock_of(session_factory, p2) == 1
    assert order_count(session_factory) == 0
    with session_factory() as session:
        assert session.execute(select(func.count()).select_from(OrderItem)).scalar_one() == 0


def test_missing_product_rolls_back(db, session_factory, make_product, customer, address):
    pid = make_product(stock=5)

    with pytest.raises(ProductNotFound) as exc:
        OrderService(db).place_order(cart((pid, 1), ("gone", 1)), customer, address)

    assert exc.value.kind == ErrorKind.PRODUCT_NOT_FOUND
    assert exc.value.status_code == 404
    assert exc.value.product_id == "gone"
    assert exc.value.suggestion
    assert stock_of(session_factory, pid) == 5
    assert order_count(session_factory) == 0


def test_conditional_decrement_detects_stale_read(db, session_factory, make_product, customer, address, monkeypatch):
    pid = make_product(stock=1)
    original = OrderService._lock_product

    def stale_lock(self, product_id):
        product = original(self, product_id)
        # Pretend another writer changed stock after the read
        product.stock = 10
        return product

    monkeypatch.setattr(OrderService, "_lock_product", stale_lock)

    with pytest.raises(StockUpdateConflict) as exc:
        OrderService(db).place_order(cart((pid, 5)), customer, address)

    assert exc.value.kind == ErrorKind.STOCK_UPDATE_CONFLICT
    assert stock_of(session_factory, pid) == 1
    assert order_count(session_factory) == 0


def test_failed_order_does_not_consume_an_order_number(db, make_product, customer, address):
    pid = make_product(stock=2)
    service = OrderService(db)

    first = service.place_order(cart((pid, 1)), customer, address)
    with pytest.raises(InsufficientStock):
        service.place_order(cart((pid, 5)), customer, address)
    second = service.place_order(cart((pid, 1)), customer, address)

    assert (first.order_number, second.order_number) == (1, 2)


def test_order_number_counter_seeds_from_existing_orders(db, make_product, customer, address):
    pid = make_product(stock=5)
    service = OrderService(db)
    service.place_order(cart((pid, 1)), customer, address)
    db.execute(update(Order).values(order_number=41))
    db.execute(delete(OrderCounter))
    db.commit()

    assert service.place_order(cart((pid, 1)), customer, address).order_number == 42


VALID_CUSTOMER = dict(name="Asha", email="asha@example.com", phone="9876543210")
VALID_ADDRESS = dict(line1="12 MG Road", city="Jaipur", state="Rajasthan", pincode="302001")


@pytest.mark.parametrize("items, customer_overrides, address_overrides, payment_method, kind", [
    ([], {}, {}, "cod", ErrorKind.EMPTY_CART),
    ([], {"name": None}, {}, "cod", ErrorKind.EMPTY_CART),
    ([("p", 1)], {"name": "   "}, {}, "cod", ErrorKind.MISSING_FIELDS),
    ([("p", 1)], {}, {"city": None}, "cod", ErrorKind.MISSING_FIELDS),
    ([("p", 1)], {"name": "<i></i>"}, {}, "cod", ErrorKind.MISSING_FIELDS),
    ([("p", 1)], {"email": "not-an-email"}, {}, "cod", ErrorKind.INVALID_EMAIL),
    ([("p", 1)], {"email": "a" * 250 + "@x.com"}, {}, "cod", ErrorKind.INVALID_EMAIL),
    ([("p", 1)], {"phone": "12345"}, {}, "cod", ErrorKind.INVALID_PHONE),
    ([("p", 1)], {"phone": "5876543210"}, {}, "cod", ErrorKind.INVALID_PHONE),
    ([("p", 1)], {}, {"pincode": "012345"}, "cod", ErrorKind.INVALID_PINCODE),
    ([("p", 1)], {}, {"pincode": "30200"}, "cod", ErrorKind.INVALID_PINCODE),
    ([("p", 0)], {}, {}, "cod", ErrorKind.INVALID_QUANTITY),
    ([("p", 101)], {}, {}, "cod", ErrorKind.INVALID_QUANTITY),
    ([("p", 1)], {}, {}, "upi", ErrorKind.INVALID_PAYMENT_METHOD),
])
def test_validation_fails_before_touching_the_database(items, customer_overrides, address_overrides, payment_method, kind):
    customer = CustomerIn(**{**VALID_CUSTOMER, **customer_overrides})
    address = AddressIn(**{**VALID_ADDRESS, **address_overrides})
    # Unbound session: any query would raise UnboundExecutionError
    service = OrderService(Session())

    with pytest.raises(ValidationError) as exc:
        service.place_order(cart(*items), customer, address, payment_method=payment_method)

    assert exc.value.kind == kind
    assert exc.value.status_code == 400


@pytest.mark.parametrize("phone", ["9876543210", "+919876543210", "919876543210", "09876543210", "98765 43210", "(987) 654-3210"])
def test_accepted_phone_formats_normalize_to_ten_digits(db, make_product, address, phone):
    pid = make_product()
    customer = CustomerIn(name="Asha", email="asha@example.com", phone=phone)

    order = OrderService(db).place_order(cart((pid, 1)), customer, address)

    assert order.customer_phone == "9876543210"


def test_list_orders_requires_user(db):
    with pytest.raises(AuthError) as exc:
        OrderService(db).list_orders_for_user(None)
    assert exc.value.kind == ErrorKind.UNAUTHORIZED
    assert exc.value.status_code == 401


def test_list_orders_newest_first_with_products(db, session_factory, make_product, customer, address):
    p1 = make_product()
    p2 = make_product()
    service = OrderService(db)
    first = service.place_order(cart((p1, 1)), customer, address, user_id="user_1")
    second = service.place_order(cart((p2, 1)), customer, address, user_id="user_1")
    service.place_order(cart((p1, 1)), customer, address, user_id="user_2")

    with session_factory() as session:
        session.delete(session.get(Product, p2))
        session.commit()

    with session_factory() as session:
        orders = OrderService(session).list_orders_for_user("user_1")

    assert [o.id for o in orders] == [second.id, first.id]
    assert orders[0].items[0].product is None
    assert orders[0].items[0].product_name_snapshot == "Kundan Necklace 2"
    assert orders[1].items[0].product.id == p1


def test_cancel_restocks_once(db, session_factory, make_product, customer, address):
    pid = make_product(stock=5)
    service = OrderService(db)
    order = service.place_order(cart((pid, 2)), customer, address)

    service.update_status(order.id, "cancelled")
    assert stock_of(session_factory, pid) == 5

    service.update_status(order.id, "cancelled")
    assert stock_of(session_factory, pid) == 5
    assert service.get(order.id).status == "cancelled"


def test_status_moves_forward_only(db, make_product, customer, address):
    pid = make_product()
    service = OrderService(db)
    order = service.place_order(cart((pid, 1)), customer, address)

    service.update_status(order.id, "packed")
    service.update_status(order.id, "shipped")
    with pytest.raises(ValidationError) as exc:
        service.update_status(order.id, "placed")
    assert exc.value.kind == ErrorKind.INVALID_STATUS_TRANSITION

    service.update_status(order.id, "delivered")
    with pytest.raises(ValidationError) as exc:
        service.update_status(order.id, "cancelled")
    assert exc.value.kind == ErrorKind.INVALID_STATUS_TRANSITION


def test_update_status_rejects_unknown_status_and_order(db):
    service = OrderService(db)
    with pytest.raises(ValidationError) as exc:
        service.update_status("order_x", "lost")
    assert exc.value.kind == ErrorKind.INVALID_STATUS

    with pytest.raises(OrderNotFound) as exc:
        service.update_status("order_x", "packed")
    assert exc.value.status_code == 404


def test_failed_payment_orders_can_only_be_cancelled(db, make_product, customer, address):
    pid = make_product()
    service = OrderService(db)
    order = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-1")
    service.mark_payment_failed(order, None)

    with pytest.raises(ValidationError) as exc:
        service.update_status(order.id, "packed")
    assert exc.value.kind == ErrorKind.INVALID_STATUS_TRANSITION
    assert service.update_status(order.id, "cancelled").status == "cancelled"


def test_payment_settlement_is_idempotent(db, make_product, customer, address):
    pid = make_product()
    service = OrderService(db)
    order = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-2")

    assert service.mark_payment_completed(order, "T1") is True
    assert service.mark_payment_completed(order, "T2") is False
    assert service.mark_payment_failed(order, "T3") is False
    assert order.payment_status == "completed"
    assert order.transaction_id == "T1"


def test_cancel_stale_pending_orders(db, session_factory, make_product, customer, address):
    pid = make_product(stock=10)
    service = OrderService(db)
    stale = service.place_order(cart((pid, 2)), customer, address, payment_method="online", merchant_order_id="M-old")
    paid = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-paid")
    cod = service.place_order(cart((pid, 1)), customer, address)
    fresh = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-new")
    service.mark_payment_completed(paid, "T-paid")

    two_hours_ago = utcnow() - timedelta(hours=2)
    db.execute(update(Order).where(Order.id.in_([stale.id, paid.id, cod.id])).values(created_at=two_hours_ago))
    db.commit()

    cancelled = service.cancel_stale_pending_orders(timedelta(minutes=30))

    assert [o.id for o in cancelled] == [stale.id]
    assert stock_of(session_factory, pid) == 10 - 1 - 1 - 1
    with session_factory() as session:
        statuses = {o.id: (o.status, o.payment_status) for o in session.execute(select(Order)).scalars()}
    assert statuses[stale.id] == ("cancelled", "failed")
    assert statuses[paid.id] == ("placed", "completed")
    assert statuses[cod.id] == ("placed", "pending")
    assert statuses[fresh.id] == ("placed", "pending")

    assert service.cancel_stale_pending_orders(timedelta(minutes=30)) == []


def test_stale_cleanup_skips_orders_already_in_fulfilment(db, session_factory, make_product, customer, address):
    pid = make_product(stock=10)
    service = OrderService(db)
    shipped = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-ship")
    delivered = service.place_order(cart((pid, 1)), customer, address, payment_method="online", merchant_order_id="M-done")
    for status in ("packed", "shipped"):
        service.update_status(shipped.id, status)
    for status in ("packed", "shipped", "delivered"):
        service.update_status(delivered.id, status)

    db.execute(update(Order).values(created_at=utcnow() - timedelta(hours=2)))
    db.commit()

    assert service.cancel_stale_pending_orders(timedelta(minutes=30)) == []
    assert stock_of(session_factory, pid) == 8
    with session_factory() as session:
        statuses = {o.id: (o.status, o.payment_status) for o in session.execute(select(Order)).scalars()}
    assert statuses[shipped.id] == ("shipped", "pending")
    assert statuses[delivered.id] == ("delivered", "pending")
