from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.infrastructure.db import get_db
from app.application.catalog import ProductService
from app.application.errors import ErrorKind, StorefrontError
from app.application.service import OrderService
from app.application.schemas import (
    CartValidateRequest, CartValidation, CleanupResult, OrderCreate, OrderRead,
    OrderStatusUpdate, ProductCreate, ProductRead,
)
from app.core_settings import Settings
from .deps import get_app_settings, optional_user, require_admin, verify_cron_secret, verify_token

router = APIRouter(prefix="/api", tags=["storefront"])

@router.post("/orders", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    user: Optional[dict] = Depends(optional_user),
):
    """Place a cash-on-delivery order, or record one paid before this call."""
    return OrderService(db).place_order(
        payload.items,
        payload.customer(),
        payload.address(),
        # Identity comes from the token, never from the body
        user_id=user["sub"] if user else None,
        payment_method=payload.payment_method,
        payment_status=payload.payment_status,
        merchant_order_id=payload.merchant_order_id,
        transaction_id=payload.transaction_id,
        payment_signature=payload.payment_signature,
    )

@router.get("/orders", response_model=list[OrderRead])
def list_my_orders(db: Session = Depends(get_db), user: dict = Depends(verify_token)):
    return OrderService(db).list_orders_for_user(user["sub"])

@router.post("/cart/validate", response_model=CartValidation)
def validate_cart(payload: CartValidateRequest, db: Session = Depends(get_db)):
    return ProductService(db).validate_cart(payload.product_ids)

@router.get("/products", response_model=list[ProductRead])
def list_products(db: Session = Depends(get_db)):
    return ProductService(db).list_products()

@router.get("/products/{product_id}", response_model=ProductRead)
def get_product(product_id: str, db: Session = Depends(get_db)):
    product = ProductService(db).get(product_id)
    if not product:
        raise StorefrontError(ErrorKind.PRODUCT_NOT_FOUND, "Product not found", status_code=404)
    return product

@router.post("/admin/products", response_model=ProductRead, status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_db), _admin: dict = Depends(require_admin)):
    return ProductService(db).create(payload)

@router.put("/admin/orders/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    db: Session = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    return OrderService(db).update_status(order_id, payload.status)

@router.post(
    "/admin/orders/cleanup-pending",
    response_model=CleanupResult,
    dependencies=[Depends(verify_cron_secret)],
)
def cleanup_pending_orders(db: Session = Depends(get_db), settings: Settings = Depends(get_app_settings)):
    """Cancel online orders whose payment never completed and put their stock back."""
    cancelled = OrderService(db).cancel_stale_pending_orders(
        timedelta(minutes=settings.PENDING_PAYMENT_TTL_MINUTES)
    )
    return CleanupResult(cleaned_orders=len(cancelled), order_ids=[o.id for o in cancelled])
