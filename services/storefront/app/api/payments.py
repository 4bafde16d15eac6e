from typing import Optional
from fastapi import APIRouter, Depends, Header, Query
from app.application.payment_service import PaymentService
from app.application.schemas import PaymentInitiated, PaymentStatusRead, PhonePeCheckout, WebhookBody
from .deps import get_payment_service, optional_user

router = APIRouter(prefix="/api/payment/phonepe", tags=["payments"])

@router.post("/create", response_model=PaymentInitiated)
def create_payment(
    payload: PhonePeCheckout,
    service: PaymentService = Depends(get_payment_service),
    user: Optional[dict] = Depends(optional_user),
):
    payload = payload.model_copy(update={"user_id": user["sub"] if user else None})
    return service.checkout_online(payload)

@router.post("/webhook")
def phonepe_webhook(
    payload: WebhookBody,
    x_verify: Optional[str] = Header(None, alias="X-VERIFY"),
    service: PaymentService = Depends(get_payment_service),
):
    order = service.handle_webhook(payload.response, x_verify)
    return {"success": True, "orderId": order.id, "paymentStatus": order.payment_status}

@router.get("/status", response_model=PaymentStatusRead)
def payment_status(
    merchant_order_id: str = Query(..., alias="merchantOrderId", min_length=1),
    service: PaymentService = Depends(get_payment_service),
):
    return service.refresh_payment_status(merchant_order_id)
