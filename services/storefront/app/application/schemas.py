from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Literal, Optional

PaymentMethod = Literal["cod", "online"]
PaymentStatusValue = Literal["pending", "completed", "failed"]
OrderStatusValue = Literal["placed", "packed", "shipped", "delivered", "cancelled"]

class CartItemIn(BaseModel):
    product_id: str
    quantity: int
    # Accepted for client compatibility, never used for pricing
    price: Optional[float] = None
    class Config:
        extra = "forbid"

class CustomerIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

class AddressIn(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None

class CheckoutBase(BaseModel):
    items: list[CartItemIn] = Field(default_factory=list)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    user_id: Optional[str] = None

    class Config:
        extra = "forbid"

    def customer(self) -> CustomerIn:
        return CustomerIn(name=self.customer_name, email=self.customer_email, phone=self.customer_phone)

    def address(self) -> AddressIn:
        return AddressIn(
            line1=self.address_line1,
            line2=self.address_line2,
            city=self.city,
            state=self.state,
            pincode=self.pincode,
        )

class OrderCreate(CheckoutBase):
    payment_method: PaymentMethod = "cod"
    payment_status: PaymentStatusValue = "pending"
    # Gateway correlation for payments completed before the order call
    merchant_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_signature: Optional[str] = None

class PhonePeCheckout(CheckoutBase):
    pass

class OrderStatusUpdate(BaseModel):
    status: str
    class Config:
        extra = "forbid"

class CartValidateRequest(BaseModel):
    product_ids: list[str]
    class Config:
        extra = "forbid"

class ProductCreate(BaseModel):
    id: Optional[str] = None
    sku: Optional[str] = None
    name: str
    category: str
    description: Optional[str] = None
    price: float = Field(gt=0)
    discount: float = Field(default=0, ge=0, le=100)
    stock: int = Field(default=0, ge=0)
    product_status: str = "active"

class ProductRead(BaseModel):
    id: str
    sku: Optional[str] = None
    name: str
    category: str
    price: float
    discount: float
    stock: int
    product_status: str
    class Config:
        from_attributes = True

class OrderItemRead(BaseModel):
    id: str
    product_id: str
    quantity: int
    price: float
    product_name_snapshot: Optional[str] = None
    # Current product row, if it still exists
    product: Optional[ProductRead] = None
    class Config:
        from_attributes = True

class OrderRead(BaseModel):
    id: str
    order_number: int
    user_id: Optional[str] = None
    total_price: float
    status: str
    customer_name: str
    customer_email: str
    customer_phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    payment_method: str
    payment_provider: str
    payment_status: str
    merchant_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    items: list[OrderItemRead]
    class Config:
        from_attributes = True

class UnavailableProduct(BaseModel):
    id: str
    name: str
    reason: str

class CartValidation(BaseModel):
    valid: bool
    available_products: list[ProductRead]
    unavailable_product_ids: list[str]
    unavailable_products: list[UnavailableProduct]

class PaymentInitiated(BaseModel):
    success: bool = True
    payment_url: str
    order_id: str
    order_number: int
    merchant_order_id: str
    transaction_id: Optional[str] = None
    class Config:
        alias_generator = to_camel
        populate_by_name = True

class PaymentStatusRead(BaseModel):
    success: bool
    order_id: str
    merchant_order_id: Optional[str] = None
    payment_status: str
    state: Optional[str] = None
    transaction_id: Optional[str] = None
    message: str
    class Config:
        alias_generator = to_camel
        populate_by_name = True

class WebhookBody(BaseModel):
    # Base64 encoded JSON, signed via the X-VERIFY header
    response: str

class CleanupResult(BaseModel):
    success: bool = True
    cleaned_orders: int
    order_ids: list[str]
    class Config:
        alias_generator = to_camel
        populate_by_name = True
