from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import OrderStatus, PaymentMethod, PaymentStatus


# Catalog projection
class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: int
    stock: int
    category: Optional[str] = None
    is_visible: bool

    model_config = {"from_attributes": True}


class ProductListResponse(BaseModel):
    products: List[ProductOut]
    skip: int
    limit: int


# Cart
class CartItemAdd(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., description="New quantity, between 1 and the product stock")


class CartItemsDelete(BaseModel):
    item_ids: List[int] = Field(..., min_length=1, description="Cart line IDs to remove")


class CartProductOut(BaseModel):
    id: int
    name: str
    price: int
    stock: int
    image_url: Optional[str] = None


class CartLineOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    product: CartProductOut


class CartOut(BaseModel):
    id: Optional[int] = None
    user_id: int
    items: List[CartLineOut] = []
    subtotal: int = 0


class CartItemOut(BaseModel):
    id: int
    cart_id: int
    product_id: int
    quantity: int

    model_config = {"from_attributes": True}


class RemovedItemsResponse(BaseModel):
    removed: int


# Checkout staging
class StagedLine(BaseModel):
    cart_item_id: int
    product_id: int
    product_name: str
    price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.price * self.quantity


class StagedOrder(BaseModel):
    """Price-locked snapshot of the cart lines a user chose to pay for."""

    user_id: int
    lines: List[StagedLine]
    shipping_cost: int
    subtotal: int
    total: int
    staged_at: datetime


class BeginCheckoutRequest(BaseModel):
    item_ids: List[int] = Field(..., description="Cart line IDs selected for payment")


class Recipient(BaseModel):
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None


class ConfirmCheckoutRequest(BaseModel):
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    recipient: Optional[Recipient] = None


class ConfirmCheckoutResponse(BaseModel):
    order_id: int
    payment_id: int
    total_amount: int
    status: OrderStatus
    payment_status: PaymentStatus
    message: str
    whatsapp_url: str


# Orders
class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_id: int
    product_name: str
    quantity: int
    price: int

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    user_id: int
    total_amount: int
    shipping_cost: int
    status: OrderStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None


# Payments
class PaymentOut(BaseModel):
    id: int
    order_id: int
    method: PaymentMethod
    status: PaymentStatus
    amount: int
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentListResponse(BaseModel):
    payments: List[PaymentOut]
    total: int
    skip: int
    limit: int


class PaymentStatusUpdate(BaseModel):
    status: Optional[PaymentStatus] = None
    completed_at: Optional[datetime] = Field(None, description="Required when status is SUCCESS")
