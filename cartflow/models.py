"""
Pydantic models for carts, checkout sessions and orders, plus request and
response bodies.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    field_validator,
    model_validator,
)

from cartflow.exceptions import InvalidInputError
from cartflow.lines import LineKey, compute_total

# Exact in Python, a plain number in JSON
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"


class OrderStatus(str, Enum):
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Owner(BaseModel):
    """Cart owner: either a registered user or a guest token, never both"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["user", "guest"]
    id: str = Field(..., min_length=1)

    @classmethod
    def user(cls, user_id: str) -> "Owner":
        return cls(kind="user", id=str(user_id))

    @classmethod
    def guest(cls, guest_id: str) -> "Owner":
        return cls(kind="guest", id=str(guest_id))

    @classmethod
    def new_guest(cls) -> "Owner":
        return cls.guest(f"guest_{uuid.uuid4().hex}")

    @classmethod
    def resolve(cls, user_id: Optional[str] = None, guest_id: Optional[str] = None) -> "Owner":
        """Pick the lookup owner: the user when known, else the guest token"""
        if user_id:
            return cls.user(user_id)
        if guest_id:
            return cls.guest(guest_id)
        raise InvalidInputError("Either user_id or guest_id is required")

    @property
    def is_guest(self) -> bool:
        return self.kind == "guest"

    def fields(self) -> Dict[str, Optional[str]]:
        """Owner as the (user_id, guest_id) pair stored on a cart"""
        if self.is_guest:
            return {"user_id": None, "guest_id": self.id}
        return {"user_id": self.id, "guest_id": None}


class ProductSnapshot(BaseModel):
    """Catalog data copied into a cart line at add time"""
    product_id: str
    name: str
    price: Money = Field(..., ge=0)
    image: Optional[str] = None


class CartLine(BaseModel):
    """Cart, checkout and order line item"""
    product_id: str = Field(..., description="Product identifier")
    name: str = Field(..., description="Product name at time of add")
    image: Optional[str] = Field(None, description="Product image at time of add")
    price: Money = Field(..., ge=0, description="Price at time of add")
    size: Optional[str] = Field(None, description="Size selector")
    color: Optional[str] = Field(None, description="Color selector")
    quantity: int = Field(..., gt=0, description="Item quantity")

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v: Any) -> str:
        return str(v)

    @property
    def key(self) -> LineKey:
        return LineKey.of(self.product_id, self.size, self.color)

    @classmethod
    def from_product(
        cls,
        product: ProductSnapshot,
        quantity: int,
        size: Optional[str] = None,
        color: Optional[str] = None,
    ) -> "CartLine":
        return cls(
            product_id=product.product_id,
            name=product.name,
            image=product.image,
            price=product.price,
            size=size,
            color=color,
            quantity=quantity,
        )


class Cart(BaseModel):
    """Shopping cart owned by exactly one user or guest"""
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    guest_id: Optional[str] = None
    products: List[CartLine] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_single_owner(self) -> "Cart":
        if bool(self.user_id) == bool(self.guest_id):
            raise ValueError("cart must have exactly one of user_id or guest_id")
        return self

    @computed_field
    @property
    def total_price(self) -> Money:
        return compute_total(self.products)

    @property
    def owner(self) -> Owner:
        if self.user_id:
            return Owner.user(self.user_id)
        return Owner.guest(self.guest_id)

    @classmethod
    def for_owner(cls, owner: Owner, products: Optional[List[CartLine]] = None) -> "Cart":
        return cls(products=products or [], **owner.fields())

    def reowned(self, owner: Owner) -> "Cart":
        """Copy of this cart, lines untouched, belonging to ``owner``"""
        return Cart(
            id=self.id,
            products=[line.model_copy() for line in self.products],
            created_at=self.created_at,
            updated_at=utcnow(),
            **owner.fields(),
        )

    def with_products(self, products: List[CartLine]) -> "Cart":
        return Cart(
            id=self.id,
            user_id=self.user_id,
            guest_id=self.guest_id,
            products=products,
            created_at=self.created_at,
            updated_at=utcnow(),
        )


class CheckoutSession(BaseModel):
    """Point-in-time snapshot of what the shopper is paying for"""
    id: str = Field(default_factory=new_id)
    user_id: str
    checkout_items: List[CartLine]
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    payment_method: Optional[Any] = None
    total_price: Money
    payment_status: PaymentStatus = PaymentStatus.PENDING
    is_paid: bool = False
    payment_details: Optional[Any] = None
    paid_at: Optional[datetime] = None
    is_finalized: bool = False
    finalized_at: Optional[datetime] = None
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Immutable record of a finalized checkout"""
    id: str = Field(default_factory=new_id)
    user_id: str
    checkout_id: Optional[str] = None
    order_items: List[CartLine]
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    payment_method: Optional[Any] = None
    total_price: Money
    is_paid: bool = True
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    status: OrderStatus = OrderStatus.PROCESSING
    payment_status: PaymentStatus = PaymentStatus.PAID
    payment_details: Optional[Any] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_checkout(cls, checkout: CheckoutSession) -> "Order":
        return cls(
            user_id=checkout.user_id,
            checkout_id=checkout.id,
            order_items=[line.model_copy() for line in checkout.checkout_items],
            shipping_address=dict(checkout.shipping_address),
            payment_method=checkout.payment_method,
            total_price=checkout.total_price,
            is_paid=True,
            paid_at=checkout.paid_at,
            is_delivered=False,
            payment_status=PaymentStatus.PAID,
            payment_details=checkout.payment_details,
        )


class UserProfile(BaseModel):
    """Name and email of an order owner"""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class OrderView(Order):
    """Order with its owner's name and email projected in"""
    user: Optional[UserProfile] = None


# Request models

class CartItemRequest(BaseModel):
    """Request model for adding an item to a cart"""
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(1, description="Quantity to add")
    size: Optional[str] = Field(None, description="Size selector")
    color: Optional[str] = Field(None, description="Color selector")
    guest_id: Optional[str] = Field(None, description="Guest cart token")
    user_id: Optional[str] = Field(None, description="User identifier")

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v: Any) -> str:
        return str(v)


class CartQuantityRequest(CartItemRequest):
    """Request model for setting a line quantity (<= 0 removes the line)"""
    quantity: int = Field(..., description="New quantity")


class CartLineRequest(BaseModel):
    """Request model identifying a cart line"""
    product_id: str
    size: Optional[str] = None
    color: Optional[str] = None
    guest_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def coerce_product_id(cls, v: Any) -> str:
        return str(v)


class MergeCartRequest(BaseModel):
    """Request model for merging a guest cart into the caller's cart"""
    guest_id: str = Field(..., min_length=1, description="Guest cart token to merge from")


class CheckoutRequest(BaseModel):
    """Request model for creating a checkout session"""
    checkout_items: List[CartLine] = Field(default_factory=list)
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    payment_method: Optional[Any] = None
    total_price: Optional[Money] = Field(None, ge=0)


class PaymentRequest(BaseModel):
    """Payment confirmation relayed from the payment provider"""
    payment_status: str
    payment_details: Optional[Any] = None


class OrderStatusRequest(BaseModel):
    status: Optional[str] = None
