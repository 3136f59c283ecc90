"""
Checkout service: session creation, payment confirmation and finalization.

A session moves strictly forward, Pending -> Paid -> Finalized. Finalizing
writes the order, marks the session finalized and deletes the user's cart in a
single Redis transaction, so a session can never yield two orders and a cart
is never cleared without its order.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from redis.client import Pipeline

from cartflow.cart_service import CartService
from cartflow.exceptions import CheckoutNotFoundError, InvalidInputError, InvalidStateError
from cartflow.lines import compute_total
from cartflow.models import CartLine, CheckoutSession, Order, Owner, PaymentStatus, utcnow
from cartflow.order_service import OrderService
from cartflow.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

# Token the payment provider sends for a successful payment
PAID_SIGNAL = "paid"


class CheckoutService:
    """Service for checkout operations"""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        cart_service: Optional[CartService] = None,
        order_service: Optional[OrderService] = None
    ):
        self.redis = redis_client or get_redis_client()
        self.cart_service = cart_service or CartService(self.redis)
        self.order_service = order_service or OrderService(self.redis)

    def _get_checkout_key(self, checkout_id: str) -> str:
        return self.redis.key("checkout", checkout_id)

    def _read_checkout(self, reader, checkout_id: str) -> CheckoutSession:
        raw = reader.get(self._get_checkout_key(checkout_id))
        if raw is None:
            raise CheckoutNotFoundError(checkout_id)
        return CheckoutSession.model_validate_json(raw)

    def create_checkout(
        self,
        user_id: str,
        checkout_items: List[CartLine],
        shipping_address: Optional[Dict[str, Any]] = None,
        payment_method: Any = None,
        total_price: Optional[Decimal] = None
    ) -> CheckoutSession:
        """
        Open a checkout session for an authenticated user.

        The items are copied, so later cart changes never reach the session.
        ``total_price`` is captured as given; when omitted it is computed once
        from the items.
        """
        if not checkout_items:
            raise InvalidInputError("No items in checkout")

        items = [line.model_copy() for line in checkout_items]
        checkout = CheckoutSession(
            user_id=user_id,
            checkout_items=items,
            shipping_address=dict(shipping_address or {}),
            payment_method=payment_method,
            total_price=total_price if total_price is not None else compute_total(items),
        )

        self.redis.set(self._get_checkout_key(checkout.id), checkout.model_dump_json())
        logger.info(f"Checkout {checkout.id} created: {len(items)} item(s), total {checkout.total_price}")
        return checkout

    def get_checkout(self, checkout_id: str) -> CheckoutSession:
        return self._read_checkout(self.redis, checkout_id)

    def mark_paid(
        self,
        checkout_id: str,
        payment_status: str,
        payment_details: Any = None
    ) -> CheckoutSession:
        """Record the payment provider's confirmation on a pending session"""
        if payment_status != PAID_SIGNAL:
            raise InvalidInputError("Invalid payment status")

        checkout_key = self._get_checkout_key(checkout_id)

        def _pay(pipe: Pipeline) -> CheckoutSession:
            checkout = self._read_checkout(pipe, checkout_id)
            if checkout.is_finalized:
                raise InvalidStateError("Checkout already finalized")
            if checkout.is_paid:
                raise InvalidStateError("Checkout already paid")

            now = utcnow()
            paid = checkout.model_copy(update={
                "is_paid": True,
                "payment_status": PaymentStatus.PAID,
                "payment_details": payment_details,
                "paid_at": now,
                "updated_at": now,
            })
            pipe.multi()
            pipe.set(checkout_key, paid.model_dump_json())
            return paid

        checkout = self.redis.transaction(_pay, checkout_key)
        logger.info(f"Checkout {checkout_id} paid")
        return checkout

    def finalize_checkout(self, checkout_id: str) -> Order:
        """
        Turn a paid session into an order, exactly once.

        Raises:
            CheckoutNotFoundError: No such session
            InvalidStateError: The session is finalized already or not paid
        """
        checkout_key = self._get_checkout_key(checkout_id)

        def _finalize(pipe: Pipeline) -> Order:
            checkout = self._read_checkout(pipe, checkout_id)
            if checkout.is_finalized:
                raise InvalidStateError("Checkout already finalized")
            if not checkout.is_paid:
                raise InvalidStateError("Checkout is not paid")

            order = Order.from_checkout(checkout)
            now = utcnow()
            finalized = checkout.model_copy(update={
                "is_finalized": True,
                "finalized_at": now,
                "order_id": order.id,
                "updated_at": now,
            })

            pipe.multi()
            self.order_service.queue_create(pipe, order)
            pipe.set(checkout_key, finalized.model_dump_json())
            self.cart_service.queue_delete(pipe, Owner.user(checkout.user_id))
            return order

        order = self.redis.transaction(_finalize, checkout_key)
        logger.info(f"Checkout {checkout_id} finalized into order {order.id}, total {order.total_price}")
        return order
