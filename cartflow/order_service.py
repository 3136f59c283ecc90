"""
Order ledger: orders are written by checkout finalization and afterwards only
read, relabelled or deleted by administrators.
"""
import logging
from typing import List, Optional

from redis.client import Pipeline

from cartflow.catalog import UserDirectory
from cartflow.exceptions import InvalidInputError, OrderNotFoundError
from cartflow.models import Order, OrderStatus, OrderView, utcnow
from cartflow.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class OrderService:
    """Service for order operations"""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        users: Optional[UserDirectory] = None
    ):
        self.redis = redis_client or get_redis_client()
        self.users = users or UserDirectory(self.redis)

    def _get_order_key(self, order_id: str) -> str:
        return self.redis.key("order", order_id)

    def _all_index_key(self) -> str:
        return self.redis.key("orders", "all")

    def _user_index_key(self, user_id: str) -> str:
        return self.redis.key("orders", "user", user_id)

    def queue_create(self, pipe: Pipeline, order: Order) -> None:
        """Queue the writes that store ``order`` and index it; call after ``pipe.multi()``"""
        score = order.created_at.timestamp()
        pipe.set(self._get_order_key(order.id), order.model_dump_json())
        pipe.zadd(self._all_index_key(), {order.id: score})
        pipe.zadd(self._user_index_key(order.user_id), {order.id: score})

    def _load_many(self, order_ids: List[str]) -> List[Order]:
        raw_orders = self.redis.mget([self._get_order_key(order_id) for order_id in order_ids])
        return [Order.model_validate_json(raw) for raw in raw_orders if raw is not None]

    def get_order(self, order_id: str) -> Order:
        raw = self.redis.get(self._get_order_key(order_id))
        if raw is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate_json(raw)

    def get_order_view(self, order_id: str) -> OrderView:
        """A single order with its owner's name and email"""
        order = self.get_order(order_id)
        return OrderView(**order.model_dump(), user=self.users.get_user(order.user_id))

    def list_for_user(self, user_id: str) -> List[Order]:
        """The user's orders, newest first"""
        return self._load_many(self.redis.zrevrange(self._user_index_key(user_id)))

    def list_all(self) -> List[OrderView]:
        """Every order, newest first, with the owner's name and email"""
        orders = self._load_many(self.redis.zrevrange(self._all_index_key()))
        profiles = self.users.get_users(order.user_id for order in orders)
        return [
            OrderView(**order.model_dump(), user=profiles.get(order.user_id))
            for order in orders
        ]

    def update_status(self, order_id: str, status: Optional[str]) -> Order:
        """
        Relabel an order. An empty status keeps the current one; "Delivered"
        also stamps the delivery.
        """
        new_status = None
        if status:
            try:
                new_status = OrderStatus(status)
            except ValueError:
                raise InvalidInputError(
                    f"Invalid order status: {status}. "
                    f"Expected one of {', '.join(s.value for s in OrderStatus)}"
                )

        order_key = self._get_order_key(order_id)

        def _update(pipe: Pipeline) -> Order:
            raw = pipe.get(order_key)
            if raw is None:
                raise OrderNotFoundError(order_id)

            order = Order.model_validate_json(raw)
            now = utcnow()
            changes = {"updated_at": now}
            if new_status is not None:
                changes["status"] = new_status
            if new_status is OrderStatus.DELIVERED:
                changes["is_delivered"] = True
                changes["delivered_at"] = now

            updated = order.model_copy(update=changes)
            pipe.multi()
            pipe.set(order_key, updated.model_dump_json())
            return updated

        order = self.redis.transaction(_update, order_key)
        logger.info(f"Order {order_id} status is now {order.status.value}")
        return order

    def delete_order(self, order_id: str) -> None:
        """Hard-delete an order and its index entries"""
        order_key = self._get_order_key(order_id)

        def _delete(pipe: Pipeline) -> None:
            raw = pipe.get(order_key)
            if raw is None:
                raise OrderNotFoundError(order_id)

            order = Order.model_validate_json(raw)
            pipe.multi()
            pipe.delete(order_key)
            pipe.zrem(self._all_index_key(), order_id)
            pipe.zrem(self._user_index_key(order.user_id), order_id)

        self.redis.transaction(_delete, order_key)
        logger.info(f"Order {order_id} removed")
