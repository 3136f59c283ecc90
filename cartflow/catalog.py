"""
Read-only lookups into data owned by other services.

Products live in ``product:{id}`` hashes (name, price, image) and users in
``user:{id}`` hashes (name, email). Nothing here writes to either.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

from cartflow.models import ProductSnapshot, UserProfile
from cartflow.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class ProductCatalog:
    """Product lookup by id"""

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()

    def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        data = self.redis.hgetall(self.redis.key("product", product_id))
        if not data or "price" not in data:
            return None

        try:
            price = Decimal(data["price"])
        except InvalidOperation:
            logger.warning(f"Product {product_id} has an unparseable price: {data['price']!r}")
            return None

        return ProductSnapshot(
            product_id=str(product_id),
            name=data.get("name", ""),
            price=price,
            image=data.get("image") or None,
        )


class UserDirectory:
    """User name/email lookup by id"""

    def __init__(self, redis_client: Optional[RedisClient] = None):
        self.redis = redis_client or get_redis_client()

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        data = self.redis.hgetall(self.redis.key("user", user_id))
        if not data:
            return None
        return UserProfile(id=user_id, name=data.get("name"), email=data.get("email"))

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        profiles = {}
        for user_id in set(user_ids):
            profile = self.get_user(user_id)
            if profile:
                profiles[user_id] = profile
        return profiles
