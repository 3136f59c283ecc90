"""
Cart service for managing shopping cart operations with Redis.

Every mutation is a read-modify-write on a single cart document wrapped in an
optimistic Redis transaction, so concurrent writers on the same owner never
lose each other's updates.
"""
import hashlib
import logging
from typing import Any, List, Optional, Tuple

from redis.client import Pipeline

from cartflow.catalog import ProductCatalog
from cartflow.config import Config
from cartflow.exceptions import (
    CartNotFoundError,
    InvalidInputError,
    InvalidStateError,
    LimitExceededError,
    LineNotFoundError,
    NotFoundError,
    ProductNotFoundError,
)
from cartflow.lines import LineKey, find_line, merge_lines
from cartflow.models import Cart, CartLine, Owner
from cartflow.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class CartService:
    """Service for cart operations"""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        catalog: Optional[ProductCatalog] = None
    ):
        self.redis = redis_client or get_redis_client()
        self.catalog = catalog or ProductCatalog(self.redis)

    def _get_cart_key(self, owner: Owner) -> str:
        """Generate Redis key for cart"""
        return self.redis.key("cart", owner.kind, owner.id)

    def _hash_owner(self, owner: Owner) -> str:
        """Hash owner for logging (no PII)"""
        return hashlib.sha256(f"{owner.kind}:{owner.id}".encode()).hexdigest()[:8]

    def _get_ttl(self, owner: Owner) -> Optional[int]:
        """Get TTL for cart based on owner type, None when carts don't expire"""
        ttl = Config.GUEST_CART_TTL_SECONDS if owner.is_guest else Config.CART_TTL_SECONDS
        return ttl or None

    def _read_cart(self, reader, key: str) -> Optional[Cart]:
        raw = reader.get(key)
        if raw is None:
            return None
        return Cart.model_validate_json(raw)

    def _queue_save(self, pipe: Pipeline, cart: Cart) -> None:
        owner = cart.owner
        pipe.set(self._get_cart_key(owner), cart.model_dump_json(), ex=self._get_ttl(owner))

    def queue_delete(self, pipe: Pipeline, owner: Owner) -> None:
        """Queue deletion of the owner's cart; call after ``pipe.multi()``"""
        pipe.delete(self._get_cart_key(owner))

    def _coerce_quantity(self, quantity: Any) -> int:
        try:
            return int(quantity)
        except (TypeError, ValueError):
            raise InvalidInputError("Quantity must be an integer")

    def _check_quantity_limit(self, quantity: int) -> None:
        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

    def get_cart(self, user_id: Optional[str] = None, guest_id: Optional[str] = None) -> Cart:
        """Get the cart for a user, or for a guest when no user is given"""
        owner = Owner.resolve(user_id, guest_id)
        cart = self._read_cart(self.redis, self._get_cart_key(owner))
        if cart is None:
            raise CartNotFoundError(self._hash_owner(owner))
        return cart

    def add_item(
        self,
        product_id: str,
        quantity: Any = 1,
        size: Optional[str] = None,
        color: Optional[str] = None,
        user_id: Optional[str] = None,
        guest_id: Optional[str] = None
    ) -> Tuple[Cart, bool]:
        """
        Add an item to the owner's cart, creating the cart on first use.

        A line with the same (product, size, color) has its quantity increased;
        otherwise a new line is appended with the catalog's current name, price
        and image. With neither user nor guest given a fresh guest token is
        issued.

        Returns:
            The stored cart and whether it was created by this call
        """
        quantity = self._coerce_quantity(quantity)
        if quantity <= 0:
            raise InvalidInputError("Quantity must be greater than 0")
        self._check_quantity_limit(quantity)

        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        if user_id or guest_id:
            owner = Owner.resolve(user_id, guest_id)
        else:
            owner = Owner.new_guest()
        cart_key = self._get_cart_key(owner)
        key = LineKey.of(product_id, size, color)

        def _add(pipe: Pipeline) -> Tuple[Cart, bool]:
            cart = self._read_cart(pipe, cart_key)
            created = cart is None
            if created:
                cart = Cart.for_owner(owner)

            products = list(cart.products)
            index = find_line(products, key)
            if index is None:
                if len(products) >= Config.MAX_ITEMS_PER_CART:
                    raise LimitExceededError(
                        f"Cart exceeds maximum items {Config.MAX_ITEMS_PER_CART}"
                    )
                products.append(CartLine.from_product(product, quantity, size, color))
            else:
                new_quantity = products[index].quantity + quantity
                self._check_quantity_limit(new_quantity)
                products[index] = products[index].model_copy(update={"quantity": new_quantity})

            updated = cart.with_products(products)
            pipe.multi()
            self._queue_save(pipe, updated)
            return updated, created

        cart, created = self.redis.transaction(_add, cart_key)
        logger.info(
            f"{'Created' if created else 'Updated'} cart {self._hash_owner(owner)}: "
            f"{len(cart.products)} line(s), total {cart.total_price}"
        )
        return cart, created

    def update_quantity(
        self,
        product_id: str,
        quantity: Any,
        size: Optional[str] = None,
        color: Optional[str] = None,
        user_id: Optional[str] = None,
        guest_id: Optional[str] = None
    ) -> Cart:
        """Set a line's quantity; zero or less removes the line"""
        quantity = self._coerce_quantity(quantity)
        self._check_quantity_limit(quantity)
        owner = Owner.resolve(user_id, guest_id)
        key = LineKey.of(product_id, size, color)

        def _change(products: List[CartLine], index: int) -> None:
            if quantity > 0:
                products[index] = products[index].model_copy(update={"quantity": quantity})
            else:
                del products[index]

        return self._modify_line(owner, key, _change)

    def remove_item(
        self,
        product_id: str,
        size: Optional[str] = None,
        color: Optional[str] = None,
        user_id: Optional[str] = None,
        guest_id: Optional[str] = None
    ) -> Cart:
        """Remove a line from the cart"""
        owner = Owner.resolve(user_id, guest_id)
        key = LineKey.of(product_id, size, color)

        def _change(products: List[CartLine], index: int) -> None:
            del products[index]

        return self._modify_line(owner, key, _change)

    def _modify_line(self, owner: Owner, key: LineKey, change) -> Cart:
        cart_key = self._get_cart_key(owner)

        def _modify(pipe: Pipeline) -> Cart:
            cart = self._read_cart(pipe, cart_key)
            if cart is None:
                raise CartNotFoundError(self._hash_owner(owner))

            products = list(cart.products)
            index = find_line(products, key)
            if index is None:
                raise LineNotFoundError(key.product_id)

            change(products, index)
            updated = cart.with_products(products)
            pipe.multi()
            self._queue_save(pipe, updated)
            return updated

        cart = self.redis.transaction(_modify, cart_key)
        logger.info(
            f"Modified cart {self._hash_owner(owner)}: "
            f"{len(cart.products)} line(s), total {cart.total_price}"
        )
        return cart

    def delete_cart(self, user_id: Optional[str] = None, guest_id: Optional[str] = None) -> bool:
        """Delete the owner's cart; a missing cart is not an error"""
        owner = Owner.resolve(user_id, guest_id)
        deleted = self.redis.delete(self._get_cart_key(owner))
        return deleted > 0

    def merge_carts(self, guest_id: str, user_id: str) -> Cart:
        """
        Merge a guest cart into a user's cart at login.

        Both cart keys are watched for the whole unit, so an item added to the
        guest cart while the merge is in flight makes the merge start over and
        include it. Items added to the guest token after the merge committed
        land in a new guest cart.

        Returns:
            The user's merged cart, or the guest cart re-owned by the user when
            the user had none

        Raises:
            NotFoundError: Neither a guest cart nor a user cart exists
            InvalidStateError: The guest cart has no lines
        """
        guest = Owner.guest(guest_id)
        user = Owner.user(user_id)
        guest_key = self._get_cart_key(guest)
        user_key = self._get_cart_key(user)

        def _merge(pipe: Pipeline) -> Tuple[Cart, str]:
            guest_cart = self._read_cart(pipe, guest_key)
            user_cart = self._read_cart(pipe, user_key)

            if guest_cart is None:
                if user_cart is None:
                    raise NotFoundError("Guest cart not found")
                pipe.multi()
                return user_cart, "unchanged"

            if not guest_cart.products:
                raise InvalidStateError("Guest cart is empty")

            if user_cart is not None:
                merged = user_cart.with_products(merge_lines(user_cart.products, guest_cart.products))
                outcome = "merged"
            else:
                merged = guest_cart.reowned(user)
                outcome = "reowned"

            pipe.multi()
            self._queue_save(pipe, merged)
            pipe.delete(guest_key)
            return merged, outcome

        cart, outcome = self.redis.transaction(_merge, guest_key, user_key)
        logger.info(
            f"Cart merge {self._hash_owner(guest)} -> {self._hash_owner(user)}: {outcome}, "
            f"{len(cart.products)} line(s), total {cart.total_price}"
        )
        return cart
