"""
Custom exceptions for the cart and checkout service.

Every exception carries a stable ``kind`` that the HTTP layer returns to the
client together with the message.
"""


class CartflowError(Exception):
    """Base exception for cart, checkout and order operations"""
    kind = "internal"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(CartflowError):
    """Raised when a referenced entity does not exist"""
    kind = "not_found"


class CartNotFoundError(NotFoundError):
    """Raised when a cart does not exist"""
    def __init__(self, owner: str):
        self.owner = owner
        super().__init__("Cart not found")


class ProductNotFoundError(NotFoundError):
    """Raised when a product is not in the catalog"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found")


class LineNotFoundError(NotFoundError):
    """Raised when a cart has no line matching the requested key"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found in cart")


class CheckoutNotFoundError(NotFoundError):
    def __init__(self, checkout_id: str):
        self.checkout_id = checkout_id
        super().__init__("Checkout not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class InvalidInputError(CartflowError):
    """Raised when request data is malformed or out of range"""
    kind = "invalid_input"


class LimitExceededError(InvalidInputError):
    """Raised when cart limits are exceeded"""


class InvalidStateError(CartflowError):
    """Raised when a lifecycle transition is not allowed from the current state"""
    kind = "invalid_state"


class UnauthorizedError(CartflowError):
    kind = "unauthorized"


class ForbiddenError(CartflowError):
    kind = "forbidden"


class StorageError(CartflowError):
    """Raised when Redis is unreachable or rejects an operation"""


class ConcurrencyConflictError(StorageError):
    """Raised when an optimistic transaction keeps losing to concurrent writers"""
