from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient
from redis.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError

from cartflow.cart_service import CartService
from cartflow.catalog import ProductCatalog, UserDirectory
from cartflow.checkout_service import CheckoutService
from cartflow.main import app, get_cart_service, get_checkout_service, get_order_service, get_redis
from cartflow.models import CartLine
from cartflow.order_service import OrderService
from cartflow.redis_client import RedisClient

PRODUCTS = {
    "p1": {"name": "Classic Tee", "price": "10", "image": "https://img.example.com/p1.jpg"},
    "p2": {"name": "Denim Jacket", "price": "25.50", "image": "https://img.example.com/p2.jpg"},
    "p3": {"name": "Canvas Sneakers", "price": "42.00", "image": ""},
}


def seed_product(redis_client, product_id, name, price, image=""):
    redis_client.client.hset(
        redis_client.key("product", product_id),
        mapping={"name": name, "price": price, "image": image},
    )


def seed_user(redis_client, user_id, name, email):
    redis_client.client.hset(redis_client.key("user", user_id), mapping={"name": name, "email": email})


def make_line(product_id="p1", price="10", quantity=1, size=None, color=None, name="Classic Tee"):
    return CartLine(
        product_id=product_id,
        name=name,
        price=Decimal(price),
        quantity=quantity,
        size=size,
        color=color,
    )


@pytest.fixture()
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture()
def redis_client(fake_redis):
    client = RedisClient(client=fake_redis)
    for product_id, data in PRODUCTS.items():
        seed_product(client, product_id, **data)
    return client


@pytest.fixture()
def cart_service(redis_client):
    return CartService(redis_client, ProductCatalog(redis_client))


@pytest.fixture()
def order_service(redis_client):
    return OrderService(redis_client, UserDirectory(redis_client))


@pytest.fixture()
def checkout_service(redis_client, cart_service, order_service):
    return CheckoutService(redis_client, cart_service, order_service)


@pytest.fixture()
def lose_next_exec_reply(monkeypatch):
    """Arm a fault: the next EXEC commits on the server but its reply is lost"""
    def _arm():
        original_execute = Pipeline.execute
        armed = [True]

        def execute(self, *args, **kwargs):
            result = original_execute(self, *args, **kwargs)
            if armed:
                armed.pop()
                raise RedisConnectionError("Connection closed by server.")
            return result

        monkeypatch.setattr(Pipeline, "execute", execute)
    return _arm


@pytest.fixture()
def client(redis_client, cart_service, order_service, checkout_service):
    app.dependency_overrides[get_redis] = lambda: redis_client
    app.dependency_overrides[get_cart_service] = lambda: cart_service
    app.dependency_overrides[get_order_service] = lambda: order_service
    app.dependency_overrides[get_checkout_service] = lambda: checkout_service
    yield TestClient(app)
    app.dependency_overrides.clear()
