"""
Configuration management for the cart and checkout service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "cartflow")
    REGION: str = os.getenv("REGION", "ap-southeast-2")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_bool("REDIS_SSL", "false")
    KEY_PREFIX: str = os.getenv("KEY_PREFIX", "")

    # Cart settings (0 disables expiry)
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", "0"))
    GUEST_CART_TTL_SECONDS: int = int(os.getenv("GUEST_CART_TTL_SECONDS", "0"))
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))

    # Optimistic transactions
    MAX_TRANSACTION_RETRIES: int = int(os.getenv("MAX_TRANSACTION_RETRIES", "10"))

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    @classmethod
    def redis_url(cls) -> str:
        """Build the Redis connection URL from the current settings"""
        scheme = "rediss" if cls.REDIS_SSL else "redis"
        auth = f":{cls.REDIS_AUTH_TOKEN}@" if cls.REDIS_AUTH_TOKEN else ""
        return f"{scheme}://{auth}{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except (BotoCoreError, ClientError, KeyError, ValueError) as e:
            # Continue without auth token (connection may fail later)
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")


# Load secrets at module import
Config.load_redis_secrets()
