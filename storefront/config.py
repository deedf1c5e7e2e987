import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class StripeConfig(BaseModel):
    secret_key: str = "sk_test_placeholder"
    public_key: str = "pk_test_placeholder"
    webhook_secret: str = "whsec_placeholder"
    currency: str = "usd"


class PayPalConfig(BaseModel):
    client_id: str = "paypal_client_id"
    client_secret: str = "paypal_client_secret"
    mode: str = "sandbox"  # sandbox | live
    webhook_id: str | None = None
    currency: str = "USD"


class OrderConfig(BaseModel):
    tax_rate: Decimal = Decimal("0.10")
    free_shipping_threshold: Decimal = Decimal("100")
    base_shipping_rate: Decimal = Decimal("10")


class Settings(BaseModel):
    DATABASE_URL: str = "sqlite:///./storefront.db"
    JWT_SECRET: str = "devsecret"
    JWT_ALGORITHM: str = "HS256"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    stripe: StripeConfig = StripeConfig()
    paypal: PayPalConfig = PayPalConfig()
    orders: OrderConfig = OrderConfig()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL", "sqlite:///./storefront.db"),
            JWT_SECRET=os.getenv("JWT_SECRET", "devsecret"),
            JWT_ALGORITHM=os.getenv("JWT_ALGORITHM", "HS256"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_JSON=os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes"),
            stripe=StripeConfig(
                secret_key=os.getenv("STRIPE_SECRET_KEY", "sk_test_placeholder"),
                public_key=os.getenv("STRIPE_PUBLIC_KEY", "pk_test_placeholder"),
                webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_placeholder"),
                currency=os.getenv("STRIPE_CURRENCY", "usd"),
            ),
            paypal=PayPalConfig(
                client_id=os.getenv("PAYPAL_CLIENT_ID", "paypal_client_id"),
                client_secret=os.getenv("PAYPAL_CLIENT_SECRET", "paypal_client_secret"),
                mode=os.getenv("PAYPAL_MODE", "sandbox"),
                webhook_id=os.getenv("PAYPAL_WEBHOOK_ID") or None,
                currency=os.getenv("PAYPAL_CURRENCY", "USD"),
            ),
            orders=OrderConfig(
                tax_rate=Decimal(os.getenv("ORDER_TAX_RATE", "0.10")),
                free_shipping_threshold=Decimal(os.getenv("ORDER_FREE_SHIPPING_THRESHOLD", "100")),
                base_shipping_rate=Decimal(os.getenv("ORDER_BASE_SHIPPING_RATE", "10")),
            ),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
