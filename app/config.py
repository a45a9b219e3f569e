"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payment_gateway.db"
    sqlite_busy_timeout_seconds: float = 15.0
    log_level: str = "INFO"

    provider_timeout_seconds: float = 10.0  # Outbound gateway calls, never retried
    payment_attempt_ttl_minutes: int = 15  # In-flight creates block new ones until they expire
    elevated_roles: list[str] = ["ADMIN", "STAFF"]

    # VNPAY
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_tmn_code: str = "TEST_TMN_CODE"
    vnpay_hash_secret: str = "VNPAY_HASH_SECRET"
    vnpay_return_url: str = "http://localhost:8000/api/callbacks/vnpay"

    # MOMO
    momo_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    momo_partner_code: str = "MOMO_PARTNER"
    momo_access_key: str = "MOMO_ACCESS_KEY"
    momo_secret_key: str = "MOMO_SECRET_KEY"
    momo_ipn_url: str = "http://localhost:8000/api/callbacks/momo"
    momo_redirect_url: str = "http://localhost:8000/api/callbacks/momo"

    # STRIPE
    stripe_secret_key: str = "sk_test_placeholder"
    stripe_webhook_secret: str = "whsec_placeholder"
    stripe_webhook_tolerance_seconds: int = 300

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
