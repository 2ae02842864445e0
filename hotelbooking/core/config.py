from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Hotel Booking API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"
    # Used for "today" in admission checks and for check-in instants
    TIMEZONE: str = "Asia/Ho_Chi_Minh"

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "bookings@hotelbooking.local"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""

    API_PUBLIC_URL: str = "http://localhost:8000"  # base for the mock bank-transfer page
    # Browser return handlers redirect here (?orderId=..&success=..); JSON response when empty
    PAYMENT_RESULT_URL: str = ""

    # VNPay (HMAC-SHA512)
    VNP_TMN_CODE: str = ""
    VNP_HASH_SECRET: str = ""
    VNP_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    VNP_API_URL: str = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
    VNP_RETURN_URL: str = ""
    VNP_VERSION: str = "2.1.0"
    VNP_LOCALE: str = "vn"
    VNP_CURR_CODE: str = "VND"
    VNP_EXPIRE_MINUTES: int = 15

    # MoMo (HMAC-SHA256)
    MOMO_PARTNER_CODE: str = ""
    MOMO_ACCESS_KEY: str = ""
    MOMO_SECRET_KEY: str = ""
    MOMO_API_ENDPOINT: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    MOMO_QUERY_ENDPOINT: str = "https://test-payment.momo.vn/v2/gateway/api/query"
    MOMO_RETURN_URL: str = ""
    MOMO_IPN_URL: str = ""
    MOMO_REQUEST_TYPE: str = "captureWallet"
    MOMO_LANG: str = "vi"
    MOMO_MIN_AMOUNT: int = 1_000
    MOMO_MAX_AMOUNT: int = 50_000_000
    MOMO_SANDBOX: bool = False  # If True, skip the real MoMo call and return a mock pay URL

    # Mock bank transfer: HMAC-SHA256 over the return query
    BANK_TRANSFER_SECRET: str = ""

    # Reconciliation policy
    DEPOSIT_THRESHOLD: float = 0.5
    CANCELLATION_MIN_HOURS: int = 24
    OUTBOX_MAX_ATTEMPTS: int = 5
    PENDING_HOLD_HOURS: int = 0  # 0 disables the pending-booking reaper


settings = Settings()
