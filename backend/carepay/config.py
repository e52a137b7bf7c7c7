"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.

The Settings object is frozen: it is built once by get_settings() and handed
to the gateway and service constructors instead of being looked up ad hoc.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent

# Credentials shipped in sample .env files; treated the same as "not configured"
PLACEHOLDER_KEY_IDS = {"", "rzp_test_your_key_id_here"}
PLACEHOLDER_KEY_SECRETS = {"", "your_secret_key_here"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "CarePay Payment Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'carepay.db'}"

    # --- Gateway (Razorpay) ---
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # --- Payments ---
    MINOR_UNIT_FACTOR: int = 100          # paise per rupee
    DEFAULT_CURRENCY: str = "INR"
    CALLBACK_BASE_URL: str = "http://127.0.0.1:8000"
    DEFAULT_SERVICE_TYPE: str = "General Service"

    # --- Projection retry ---
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_SECONDS: float = 0.2

    # --- Security ---
    CORS_ORIGINS: list[str] = ["*"]

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        frozen = True

    @property
    def gateway_configured(self) -> bool:
        """True when real gateway credentials are present."""
        return (
            self.RAZORPAY_KEY_ID not in PLACEHOLDER_KEY_IDS
            and self.RAZORPAY_KEY_SECRET not in PLACEHOLDER_KEY_SECRETS
        )

    @property
    def demo_mode(self) -> bool:
        return not self.gateway_configured

    @property
    def success_callback_url(self) -> str:
        return f"{self.CALLBACK_BASE_URL.rstrip('/')}/api/payments/callback"

    @property
    def failure_callback_url(self) -> str:
        return f"{self.CALLBACK_BASE_URL.rstrip('/')}/api/payments/callback/failure"

    @property
    def link_callback_url(self) -> str:
        return f"{self.CALLBACK_BASE_URL.rstrip('/')}/api/payments/links/callback"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
