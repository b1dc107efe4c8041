from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # DATABASE_URL points at the Supabase/Postgres instance that holds the
    # carrier_configurations table.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Supabase API Configuration. The service role key is needed to invoke
    # the ShipStation proxy edge functions.
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None  # Anon key
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None  # Service role key

    # UPS. Sandbox (CIE) is used unless the stored credentials say
    # environment == "production".
    UPS_SANDBOX_BASE_URL: str = "https://wwwcie.ups.com"
    UPS_PRODUCTION_BASE_URL: str = "https://onlinetools.ups.com"
    UPS_TRANSACTION_SOURCE: str = "ShippingConnector"

    # How far ahead of expiry a cached UPS token is treated as stale.
    # Rate shopping only refreshes once the token has actually expired;
    # label purchase refreshes 30 minutes early so a long checkout does not
    # fail half way through.
    UPS_RATE_TOKEN_LOOKAHEAD_MINUTES: int = 0
    UPS_SHIPMENT_TOKEN_LOOKAHEAD_MINUTES: int = 30

    CANADA_POST_PRODUCTION_BASE_URL: str = "https://soa-gw.canadapost.ca"
    CANADA_POST_DEVELOPMENT_BASE_URL: str = "https://ct.soa-gw.canadapost.ca"

    CARRIER_HTTP_TIMEOUT_SECONDS: float = 30.0

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    def ups_base_url(self, environment: Optional[str]) -> str:
        if (environment or "").lower() == "production":
            return self.UPS_PRODUCTION_BASE_URL
        return self.UPS_SANDBOX_BASE_URL

    def canada_post_base_url(self, is_production: bool) -> str:
        if is_production:
            return self.CANADA_POST_PRODUCTION_BASE_URL
        return self.CANADA_POST_DEVELOPMENT_BASE_URL


settings = Settings()
