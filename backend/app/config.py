from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 300
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # Production runs on Postgres; the SQLite default only serves local dev
    # and the test suite (which injects its own in-memory engine anyway).
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./arcade_trade.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Consumption tax applied when a payload carries no explicit taxRate.
    DEFAULT_TAX_RATE: float = 0.10

    # Status a Dealing starts in when a buyer approves a Navi. Deployments
    # that skip the seller approval step set this to PAYMENT_REQUIRED.
    TRADE_INITIAL_STATUS: str = "APPROVAL_REQUIRED"

    # When True, the X-User-Id header is accepted as the caller identity
    # (internal gateways that already authenticated the request).
    ALLOW_HEADER_IDENTITY: bool = False

    # Run the ledger consistency check after each trade transition and report
    # warnings in the X-Ledger-Warnings header.
    LEDGER_CONSISTENCY_CHECK: bool = True

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
