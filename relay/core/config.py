# relay/core/config.py
from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, Field, model_validator
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "JustBazar Relay"
    RELAY_DESCRIPTION: str = "Relay to store paid auction and bid events not nip-15"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Public address of the relay, used to build payment callback URLs
    RELAY_URL: AnyHttpUrl = "http://localhost:3334"

    # Price per event in sats. 0 disables payment gating entirely.
    TICKET_PRICE_SATS: int = Field(default=0, ge=0)

    # ZBD (Zebedee) payment provider
    ZBD_API_KEY: Optional[str] = None
    ZBD_API_URL: AnyHttpUrl = "https://api.zebedee.io/v0/"
    ZBD_TIMEOUT_SECONDS: int = Field(default=30, ge=1)
    ZBD_CHARGE_EXPIRY_SECONDS: int = Field(default=600, ge=60)
    ZBD_VERIFY_CALLBACKS: bool = True

    # What to do with kinds that have no validator when gating is off
    UNKNOWN_KIND_POLICY: Literal["accept", "reject"] = "accept"

    # Pending-payment ledger. Unset keeps charges in process memory.
    LEDGER_DATABASE_PATH: Optional[str] = None
    CHARGE_WAIT_SECONDS: float = Field(default=35.0, gt=0)

    # Expiry sweep for charges that never receive a webhook. 0 disables it.
    CHARGE_TTL_SECONDS: int = Field(default=1800, ge=0)
    SWEEP_INTERVAL_SECONDS: int = Field(default=60, ge=1)

    AUDIT_LOG_PATH: str = "logs/payment_audit.jsonl"

    @model_validator(mode="after")
    def check_charge_ttl(self) -> "Settings":
        # A charge must not be expired locally while its invoice is still payable
        if 0 < self.CHARGE_TTL_SECONDS < self.ZBD_CHARGE_EXPIRY_SECONDS:
            raise ValueError(
                f"CHARGE_TTL_SECONDS ({self.CHARGE_TTL_SECONDS}) must be at least "
                f"ZBD_CHARGE_EXPIRY_SECONDS ({self.ZBD_CHARGE_EXPIRY_SECONDS}) or 0"
            )
        return self

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
