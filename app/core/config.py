# app/core/config.py
from typing import Dict, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, BaseModel, Field, field_validator # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

from app.x402.policy import POLICIES

# Load .env file if it exists
load_dotenv()


class ResourceConfig(BaseModel):
    """A paid resource exposed by the gateway and the upstream that serves it."""
    upstream: str
    price_usd: float
    description: str = "Paid API access"
    provider: str = "general"
    policy: str = "any"
    mime_type: str = "application/json"

    @field_validator("policy")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        if v not in POLICIES:
            raise ValueError(f"unknown result policy {v!r}; expected one of {sorted(POLICIES)}")
        return v


def default_resources() -> Dict[str, ResourceConfig]:
    return {
        "translate": ResourceConfig(
            upstream="/translate", price_usd=0.01,
            description="Text translation", provider="translation", policy="translation",
        ),
        "summarize": ResourceConfig(
            upstream="/summarize", price_usd=0.02,
            description="Text summarization", provider="summarization", policy="text",
        ),
        "sentiment": ResourceConfig(
            upstream="/sentiment", price_usd=0.005,
            description="Sentiment analysis", provider="sentiment", policy="sentiment",
        ),
        "general": ResourceConfig(
            upstream="/general", price_usd=0.015,
            description="General query", provider="general", policy="text",
        ),
        "crypto": ResourceConfig(
            upstream="/crypto", price_usd=0.005,
            description="Crypto market data", provider="crypto", policy="market-data",
        ),
        "weather": ResourceConfig(
            upstream="/weather", price_usd=0.002,
            description="Weather data", provider="weather", policy="weather",
        ),
    }


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Settlement Gateway"
    API_V1_STR: str = "/api/v1"

    # Network and signed-message domain
    X402_NETWORK: str = "base-sepolia"
    X402_CHAIN_ID: int = 84532
    X402_ASSET_ADDRESS: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    X402_ASSET_NAME: str = "USDC"
    X402_ASSET_VERSION: str = "2"
    X402_PAY_TO_ADDRESS: Optional[str] = None

    # Chain access
    X402_RPC_URL: AnyHttpUrl = "https://sepolia.base.org"
    X402_RPC_TIMEOUT_SECONDS: int = 10
    X402_EXECUTOR_PRIVATE_KEY: Optional[str] = None

    # Pre-flight checks
    X402_MIN_EXECUTOR_BALANCE_WEI: int = 10 ** 14  # 0.0001 native token for gas
    X402_CHECK_PAYER_FUNDS: bool = True
    X402_CHECK_AUTHORIZATION_STATE: bool = True
    X402_BALANCE_CACHE_SECONDS: int = 15

    # Timeouts
    X402_MAX_TIMEOUT_SECONDS: int = 60
    X402_SETTLEMENT_TIMEOUT_SECONDS: int = 120

    # Paid resources
    X402_UPSTREAM_BASE_URL: str = "http://localhost:8080"
    X402_RESOURCES: Dict[str, ResourceConfig] = Field(default_factory=default_resources)

    # Persistence
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"
    X402_PROVIDER_STATS_PATH: str = "data/provider_stats.json"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
