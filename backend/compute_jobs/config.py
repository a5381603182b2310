from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional

def _bool(env: str, default: bool = False) -> bool:
    v = os.getenv(env)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

def _optional(env: str) -> Optional[str]:
    v = os.getenv(env)
    if v is None or not v.strip():
        return None
    return v.strip()

@dataclass
class Settings:
    # Job store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./compute_jobs.db")

    # Broker (optional - absent means every event goes through the gateway socket)
    REDIS_URL: Optional[str] = _optional("REDIS_URL")
    BROKER_CHANNEL: str = os.getenv("BROKER_CHANNEL", "job-updates")
    BROKER_MAX_RETRIES: int = int(os.getenv("BROKER_MAX_RETRIES", "10"))
    BROKER_RETRY_STEP_S: float = float(os.getenv("BROKER_RETRY_STEP_S", "0.5"))
    BROKER_RETRY_MAX_DELAY_S: float = float(os.getenv("BROKER_RETRY_MAX_DELAY_S", "5.0"))

    # Notification gateway
    WS_URL: str = os.getenv("WS_URL", "ws://localhost:3001/ws")
    WS_RECONNECT_DELAY_S: float = float(os.getenv("WS_RECONNECT_DELAY_S", "3.0"))

    # LLM settings
    OPENAI_API_KEY: Optional[str] = _optional("OPENAI_API_KEY")
    LLM_ENABLED: bool = _bool("LLM_ENABLED", True)
    LLM_FALLBACK_ON_ERROR: bool = _bool("LLM_FALLBACK_ON_ERROR", True)
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-3.5-turbo")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.0"))  # Deterministic
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "50"))
    LLM_PRICE_PER_1K_TOKENS: float = float(os.getenv("LLM_PRICE_PER_1K_TOKENS", "0.002"))
    LLM_PER_CALL_TIMEOUT: float = float(os.getenv("LLM_PER_CALL_TIMEOUT", "30"))

    # Dispatcher
    POLL_INTERVAL_S: float = float(os.getenv("POLL_INTERVAL_S", "2.0"))
    POLL_BATCH_LIMIT: int = int(os.getenv("POLL_BATCH_LIMIT", "5"))
    OPERATION_DELAY_S: float = float(os.getenv("OPERATION_DELAY_S", "3.0"))

    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "3001"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
