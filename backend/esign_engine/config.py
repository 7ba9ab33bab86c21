"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
Signing policy (OTP limits, face-match threshold, collaborator timeouts)
lives here so it can be tuned per deployment.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Envelope Signing Engine API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'esign_engine.db'}"

    # --- Security ---
    SECRET_KEY: str = "esign-engine-secret-key-change-in-production"
    CORS_ORIGINS: list[str] = ["*"]

    # --- OTP Policy ---
    OTP_LENGTH: int = 6
    OTP_TTL_MINUTES: int = 10
    OTP_RESEND_COOLDOWN_SECONDS: int = 60
    OTP_MAX_ATTEMPTS: int = 5
    OTP_DELIVERY_TIMEOUT_SECONDS: float = 10.0

    # --- Identity Verification ---
    FACE_MATCH_THRESHOLD: float = 90.0
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-1.5-flash-latest"
    ANALYZER_TIMEOUT_SECONDS: float = 30.0
    CAPTURE_STORAGE_DIR: str = str(BASE_DIR / "data" / "captures")
    EID_PROVIDER_URL: str = ""
    EID_TIMEOUT_SECONDS: float = 15.0

    # --- Trust Service (eSeal / AES + RFC 3161) ---
    TRUST_SERVICE_URL: str = ""
    TRUST_SERVICE_API_KEY: str = ""
    TRUST_SERVICE_TIMEOUT_SECONDS: float = 30.0
    TSA_URL: str = "https://freetsa.org/tsr"

    # --- Delivery Channels (Brevo) ---
    BREVO_API_KEY: str = ""
    BREVO_SENDER_EMAIL: str = "no-reply@esign.local"
    BREVO_SENDER_NAME: str = "eSign"
    BREVO_SMS_SENDER: str = "eSign"

    # --- Envelopes & Sessions ---
    ENVELOPE_DEFAULT_EXPIRY_DAYS: int = 14
    ENVELOPE_TYPES_FILE: str = ""
    SESSION_IDLE_TIMEOUT_MINUTES: int = 120
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
