# config.py
import base64
import os
from dotenv import load_dotenv

load_dotenv()  # Loads from .env file


def _load_key(name: str) -> bytes:
    raw = os.getenv(name)
    if not raw:
        # Ephemeral key: secrets encrypted with it do not survive a restart
        return os.urandom(32)
    key = base64.b64decode(raw)
    if len(key) not in (16, 24, 32):
        raise ValueError(f"{name} must decode to 16, 24 or 32 bytes")
    return key


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    # DB
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/webcuts.db")
    # Crypto
    DEVICE_SECRET_ENCRYPTION_KEY = _load_key("DEVICE_SECRET_ENCRYPTION_KEY")
    PASSWORD_HASH_ROUNDS = int(os.getenv("PASSWORD_HASH_ROUNDS", 600000))
    WEBHOOK_ID_BYTES = int(os.getenv("WEBHOOK_ID_BYTES", 32))
    SIGNATURE_HEADER = os.getenv("SIGNATURE_HEADER", "x-webhook-signature").lower()
    # Sessions
    SESSION_EXPIRE_HOURS = int(os.getenv("SESSION_EXPIRE_HOURS", 24))
    # Rate limiting
    RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", 10))
    USER_RATE_LIMIT_PER_MINUTE = int(os.getenv("USER_RATE_LIMIT_PER_MINUTE", 30))
    RATE_LIMIT_WINDOW_MINUTES = int(os.getenv("RATE_LIMIT_WINDOW_MINUTES", 1))
    RATE_LIMIT_RETENTION_MINUTES = int(os.getenv("RATE_LIMIT_RETENTION_MINUTES", 5))
    RATE_LIMIT_ANONYMOUS_BY_IP = _env_bool("RATE_LIMIT_ANONYMOUS_BY_IP", "false")
    # Triggers
    MAX_PAYLOAD_BYTES = int(os.getenv("MAX_PAYLOAD_BYTES", 4096))
    # Maintenance
    CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", 3600))
    ROTATE_LEGACY_WEBHOOKS_ON_STARTUP = _env_bool("ROTATE_LEGACY_WEBHOOKS_ON_STARTUP", "true")
    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
