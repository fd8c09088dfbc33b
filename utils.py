from datetime import timedelta
from typing import Mapping, Optional
from sqlalchemy.orm import Session
from clock import utcnow
from logging_config import logger
from models import RateLimitWindow, UserSession

# Checked in order; the first header present wins
CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")


def normalize_headers(headers: Optional[Mapping[str, str]]) -> dict:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def get_client_ip(headers: Mapping[str, str]) -> str:
    headers = normalize_headers(headers)
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            # Forwarded-for chains list the original client first
            first = value.split(",")[0].strip()
            if first:
                return first
    return "unknown"


def get_user_agent(headers: Mapping[str, str]) -> str:
    return normalize_headers(headers).get("user-agent") or "unknown"


def cleanup_old_rate_limits(db: Session, older_than_minutes: int = 5, now=None) -> int:
    cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)
    try:
        deleted = db.query(RateLimitWindow).filter(RateLimitWindow.window_start < cutoff).delete()
        db.commit()
        return deleted
    except Exception as e:
        db.rollback()
        logger.warning(f"Rate limit cleanup failed: {e}")
        return 0


def cleanup_expired_sessions(db: Session, now=None) -> int:
    now = now or utcnow()
    try:
        updated = db.query(UserSession).filter(
            UserSession.expires_at < now,
            UserSession.is_active.is_(True),
        ).update({UserSession.is_active: False}, synchronize_session=False)
        db.commit()
        return updated
    except Exception as e:
        db.rollback()
        logger.warning(f"Session cleanup failed: {e}")
        return 0
