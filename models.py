from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, ForeignKey, LargeBinary, DateTime, Date, Boolean, Float, Text, JSON,
    UniqueConstraint, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship
from clock import utcnow
from database import Base


def _uuid_hex():
    return uuid4().hex


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=_uuid_hex)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, nullable=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    devices = relationship("Device", back_populates="owner")


class Device(Base):
    __tablename__ = "devices"
    id = Column(String, primary_key=True, default=_uuid_hex)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    device_secret_encrypted = Column(LargeBinary, nullable=False)  # AES-GCM nonce + tag + ciphertext
    device_secret_hash = Column(String, unique=True, index=True, nullable=False)  # sha256, lookups only
    device_name = Column(String)
    bundle_id = Column(String, default="com.webcuts.app")
    push_environment = Column(String, nullable=False, default="sandbox")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("push_environment IN ('sandbox', 'production')", name="ck_devices_push_environment"),
    )

    owner = relationship("User", back_populates="devices")
    shortcuts = relationship("Shortcut", back_populates="device")


class Shortcut(Base):
    """A trigger endpoint bound to one shortcut on one device."""
    __tablename__ = "shortcuts"
    id = Column(String, primary_key=True, default=_uuid_hex)
    device_id = Column(String, ForeignKey("devices.id"), index=True, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    shortcut_id = Column(String, nullable=False)
    shortcut_name = Column(String, nullable=False)
    webhook_id = Column(String, unique=True, index=True, nullable=False)
    id_scheme = Column(String, nullable=False, default="random")
    webhook_secret_encrypted = Column(LargeBinary, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_triggered = Column(DateTime, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)
    allowed_ips = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("device_id", "shortcut_id", name="uq_shortcuts_device_shortcut"),)

    device = relationship("Device", back_populates="shortcuts")
    owner = relationship("User")


class WebhookRotation(Base):
    __tablename__ = "webhook_rotations"
    id = Column(String, primary_key=True, default=_uuid_hex)
    shortcut_id = Column(String, ForeignKey("shortcuts.id"), index=True, nullable=False)
    old_webhook_id = Column(String, nullable=False)
    new_webhook_id = Column(String, nullable=False)
    rotated_at = Column(DateTime, default=utcnow)
    rotated_by = Column(String, nullable=True)  # user id, NULL for system rotations
    reason = Column(String)


class UserSession(Base):
    __tablename__ = "sessions"
    id = Column(String, primary_key=True, default=_uuid_hex)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    token_hash = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    ip_address = Column(String)
    user_agent = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)

    user = relationship("User")


class UserAPIKey(Base):
    __tablename__ = "user_api_keys"
    id = Column(String, primary_key=True, default=_uuid_hex)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    key_hash = Column(String, unique=True, index=True, nullable=False)
    key_prefix = Column(String, nullable=False)  # safe to display
    name = Column(String)
    permissions = Column(JSON, nullable=False, default=lambda: ["webhook:trigger"])
    rate_limit_override = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    last_used = Column(DateTime, nullable=True)
    last_used_ip = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    user = relationship("User")


class WebhookExecution(Base):
    __tablename__ = "webhook_executions"
    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(String, index=True, nullable=False)
    shortcut_id = Column(String, nullable=False)
    device_id = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=False)  # webhook owner
    triggered_by = Column(String, nullable=True)  # resolved caller, NULL when anonymous
    payload = Column(Text)
    status = Column(String, nullable=False)
    error_message = Column(Text)
    notification_id = Column(String)
    external_id = Column(String)
    executed_at = Column(DateTime, default=utcnow, index=True)
    response_time_ms = Column(Integer)
    ip_address = Column(String)
    user_agent = Column(String)
    api_key_id = Column(String)

    __table_args__ = (
        CheckConstraint(
            "status IN ('success', 'failed', 'pending', 'unauthorized')", name="ck_webhook_executions_status"
        ),
    )


class RateLimitWindow(Base):
    __tablename__ = "rate_limits"
    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String, nullable=False)
    window_start = Column(DateTime, nullable=False)
    request_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("identifier", "window_start", name="uq_rate_limits_identifier_window"),
        Index("ix_rate_limits_window_start", "window_start"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=True)
    action = Column(String, nullable=False, index=True)
    resource_type = Column(String)
    resource_id = Column(String)
    details = Column(JSON)
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime, default=utcnow, index=True)


class AnalyticsDaily(Base):
    __tablename__ = "analytics"
    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    trigger_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    unauthorized_count = Column(Integer, nullable=False, default=0)
    avg_response_time_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("webhook_id", "date", name="uq_analytics_webhook_date"),)
