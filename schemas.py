from typing import List, Optional
from pydantic import BaseModel, EmailStr
from datetime import datetime, date as date_type

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    username: Optional[str] = None

class UserOut(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    is_verified: bool

    class Config:
        from_attributes = True

class PasswordChange(BaseModel):
    old_password: str
    new_password: str

class SessionOut(BaseModel):
    session_token: str
    token_type: str = "bearer"
    email: str

class APIKeyCreate(BaseModel):
    name: Optional[str] = None
    permissions: List[str] = ["webhook:trigger"]
    expires_at: Optional[datetime] = None
    rate_limit_override: Optional[int] = None

class APIKeyOut(BaseModel):
    id: str
    api_key: str  # shown once
    key_prefix: str
    name: Optional[str] = None
    permissions: List[str]

class WebhookRotateRequest(BaseModel):
    reason: Optional[str] = None

class WebhookRotateOut(BaseModel):
    old_webhook_id: str
    new_webhook_id: str
    webhook_secret: str  # shown once
    rotated_at: datetime

class WebhookOut(BaseModel):
    webhook_id: str
    id_scheme: str
    shortcut_name: str
    is_active: bool
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    trigger_count: int
    allowed_ips: Optional[List[str]] = None

    class Config:
        from_attributes = True

class ExecutionOut(BaseModel):
    executed_at: Optional[datetime] = None
    status: str
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None

class DailyAnalyticsOut(BaseModel):
    date: date_type
    triggers: int
    successes: int
    failures: int
    unauthorized: int
    avg_response_time_ms: Optional[float] = None

class WebhookSummary(BaseModel):
    id: str
    name: str
    device_name: Optional[str] = None
    created_at: Optional[datetime] = None
    last_triggered: Optional[datetime] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None

class WebhookStats(BaseModel):
    total_triggers: int
    successful_triggers: int
    failed_triggers: int
    unauthorized_attempts: int
    success_rate: float
    avg_response_time_ms: int
    remaining_uses: Optional[int] = None

class WebhookStatsOut(BaseModel):
    webhook: WebhookSummary
    stats: WebhookStats
    recent_executions: List[ExecutionOut]
    daily_analytics: List[DailyAnalyticsOut]
