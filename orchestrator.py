"""End-to-end trigger pipeline: authorize, rate-limit, dispatch, record.

Also hosts the owner-facing webhook operations (rotation, policy updates,
statistics) since they share the same store access and audit trail.
"""
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Union
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from auth import Caller, Identity
from clock import Clock, utcnow
from config import Settings
from crypto_utils import (
    DEFAULT_WEBHOOK_ID_STRATEGY, WebhookIdStrategy, decrypt_secret, encrypt_secret, generate_webhook_secret,
    schemes_requiring_rotation,
)
from dispatcher import Dispatcher, DispatchErrorKind, DispatchRequest, DispatchResult
from errors import (
    DispatchFailure, GatewayError, InternalError, NotFound, PayloadTooLarge, RateLimited, Unauthorized, ValidationError,
)
from gate import WebhookGate
from logging_config import logger
from models import AnalyticsDaily, Device, Shortcut, WebhookExecution, WebhookRotation
from rate_limiter import RateLimiter
from recorder import ExecutionRecorder
from utils import get_client_ip, get_user_agent, normalize_headers

UPDATABLE_FIELDS = ("expires_at", "max_uses", "allowed_ips", "is_active")


@dataclass
class TriggerResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: GatewayError) -> "TriggerResponse":
        return cls(error.status_code, error.to_body(), dict(error.headers))


@dataclass
class RotationResult:
    old_webhook_id: str
    new_webhook_id: str
    webhook_secret: Optional[str]  # returned once, stored only encrypted; None when the secret was kept
    rotated_at: datetime


def parse_payload(raw_body: Union[bytes, str], headers: Mapping[str, str]) -> Dict[str, Any]:
    """JSON bodies become the payload; any other body is ignored."""
    content_type = normalize_headers(headers).get("content-type", "")
    if "application/json" not in content_type:
        return {}
    if isinstance(raw_body, bytes):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Request body is not valid UTF-8")
    if not raw_body.strip():
        return {}
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Malformed JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")
    return payload


def payload_size(payload: Dict[str, Any]) -> int:
    return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


class TriggerOrchestrator:
    def __init__(
        self,
        db: Session,
        dispatcher: Dispatcher,
        clock: Clock = utcnow,
        vault_key: bytes = Settings.DEVICE_SECRET_ENCRYPTION_KEY,
        id_strategy: WebhookIdStrategy = DEFAULT_WEBHOOK_ID_STRATEGY,
        settings=Settings,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock
        self.vault_key = vault_key
        self.id_strategy = id_strategy
        self.settings = settings
        self.recorder = ExecutionRecorder(db, clock)
        self.gate = WebhookGate(db, clock, vault_key, recorder=self.recorder,
                                signature_header=settings.SIGNATURE_HEADER)
        self.rate_limiter = RateLimiter(db, clock)

    # ---------- triggering ----------

    def authorize_and_trigger(
        self,
        webhook_id: str,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
    ) -> TriggerResponse:
        started = time.perf_counter()
        headers = normalize_headers(headers)
        client_ip = get_client_ip(headers)
        user_agent = get_user_agent(headers)

        try:
            decision = self.gate.evaluate(webhook_id, raw_body, headers, query_params)
            if not decision.accepted:
                return TriggerResponse.from_error(decision.error())

            webhook, caller = decision.webhook, decision.caller

            payload = parse_payload(raw_body, headers)
            size = payload_size(payload)
            if size > self.settings.MAX_PAYLOAD_BYTES:
                logger.warning(f"Payload of {size} bytes rejected for webhook {webhook_id[:8]}...")
                return TriggerResponse.from_error(PayloadTooLarge(size, self.settings.MAX_PAYLOAD_BYTES))

            limit = self.rate_limiter.check(
                self._rate_limit_identifier(webhook_id, caller, client_ip),
                self.settings.RATE_LIMIT_WINDOW_MINUTES,
                self._rate_limit_for(caller),
            )
            if not limit.allowed:
                self.recorder.audit(
                    caller.user_id if isinstance(caller, Identity) else None,
                    "webhook_trigger_rate_limited",
                    "webhook",
                    webhook_id,
                    {"ip": client_ip},
                    client_ip,
                    user_agent,
                )
                return TriggerResponse.from_error(RateLimited(retry_after=limit.retry_after_seconds))

            device = webhook.device
            result = self._dispatch(DispatchRequest(
                secret_token=decrypt_secret(device.device_secret_encrypted, self.vault_key),
                shortcut_id=webhook.shortcut_id,
                shortcut_name=webhook.shortcut_name,
                payload=payload,
                environment=device.push_environment,
            ))
            elapsed_ms = int(round((time.perf_counter() - started) * 1000))

            self.recorder.record(
                webhook,
                "success" if result.success else "failed",
                payload=payload,
                error_message=result.error,
                notification_id=result.notification_id,
                external_id=result.external_id,
                response_time_ms=elapsed_ms,
                ip_address=client_ip,
                user_agent=user_agent,
                triggered_by=caller.user_id if isinstance(caller, Identity) else None,
                api_key_id=caller.api_key_id if isinstance(caller, Identity) else None,
            )
            if result.error_kind == DispatchErrorKind.SECRET_INVALID:
                device.is_active = False
            # The notification has been sent: commit its execution row before any further write
            self.db.commit()
            self._update_analytics(webhook.webhook_id, result.success, elapsed_ms)

            if result.error_kind == DispatchErrorKind.SECRET_INVALID:
                logger.warning(f"Device {device.id} deactivated after push secret was rejected")
                self.recorder.audit(
                    webhook.user_id, "device_deactivated", "device", device.id,
                    {"reason": "secret_invalid", "webhook_id": webhook_id}, client_ip, user_agent,
                )

            self.recorder.audit(
                webhook.user_id,
                "webhook_trigger",
                "webhook",
                webhook_id,
                {
                    "success": result.success,
                    "shortcut_name": webhook.shortcut_name,
                    "device_name": device.device_name,
                    "triggered_by": caller.email if isinstance(caller, Identity) else "anonymous",
                    "ip": client_ip,
                },
                client_ip,
                user_agent,
            )

            if not result.success:
                return TriggerResponse.from_error(DispatchFailure(details=result.error))

            return TriggerResponse(200, {
                "success": True,
                "message": "Shortcut triggered successfully",
                "webhook_id": webhook_id,
                "shortcut_id": webhook.shortcut_id,
                "shortcut_name": webhook.shortcut_name,
                "timestamp": self.clock().isoformat(),
                "notification_id": result.notification_id,
                "remaining": limit.remaining,
                "user": {"email": caller.email} if isinstance(caller, Identity) else None,
            })

        except ValidationError as e:
            return TriggerResponse.from_error(e)
        except Exception as e:
            logger.exception(f"Webhook handler error for {webhook_id[:8]}...")
            self.db.rollback()
            try:
                self.recorder.audit(
                    None, "webhook_trigger_error", "webhook", webhook_id,
                    {"error": type(e).__name__, "ip": client_ip}, client_ip, user_agent,
                )
            except Exception as log_error:
                logger.error(f"Failed to log webhook error: {log_error}")
            return TriggerResponse.from_error(InternalError())

    def _update_analytics(self, webhook_id: str, success: bool, elapsed_ms: int) -> None:
        try:
            self.recorder.update_analytics(webhook_id, success, elapsed_ms)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Analytics update failed for webhook {webhook_id[:8]}...: {e}")

    def _dispatch(self, request: DispatchRequest) -> DispatchResult:
        try:
            return self.dispatcher.send(request)
        except Exception as e:
            logger.error(f"Dispatcher raised for shortcut {request.shortcut_id}: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__, error_kind=DispatchErrorKind.UNKNOWN)

    def _rate_limit_identifier(self, webhook_id: str, caller: Caller, client_ip: str) -> str:
        if isinstance(caller, Identity):
            return f"user:{caller.user_id}:webhook"
        if self.settings.RATE_LIMIT_ANONYMOUS_BY_IP:
            return f"webhook:{webhook_id}:ip:{client_ip}"
        return f"webhook:{webhook_id}"

    def _rate_limit_for(self, caller: Caller) -> int:
        if isinstance(caller, Identity):
            if caller.rate_limit_override is not None:
                return caller.rate_limit_override
            return self.settings.USER_RATE_LIMIT_PER_MINUTE
        return self.settings.RATE_LIMIT_PER_MINUTE

    # ---------- management ----------

    def _owned_webhook(self, webhook_id: str, actor: Caller) -> Shortcut:
        if not isinstance(actor, Identity):
            raise Unauthorized("Authentication required")
        webhook = (
            self.db.query(Shortcut)
            .join(Device, Shortcut.device_id == Device.id)
            .filter(
                Shortcut.webhook_id == webhook_id,
                Shortcut.user_id == actor.user_id,
                Device.is_active.is_(True),
            )
            .first()
        )
        if webhook is None:
            raise NotFound("Webhook not found or access denied")
        return webhook

    def _rotate(self, webhook: Shortcut, rotated_by: Optional[str], reason: str,
                new_secret: bool = True) -> RotationResult:
        old_webhook_id = webhook.webhook_id
        new_webhook_id = self.id_strategy.generate()
        secret = generate_webhook_secret() if new_secret else None
        now = self.clock()

        # Rotation record and the new identifier are committed together
        self.db.add(WebhookRotation(
            shortcut_id=webhook.id,
            old_webhook_id=old_webhook_id,
            new_webhook_id=new_webhook_id,
            rotated_at=now,
            rotated_by=rotated_by,
            reason=reason,
        ))
        webhook.webhook_id = new_webhook_id
        webhook.id_scheme = self.id_strategy.scheme
        if secret is not None:
            webhook.webhook_secret_encrypted = encrypt_secret(secret, self.vault_key)
        self.db.commit()
        return RotationResult(old_webhook_id, new_webhook_id, secret, now)

    def rotate_webhook(self, webhook_id: str, actor: Caller, reason: Optional[str] = None,
                       ip_address: Optional[str] = None) -> RotationResult:
        webhook = self._owned_webhook(webhook_id, actor)
        reason = reason or "manual_rotation"
        rotation = self._rotate(webhook, actor.user_id, reason)
        self.recorder.audit(
            actor.user_id,
            "webhook_rotate",
            "webhook",
            webhook_id,
            {
                "old_webhook_id": rotation.old_webhook_id,
                "new_webhook_id": rotation.new_webhook_id,
                "reason": reason,
                "shortcut_name": webhook.shortcut_name,
            },
            ip_address,
        )
        return rotation

    def rotate_legacy_webhooks(self) -> int:
        """Force a one-time rotation of every webhook minted with a scheme that requires it.

        Only the identifier changes. The signing secret stays as it was, since
        nobody would receive a new one; owners find the new id through
        ``list_webhooks``.
        """
        if self.id_strategy.requires_rotation:
            raise ValueError(f"Cannot migrate to the {self.id_strategy.scheme} id scheme")
        legacy = (
            self.db.query(Shortcut)
            .filter(Shortcut.id_scheme.in_(schemes_requiring_rotation()))
            .all()
        )
        for webhook in legacy:
            rotation = self._rotate(webhook, None, "legacy_id_migration", new_secret=False)
            self.recorder.audit(
                webhook.user_id, "webhook_rotate", "webhook", rotation.old_webhook_id,
                {"new_webhook_id": rotation.new_webhook_id, "reason": "legacy_id_migration"},
            )
        if legacy:
            logger.info(f"Rotated {len(legacy)} legacy webhook identifiers")
        return len(legacy)

    def update_webhook(self, webhook_id: str, actor: Caller, changes: Mapping[str, Any],
                       ip_address: Optional[str] = None) -> Shortcut:
        webhook = self._owned_webhook(webhook_id, actor)
        updates = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        if not updates:
            raise ValidationError("No valid updates provided")

        if "expires_at" in updates:
            value = updates["expires_at"]
            if isinstance(value, str):
                try:
                    value = datetime.fromisoformat(value.replace("Z", "+00:00"))
                except ValueError:
                    raise ValidationError("expires_at must be an ISO 8601 timestamp")
            if value is not None and not isinstance(value, datetime):
                raise ValidationError("expires_at must be an ISO 8601 timestamp")
            if value is not None and value.tzinfo is not None:
                value = (value - value.utcoffset()).replace(tzinfo=None)
            webhook.expires_at = value
        if "max_uses" in updates:
            value = updates["max_uses"]
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
                raise ValidationError("max_uses must be a positive integer or null")
            webhook.max_uses = value
        if "allowed_ips" in updates:
            value = updates["allowed_ips"]
            if value is not None and (not isinstance(value, list) or not all(isinstance(ip, str) for ip in value)):
                raise ValidationError("allowed_ips must be a list of addresses")
            webhook.allowed_ips = value or None
        if "is_active" in updates:
            if not isinstance(updates["is_active"], bool):
                raise ValidationError("is_active must be a boolean")
            webhook.is_active = updates["is_active"]

        self.db.commit()
        self.recorder.audit(
            actor.user_id, "webhook_update", "webhook", webhook_id,
            {"updates": sorted(updates), "shortcut_name": webhook.shortcut_name}, ip_address,
        )
        return webhook

    def list_webhooks(self, actor: Caller) -> list:
        """The caller's webhooks on active devices, newest first."""
        if not isinstance(actor, Identity):
            raise Unauthorized("Authentication required")
        return (
            self.db.query(Shortcut)
            .join(Device, Shortcut.device_id == Device.id)
            .filter(Shortcut.user_id == actor.user_id, Device.is_active.is_(True))
            .order_by(Shortcut.created_at.desc(), Shortcut.id)
            .all()
        )

    def get_webhook_stats(self, webhook_id: str, actor: Caller, days: int = 30) -> Dict[str, Any]:
        webhook = self._owned_webhook(webhook_id, actor)

        counts = dict(
            self.db.query(WebhookExecution.status, func.count(WebhookExecution.id))
            .filter(WebhookExecution.webhook_id == webhook_id)
            .group_by(WebhookExecution.status)
            .all()
        )
        avg_response = (
            self.db.query(func.avg(WebhookExecution.response_time_ms))
            .filter(
                WebhookExecution.webhook_id == webhook_id,
                WebhookExecution.status.in_(("success", "failed")),
            )
            .scalar()
        )
        recent = (
            self.db.query(WebhookExecution)
            .filter(WebhookExecution.webhook_id == webhook_id)
            .order_by(WebhookExecution.executed_at.desc(), WebhookExecution.id.desc())
            .limit(10)
            .all()
        )
        since = (self.clock() - timedelta(days=days)).date()
        daily = (
            self.db.query(AnalyticsDaily)
            .filter(AnalyticsDaily.webhook_id == webhook_id, AnalyticsDaily.date >= since)
            .order_by(AnalyticsDaily.date.desc())
            .all()
        )

        successful = counts.get("success", 0)
        failed = counts.get("failed", 0)
        attempted = successful + failed
        return {
            "webhook": {
                "id": webhook.webhook_id,
                "name": webhook.shortcut_name,
                "device_name": webhook.device.device_name,
                "created_at": webhook.created_at,
                "last_triggered": webhook.last_triggered,
                "is_active": webhook.is_active,
                "expires_at": webhook.expires_at,
                "max_uses": webhook.max_uses,
            },
            "stats": {
                "total_triggers": webhook.trigger_count,
                "successful_triggers": successful,
                "failed_triggers": failed,
                "unauthorized_attempts": counts.get("unauthorized", 0),
                "success_rate": round(successful / attempted * 100, 1) if attempted else 0.0,
                "avg_response_time_ms": int(round(avg_response)) if avg_response is not None else 0,
                "remaining_uses": max(webhook.max_uses - webhook.trigger_count, 0) if webhook.max_uses is not None else None,
            },
            "recent_executions": [
                {
                    "executed_at": e.executed_at,
                    "status": e.status,
                    "response_time_ms": e.response_time_ms,
                    "error_message": e.error_message,
                    "ip_address": e.ip_address,
                }
                for e in recent
            ],
            "daily_analytics": [
                {
                    "date": a.date,
                    "triggers": a.trigger_count,
                    "successes": a.success_count,
                    "failures": a.failure_count,
                    "unauthorized": a.unauthorized_count,
                    "avg_response_time_ms": a.avg_response_time_ms,
                }
                for a in daily
            ],
        }
