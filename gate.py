"""Access policy checks for a single webhook trigger.

A trigger walks the stages in GateStage order. The first failing check
ends the walk in REJECTED; nothing after it runs. Every rejection is
written to the audit log before the decision is returned.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Union
from sqlalchemy.orm import Session
from auth import ANONYMOUS, Caller, CredentialResolver
from clock import Clock, utcnow
from config import Settings
from crypto_utils import decrypt_secret, hmac_verify
from errors import Forbidden, GatewayError, Gone, NotFound, RateLimited, Unauthorized
from logging_config import logger
from models import Device, Shortcut, User
from recorder import ExecutionRecorder
from utils import get_client_ip, get_user_agent, normalize_headers

TRIGGER_PERMISSION = "webhook:trigger"


class GateStage(str, Enum):
    LOOKUP = "lookup"
    EXPIRY_CHECK = "expiry_check"
    USAGE_CHECK = "usage_check"
    IP_CHECK = "ip_check"
    SIGNATURE_CHECK = "signature_check"
    IDENTITY_RESOLVE = "identity_resolve"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    USAGE_EXCEEDED = "usage_exceeded"
    IP_DENIED = "ip_denied"
    SIGNATURE_REQUIRED = "signature_required"
    SIGNATURE_INVALID = "signature_invalid"


def rejection_error(reason: RejectionReason, webhook_id: str) -> GatewayError:
    if reason == RejectionReason.NOT_FOUND:
        return NotFound("Webhook not found", webhook_id=webhook_id)
    if reason == RejectionReason.EXPIRED:
        return Gone("Webhook has expired")
    if reason == RejectionReason.USAGE_EXCEEDED:
        return RateLimited("Webhook usage limit exceeded")
    if reason == RejectionReason.IP_DENIED:
        return Forbidden("Access denied from this IP address")
    if reason == RejectionReason.SIGNATURE_REQUIRED:
        return Unauthorized("Webhook signature required")
    return Unauthorized("Invalid webhook signature")


@dataclass
class GateDecision:
    webhook_id: str
    stage: GateStage
    webhook: Optional[Shortcut] = None
    caller: Caller = ANONYMOUS
    reason: Optional[RejectionReason] = None
    failed_stage: Optional[GateStage] = None
    client_ip: str = "unknown"
    user_agent: str = "unknown"

    @property
    def accepted(self) -> bool:
        return self.stage == GateStage.ACCEPTED

    def error(self) -> Optional[GatewayError]:
        if self.reason is None:
            return None
        return rejection_error(self.reason, self.webhook_id)


class WebhookGate:
    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        vault_key: bytes = Settings.DEVICE_SECRET_ENCRYPTION_KEY,
        resolver: Optional[CredentialResolver] = None,
        recorder: Optional[ExecutionRecorder] = None,
        signature_header: str = Settings.SIGNATURE_HEADER,
    ):
        self.db = db
        self.clock = clock
        self.vault_key = vault_key
        self.resolver = resolver or CredentialResolver(db, clock)
        self.recorder = recorder or ExecutionRecorder(db, clock)
        self.signature_header = signature_header.lower()

    def find_webhook(self, webhook_id: str) -> Optional[Shortcut]:
        """Active webhook whose device and owner are active too."""
        return (
            self.db.query(Shortcut)
            .join(Device, Shortcut.device_id == Device.id)
            .join(User, Shortcut.user_id == User.id)
            .filter(
                Shortcut.webhook_id == webhook_id,
                Shortcut.is_active.is_(True),
                Device.is_active.is_(True),
                User.is_active.is_(True),
            )
            .first()
        )

    def evaluate(
        self,
        webhook_id: str,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
    ) -> GateDecision:
        headers = normalize_headers(headers)
        decision = GateDecision(
            webhook_id=webhook_id,
            stage=GateStage.LOOKUP,
            client_ip=get_client_ip(headers),
            user_agent=get_user_agent(headers),
        )

        webhook = self.find_webhook(webhook_id)
        if webhook is None:
            return self._reject(decision, RejectionReason.NOT_FOUND)
        decision.webhook = webhook

        decision.stage = GateStage.EXPIRY_CHECK
        if webhook.expires_at and webhook.expires_at < self.clock():
            return self._reject(decision, RejectionReason.EXPIRED)

        decision.stage = GateStage.USAGE_CHECK
        if webhook.max_uses is not None and webhook.trigger_count >= webhook.max_uses:
            return self._reject(decision, RejectionReason.USAGE_EXCEEDED)

        decision.stage = GateStage.IP_CHECK
        allowed_ips = self._allowed_ips(webhook)
        if allowed_ips and decision.client_ip not in allowed_ips:
            return self._reject(decision, RejectionReason.IP_DENIED)

        decision.stage = GateStage.SIGNATURE_CHECK
        if webhook.webhook_secret_encrypted:
            signature = headers.get(self.signature_header)
            if not signature:
                return self._reject(decision, RejectionReason.SIGNATURE_REQUIRED)
            secret = decrypt_secret(webhook.webhook_secret_encrypted, self.vault_key)
            if not hmac_verify(raw_body, signature, secret):
                return self._reject(decision, RejectionReason.SIGNATURE_INVALID)

        decision.stage = GateStage.IDENTITY_RESOLVE
        decision.caller = self._resolve_caller(headers, query_params, decision.client_ip)

        decision.stage = GateStage.ACCEPTED
        return decision

    def _resolve_caller(self, headers, query_params, client_ip) -> Caller:
        # Identity is optional for triggers: a broken credential means anonymous
        try:
            return self.resolver.resolve(headers, query_params, TRIGGER_PERMISSION, client_ip)
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Optional credential resolution failed: {e}")
            return ANONYMOUS

    @staticmethod
    def _allowed_ips(webhook: Shortcut) -> list:
        allowed = webhook.allowed_ips
        if isinstance(allowed, str):
            allowed = json.loads(allowed) if allowed.strip() else []
        return list(allowed or [])

    def _reject(self, decision: GateDecision, reason: RejectionReason) -> GateDecision:
        decision.failed_stage = decision.stage
        decision.stage = GateStage.REJECTED
        decision.reason = reason
        logger.info(f"Webhook trigger rejected: {reason.value} at {decision.failed_stage.value} from {decision.client_ip}")

        if decision.webhook is not None:
            try:
                self.recorder.record_unauthorized(decision.webhook, reason.value, decision.client_ip, decision.user_agent)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to record rejected trigger: {e}")

        self.recorder.audit(
            None,
            "webhook_trigger_unauthorized",
            "webhook",
            decision.webhook_id,
            {"reason": reason.value, "stage": decision.failed_stage.value, "ip": decision.client_ip},
            decision.client_ip,
            decision.user_agent,
        )
        return decision
