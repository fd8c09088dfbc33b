"""Tests for the per-trigger access checks."""

from datetime import timedelta

import pytest

from auth import ANONYMOUS, CredentialResolver, Identity
from crypto_utils import hmac_sign
from errors import Forbidden, Gone, NotFound, RateLimited, Unauthorized
from gate import GateStage, RejectionReason, WebhookGate
from models import AnalyticsDaily, AuditLog, WebhookExecution


@pytest.fixture
def gate(db, clock, vault_key):
    return WebhookGate(db, clock, vault_key)


class TestLookup:
    """Finding the webhook."""

    def test_unknown_webhook(self, gate, db):
        decision = gate.evaluate("f" * 64, b"", {})
        assert decision.stage == GateStage.REJECTED
        assert decision.reason == RejectionReason.NOT_FOUND
        assert decision.failed_stage == GateStage.LOOKUP
        assert isinstance(decision.error(), NotFound)
        # Nothing to attach an execution to, but the attempt is still audited
        assert db.query(WebhookExecution).count() == 0
        assert db.query(AuditLog).filter(AuditLog.action == "webhook_trigger_unauthorized").count() == 1

    def test_inactive_device_hides_webhook(self, gate, make_webhook):
        webhook = make_webhook(device_active=False)
        assert gate.evaluate(webhook.webhook_id, b"", {}).reason == RejectionReason.NOT_FOUND

    def test_inactive_webhook(self, gate, db, make_webhook):
        webhook = make_webhook()
        webhook.is_active = False
        db.commit()
        assert gate.evaluate(webhook.webhook_id, b"", {}).reason == RejectionReason.NOT_FOUND

    def test_inactive_owner(self, gate, db, make_user, make_webhook):
        user = make_user()
        webhook = make_webhook(user=user)
        user.is_active = False
        db.commit()
        assert gate.evaluate(webhook.webhook_id, b"", {}).reason == RejectionReason.NOT_FOUND

    def test_accepts_open_webhook(self, gate, make_webhook):
        webhook = make_webhook()
        decision = gate.evaluate(webhook.webhook_id, b"", {})
        assert decision.accepted
        assert decision.webhook.id == webhook.id
        assert decision.caller is ANONYMOUS
        assert decision.error() is None


class TestPolicies:
    """Expiry, usage cap and IP allow-list."""

    def test_expired(self, gate, db, clock, make_webhook):
        webhook = make_webhook(expires_at=clock() - timedelta(seconds=1))
        decision = gate.evaluate(webhook.webhook_id, b"", {})
        assert decision.reason == RejectionReason.EXPIRED
        assert isinstance(decision.error(), Gone)
        assert decision.error().status_code == 410

    def test_not_yet_expired(self, gate, clock, make_webhook):
        webhook = make_webhook(expires_at=clock() + timedelta(days=1))
        assert gate.evaluate(webhook.webhook_id, b"", {}).accepted

    def test_usage_exhausted(self, gate, db, make_webhook):
        webhook = make_webhook(max_uses=2)
        webhook.trigger_count = 2
        db.commit()
        decision = gate.evaluate(webhook.webhook_id, b"", {})
        assert decision.reason == RejectionReason.USAGE_EXCEEDED
        assert decision.failed_stage == GateStage.USAGE_CHECK
        assert isinstance(decision.error(), RateLimited)
        assert decision.error().status_code == 429

    def test_ip_denied(self, gate, db, make_webhook):
        webhook = make_webhook(allowed_ips=["203.0.113.5"])
        decision = gate.evaluate(webhook.webhook_id, b"", {"X-Forwarded-For": "198.51.100.1"})

        assert decision.reason == RejectionReason.IP_DENIED
        assert isinstance(decision.error(), Forbidden)
        audits = db.query(AuditLog).all()
        assert len(audits) == 1
        assert audits[0].action == "webhook_trigger_unauthorized"
        assert audits[0].details["reason"] == "ip_denied"
        assert audits[0].ip_address == "198.51.100.1"

    def test_ip_allowed_uses_first_forwarded_address(self, gate, make_webhook):
        webhook = make_webhook(allowed_ips=["203.0.113.5"])
        decision = gate.evaluate(webhook.webhook_id, b"", {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        assert decision.accepted

    def test_rejection_records_unauthorized_execution(self, gate, db, clock, make_webhook):
        webhook = make_webhook(allowed_ips=["203.0.113.5"])
        gate.evaluate(webhook.webhook_id, b"", {"X-Real-IP": "198.51.100.1"})

        execution = db.query(WebhookExecution).one()
        assert execution.status == "unauthorized"
        assert execution.error_message == "ip_denied"
        analytics = db.query(AnalyticsDaily).one()
        assert analytics.unauthorized_count == 1
        assert analytics.trigger_count == 0
        db.refresh(webhook)
        assert webhook.trigger_count == 0

    def test_checks_run_in_order(self, gate, clock, make_webhook):
        # Expired and IP-restricted: expiry is checked first
        webhook = make_webhook(expires_at=clock() - timedelta(days=1), allowed_ips=["203.0.113.5"])
        decision = gate.evaluate(webhook.webhook_id, b"", {"X-Forwarded-For": "198.51.100.1"})
        assert decision.reason == RejectionReason.EXPIRED


class TestSignature:
    """HMAC signature verification."""

    def test_missing_signature(self, gate, make_webhook):
        webhook = make_webhook(webhook_secret="s3cret")
        decision = gate.evaluate(webhook.webhook_id, b'{"a":1}', {})
        assert decision.reason == RejectionReason.SIGNATURE_REQUIRED
        assert isinstance(decision.error(), Unauthorized)

    def test_valid_signature(self, gate, make_webhook):
        webhook = make_webhook(webhook_secret="s3cret")
        body = b'{"a":1}'
        decision = gate.evaluate(webhook.webhook_id, body, {"X-Webhook-Signature": hmac_sign(body, "s3cret")})
        assert decision.accepted

    def test_signature_over_different_body(self, gate, make_webhook):
        webhook = make_webhook(webhook_secret="s3cret")
        signature = hmac_sign(b'{"a":1}', "s3cret")
        decision = gate.evaluate(webhook.webhook_id, b'{"a":2}', {"X-Webhook-Signature": signature})
        assert decision.reason == RejectionReason.SIGNATURE_INVALID
        assert decision.error().status_code == 401

    def test_malformed_signature(self, gate, make_webhook):
        webhook = make_webhook(webhook_secret="s3cret")
        decision = gate.evaluate(webhook.webhook_id, b"", {"X-Webhook-Signature": "zz-not-hex"})
        assert decision.reason == RejectionReason.SIGNATURE_INVALID


class TestIdentity:
    """Optional caller resolution."""

    def test_api_key_caller(self, gate, db, clock, make_user, make_webhook):
        user = make_user()
        webhook = make_webhook(user=user)
        _, raw_key = CredentialResolver(db, clock).create_api_key(user.id)

        decision = gate.evaluate(webhook.webhook_id, b"", {"X-API-Key": raw_key})
        assert decision.accepted
        assert isinstance(decision.caller, Identity)
        assert decision.caller.user_id == user.id

    def test_bad_credential_is_anonymous(self, gate, make_webhook):
        webhook = make_webhook()
        decision = gate.evaluate(webhook.webhook_id, b"", {"Authorization": "Bearer not-a-session"})
        assert decision.accepted
        assert decision.caller is ANONYMOUS
