"""Tests for credential extraction and resolution."""

import hashlib
from datetime import timedelta

import pytest

from auth import ANONYMOUS, CredentialResolver, Identity, extract_credentials, has_permission
from crypto_utils import verify_password
from errors import Forbidden, Unauthorized, ValidationError
from models import UserAPIKey, UserSession


@pytest.fixture
def resolver(db, clock):
    return CredentialResolver(db, clock)


class TestExtractCredentials:
    """Credential precedence."""

    def test_none(self):
        assert extract_credentials({}, {}) is None

    def test_api_key_header_wins_over_bearer(self):
        credential = extract_credentials({"X-API-Key": "wc_abc", "Authorization": "Bearer tok"})
        assert credential.kind == "api_key"
        assert credential.value == "wc_abc"

    def test_bearer_wins_over_query(self):
        credential = extract_credentials({"authorization": "Bearer tok"}, {"api_key": "wc_abc"})
        assert credential.kind == "session"
        assert credential.value == "tok"

    def test_query_param(self):
        credential = extract_credentials({}, {"api_key": "wc_abc"})
        assert credential == ("api_key", "wc_abc")

    def test_non_bearer_authorization_ignored(self):
        assert extract_credentials({"authorization": "Basic dXNlcjpwYXNz"}) is None


class TestPermissions:
    """Permission matching."""

    def test_exact(self):
        assert has_permission(["webhook:trigger"], "webhook:trigger")
        assert not has_permission(["webhook:read"], "webhook:trigger")

    def test_global_wildcard(self):
        assert has_permission(["*"], "keys:manage")

    def test_resource_wildcard(self):
        assert has_permission(["webhook:*"], "webhook:manage")
        assert not has_permission(["webhook:*"], "keys:manage")

    def test_no_requirement(self):
        assert has_permission([], None)


class TestSessions:
    """Session login, validation and expiry."""

    def test_login_and_resolve(self, resolver, make_user):
        user = make_user(email="alice@webcuts.app", password="pw-alice")
        identity, token = resolver.authenticate_user("alice@webcuts.app", "pw-alice", "10.0.0.1", "pytest")

        assert identity.user_id == user.id
        assert identity.auth_type == "session"
        caller = resolver.resolve({"Authorization": f"Bearer {token}"})
        assert isinstance(caller, Identity)
        assert caller.email == "alice@webcuts.app"

    def test_token_stored_hashed(self, resolver, db, make_user):
        make_user(email="bob@webcuts.app", password="pw")
        _, token = resolver.authenticate_user("bob@webcuts.app", "pw")
        session = db.query(UserSession).one()
        assert session.token_hash == hashlib.sha256(token.encode()).hexdigest()
        assert session.token_hash != token

    def test_wrong_password(self, resolver, make_user):
        make_user(email="carol@webcuts.app", password="right")
        with pytest.raises(Unauthorized):
            resolver.authenticate_user("carol@webcuts.app", "wrong")
        with pytest.raises(Unauthorized):
            resolver.authenticate_user("nobody@webcuts.app", "right")

    def test_unverified_user(self, resolver, make_user):
        make_user(email="dave@webcuts.app", password="pw", is_verified=False)
        with pytest.raises(Forbidden):
            resolver.authenticate_user("dave@webcuts.app", "pw")

    def test_expired_session_is_deactivated(self, resolver, db, clock, make_user):
        make_user(email="erin@webcuts.app", password="pw")
        _, token = resolver.authenticate_user("erin@webcuts.app", "pw")

        clock.advance(hours=25)
        assert resolver.resolve({"Authorization": f"Bearer {token}"}) is ANONYMOUS
        db.expire_all()
        assert db.query(UserSession).one().is_active is False

    def test_inactive_user_session_rejected(self, resolver, db, make_user):
        user = make_user(email="frank@webcuts.app", password="pw")
        _, token = resolver.authenticate_user("frank@webcuts.app", "pw")
        user.is_active = False
        db.commit()
        assert resolver.validate_session(token) is None

    def test_logout(self, resolver, make_user):
        make_user(email="gina@webcuts.app", password="pw")
        _, token = resolver.authenticate_user("gina@webcuts.app", "pw")
        assert resolver.logout(token) is True
        assert resolver.validate_session(token) is None
        assert resolver.logout(token) is False

    def test_legacy_hash_upgraded_on_login(self, resolver, db, make_user):
        salt = b"0123456789abcdef"
        derived = hashlib.pbkdf2_hmac("sha256", b"old-pw", salt, 100_000)
        user = make_user(email="hank@webcuts.app", password_hash=f"pbkdf2:{salt.hex()}:{derived.hex()}")

        resolver.authenticate_user("hank@webcuts.app", "old-pw")
        db.refresh(user)
        assert user.password_hash.startswith("$pbkdf2-sha256$")
        assert int(user.password_hash.split("$")[2]) >= 100_000
        assert verify_password("old-pw", user.password_hash)
        assert user.last_login is not None

    def test_change_password_ends_sessions(self, resolver, make_user):
        user = make_user(email="ivy@webcuts.app", password="first")
        _, token = resolver.authenticate_user("ivy@webcuts.app", "first")

        resolver.change_password(user.id, "first", "second")
        assert resolver.validate_session(token) is None
        with pytest.raises(Unauthorized):
            resolver.change_password(user.id, "first", "third")

    def test_create_user_rejects_duplicates(self, resolver):
        resolver.create_user("jack@webcuts.app", "pw", username="jack")
        with pytest.raises(ValidationError):
            resolver.create_user("jack@webcuts.app", "pw")
        with pytest.raises(ValidationError):
            resolver.create_user("other@webcuts.app", "pw", username="jack")


class TestAPIKeys:
    """API key creation and validation."""

    def test_key_format_and_storage(self, resolver, db, make_user):
        user = make_user()
        key, raw_key = resolver.create_api_key(user.id, "ci")

        assert raw_key.startswith("wc_")
        assert len(raw_key) == 3 + 64
        assert key.key_prefix == raw_key[:11]
        stored = db.query(UserAPIKey).one()
        assert stored.key_hash == hashlib.sha256(raw_key.encode()).hexdigest()
        assert stored.permissions == ["webhook:trigger"]

    def test_resolve_with_permission(self, resolver, db, make_user):
        user = make_user()
        key, raw_key = resolver.create_api_key(user.id, permissions=["webhook:trigger"], rate_limit_override=5)

        caller = resolver.resolve({"X-API-Key": raw_key}, required_permission="webhook:trigger", client_ip="1.2.3.4")
        assert caller.auth_type == "api_key"
        assert caller.api_key_id == key.id
        assert caller.rate_limit_override == 5
        db.refresh(key)
        assert key.last_used is not None
        assert key.last_used_ip == "1.2.3.4"

    def test_missing_permission_is_anonymous(self, resolver, make_user):
        user = make_user()
        _, raw_key = resolver.create_api_key(user.id, permissions=["webhook:read"])
        assert resolver.resolve({"X-API-Key": raw_key}, required_permission="webhook:trigger") is ANONYMOUS

    def test_expired_key_deactivated(self, resolver, db, clock, make_user):
        user = make_user()
        key, raw_key = resolver.create_api_key(user.id, expires_at=clock() + timedelta(minutes=5))

        clock.advance(minutes=10)
        assert resolver.validate_api_key(raw_key) is None
        db.refresh(key)
        assert key.is_active is False

    def test_revoked_key(self, resolver, make_user):
        user = make_user()
        key, raw_key = resolver.create_api_key(user.id)
        assert resolver.revoke_api_key(user.id, key.id) is True
        assert resolver.validate_api_key(raw_key) is None

    def test_unknown_key_is_anonymous(self, resolver):
        assert resolver.resolve({}, {"api_key": "wc_" + "0" * 64}) is ANONYMOUS


class TestRequire:
    """Mandatory authentication."""

    def test_missing_credentials(self, resolver):
        with pytest.raises(Unauthorized):
            resolver.require({})

    def test_invalid_session(self, resolver):
        with pytest.raises(Unauthorized):
            resolver.require({"Authorization": "Bearer nope"})

    def test_insufficient_scope(self, resolver, make_user):
        user = make_user()
        _, raw_key = resolver.create_api_key(user.id, permissions=["webhook:trigger"])
        with pytest.raises(Forbidden):
            resolver.require({"X-API-Key": raw_key}, required_permission="keys:manage")

    def test_wildcard_key_passes(self, resolver, make_user):
        user = make_user()
        _, raw_key = resolver.create_api_key(user.id, permissions=["*"])
        identity = resolver.require({"X-API-Key": raw_key}, required_permission="keys:manage")
        assert identity.user_id == user.id
