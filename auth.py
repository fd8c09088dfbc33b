from dataclasses import dataclass, field
from datetime import timedelta
from secrets import token_hex
from typing import Mapping, NamedTuple, Optional, Tuple, Union
from sqlalchemy.orm import Session
from clock import Clock, utcnow
from config import Settings
from crypto_utils import hash_password, verify_password, password_needs_rehash, sha256_hex
from errors import Forbidden, Unauthorized, ValidationError
from logging_config import logger
from models import User, UserAPIKey, UserSession
from utils import normalize_headers

API_KEY_PREFIX = "wc_"
API_KEY_DISPLAY_LENGTH = 11  # "wc_" + first 8 hex chars
DEFAULT_API_KEY_PERMISSIONS = ["webhook:trigger"]


@dataclass(frozen=True)
class Identity:
    """An authenticated caller."""
    user_id: str
    email: str
    auth_type: str  # "session" or "api_key"
    api_key_id: Optional[str] = None
    permissions: Tuple[str, ...] = field(default_factory=tuple)
    rate_limit_override: Optional[int] = None


class Anonymous:
    """A caller with no (valid) credentials. Use the ANONYMOUS singleton."""

    def __repr__(self):
        return "ANONYMOUS"


ANONYMOUS = Anonymous()

Caller = Union[Identity, Anonymous]


class Credential(NamedTuple):
    kind: str  # "api_key" or "session"
    value: str


def extract_credentials(headers: Mapping[str, str], query_params: Optional[Mapping[str, str]] = None) -> Optional[Credential]:
    """Pick the single credential a request carries.

    X-API-Key header first, then a Bearer session token, then an api_key
    query parameter. Anything after the first match is ignored.
    """
    headers = normalize_headers(headers)
    api_key = headers.get("x-api-key")
    if api_key:
        return Credential("api_key", api_key.strip())

    authorization = headers.get("authorization", "")
    if authorization[:7].lower() == "bearer " and authorization[7:].strip():
        return Credential("session", authorization[7:].strip())

    if query_params:
        query_key = query_params.get("api_key")
        if query_key:
            return Credential("api_key", query_key.strip())
    return None


def has_permission(granted, required: Optional[str]) -> bool:
    if not required:
        return True
    granted = set(granted or [])
    if required in granted or "*" in granted:
        return True
    resource = required.split(":", 1)[0]
    return f"{resource}:*" in granted


class CredentialResolver:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # ---------- resolution ----------

    def resolve(
        self,
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
        required_permission: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> Caller:
        """Resolve the caller, or ANONYMOUS if there is no usable credential."""
        credential = extract_credentials(headers, query_params)
        if credential is None:
            return ANONYMOUS
        if credential.kind == "session":
            identity = self.validate_session(credential.value)
        else:
            identity = self.validate_api_key(credential.value, required_permission, client_ip)
        return identity or ANONYMOUS

    def require(
        self,
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
        required_permission: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> Identity:
        credential = extract_credentials(headers, query_params)
        if credential is None:
            raise Unauthorized("Authentication required")
        if credential.kind == "session":
            identity = self.validate_session(credential.value)
            if identity is None:
                raise Unauthorized("Invalid or expired session")
            return identity
        identity = self.validate_api_key(credential.value, required_permission, client_ip)
        if identity is None:
            if required_permission:
                raise Forbidden("Invalid API key or insufficient permissions")
            raise Forbidden("Invalid API key")
        return identity

    def validate_session(self, token: str) -> Optional[Identity]:
        session = self.db.query(UserSession).filter(
            UserSession.token_hash == sha256_hex(token),
            UserSession.is_active.is_(True),
        ).first()
        if not session:
            return None

        if session.expires_at < self.clock():
            # Lazy expiry: deactivate on first use after the deadline
            session.is_active = False
            self.db.commit()
            return None

        user = self.db.query(User).filter(User.id == session.user_id).first()
        if not user or not user.is_active:
            return None
        return Identity(user_id=user.id, email=user.email, auth_type="session")

    def validate_api_key(
        self, api_key: str, required_permission: Optional[str] = None, client_ip: Optional[str] = None
    ) -> Optional[Identity]:
        key = self.db.query(UserAPIKey).filter(
            UserAPIKey.key_hash == sha256_hex(api_key),
            UserAPIKey.is_active.is_(True),
        ).first()
        if not key:
            return None

        now = self.clock()
        if key.expires_at and key.expires_at < now:
            key.is_active = False
            self.db.commit()
            return None

        user = self.db.query(User).filter(User.id == key.user_id).first()
        if not user or not user.is_active:
            return None

        if not has_permission(key.permissions, required_permission):
            logger.info(f"API key {key.key_prefix} lacks permission {required_permission}")
            return None

        key.last_used = now
        key.last_used_ip = client_ip
        self.db.commit()

        return Identity(
            user_id=user.id,
            email=user.email,
            auth_type="api_key",
            api_key_id=key.id,
            permissions=tuple(key.permissions or ()),
            rate_limit_override=key.rate_limit_override,
        )

    # ---------- accounts ----------

    def create_user(self, email: str, password: str, username: Optional[str] = None, is_verified: bool = False) -> User:
        if self.db.query(User).filter(User.email == email).first():
            raise ValidationError("User with this email already exists")
        if username and self.db.query(User).filter(User.username == username).first():
            raise ValidationError("Username already taken")

        user = User(email=email, username=username, password_hash=hash_password(password), is_verified=is_verified)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def authenticate_user(
        self, email: str, password: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Tuple[Identity, str]:
        """Check email/password and open a session. Returns the raw token once."""
        user = self.db.query(User).filter(User.email == email).first()
        if not user or not user.is_active or not verify_password(password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        if not user.is_verified:
            raise Forbidden("Email not verified")

        if password_needs_rehash(user.password_hash):
            user.password_hash = hash_password(password)
        user.last_login = self.clock()

        token = self.create_session(user, ip_address, user_agent)
        return Identity(user_id=user.id, email=user.email, auth_type="session"), token

    def create_session(self, user: User, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> str:
        token = token_hex(32)
        self.db.add(UserSession(
            user_id=user.id,
            token_hash=sha256_hex(token),
            expires_at=self.clock() + timedelta(hours=Settings.SESSION_EXPIRE_HOURS),
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        self.db.commit()
        return token

    def logout(self, token: str) -> bool:
        updated = self.db.query(UserSession).filter(
            UserSession.token_hash == sha256_hex(token),
            UserSession.is_active.is_(True),
        ).update({UserSession.is_active: False}, synchronize_session=False)
        self.db.commit()
        return bool(updated)

    def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        user = self.db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()
        if not user or not verify_password(old_password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        user.password_hash = hash_password(new_password)
        self.db.query(UserSession).filter(UserSession.user_id == user_id).update(
            {UserSession.is_active: False}, synchronize_session=False
        )
        self.db.commit()

    def create_api_key(
        self,
        user_id: str,
        name: Optional[str] = None,
        permissions=None,
        expires_at=None,
        rate_limit_override: Optional[int] = None,
    ) -> Tuple[UserAPIKey, str]:
        raw_key = f"{API_KEY_PREFIX}{token_hex(32)}"
        key = UserAPIKey(
            user_id=user_id,
            key_hash=sha256_hex(raw_key),
            key_prefix=raw_key[:API_KEY_DISPLAY_LENGTH],
            name=name,
            permissions=list(permissions or DEFAULT_API_KEY_PERMISSIONS),
            expires_at=expires_at,
            rate_limit_override=rate_limit_override,
        )
        self.db.add(key)
        self.db.commit()
        self.db.refresh(key)
        # The raw key is never stored; this is the only time it is available
        return key, raw_key

    def revoke_api_key(self, user_id: str, key_id: str) -> bool:
        updated = self.db.query(UserAPIKey).filter(
            UserAPIKey.id == key_id,
            UserAPIKey.user_id == user_id,
        ).update({UserAPIKey.is_active: False}, synchronize_session=False)
        self.db.commit()
        return bool(updated)
