"""Pytest configuration and shared fixtures."""

import base64
import os
from datetime import datetime, timedelta

# Settings are read at import time, so the environment must be in place first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DEVICE_SECRET_ENCRYPTION_KEY", base64.b64encode(b"k" * 32).decode())
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "100000")
os.environ.setdefault("ROTATE_LEGACY_WEBHOOKS_ON_STARTUP", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from crypto_utils import RandomWebhookIdStrategy, encrypt_secret, hash_password, random_id, sha256_hex
from database import init_db
from dispatcher import Dispatcher, DispatchResult
from models import Device, Shortcut, User
from orchestrator import TriggerOrchestrator


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingDispatcher(Dispatcher):
    """Dispatcher double that remembers every request it was given."""

    def __init__(self):
        self.calls = []
        self.result = None
        self.error = None

    def send(self, request):
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return DispatchResult(success=True, notification_id=f"notif-{len(self.calls)}", external_id="ext-1")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 14, 12, 0, 30))


@pytest.fixture
def vault_key():
    return Settings.DEVICE_SECRET_ENCRYPTION_KEY


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(db, dispatcher, clock, vault_key):
    return TriggerOrchestrator(db, dispatcher, clock=clock, vault_key=vault_key)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}
    hashes = {}

    def factory(email=None, password="correct horse", is_active=True, is_verified=True, password_hash=None):
        counter["n"] += 1
        if password_hash is None:
            # Hashing is deliberately slow; reuse one hash per password
            if password not in hashes:
                hashes[password] = hash_password(password)
            password_hash = hashes[password]
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash=password_hash,
            is_active=is_active,
            is_verified=is_verified,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def make_webhook(db, make_user, vault_key):
    def factory(
        user=None,
        webhook_secret=None,
        expires_at=None,
        max_uses=None,
        allowed_ips=None,
        webhook_id=None,
        id_scheme="random",
        device_secret=None,
        device_active=True,
        push_environment="sandbox",
    ):
        user = user or make_user()
        device_secret = device_secret or random_id(32)
        device = Device(
            user_id=user.id,
            device_secret_encrypted=encrypt_secret(device_secret, vault_key),
            device_secret_hash=sha256_hex(device_secret),
            device_name="Test iPhone",
            push_environment=push_environment,
            is_active=device_active,
        )
        db.add(device)
        db.flush()
        shortcut = Shortcut(
            device_id=device.id,
            user_id=user.id,
            shortcut_id=f"shortcut-{random_id(4)}",
            shortcut_name="Open Garage",
            webhook_id=webhook_id or RandomWebhookIdStrategy().generate(),
            id_scheme=id_scheme,
            webhook_secret_encrypted=encrypt_secret(webhook_secret, vault_key) if webhook_secret else None,
            expires_at=expires_at,
            max_uses=max_uses,
            allowed_ips=allowed_ips,
        )
        db.add(shortcut)
        db.commit()
        db.refresh(shortcut)
        return shortcut

    return factory
