"""
Pytest configuration and shared fixtures for ORTHRUS tests.

This module provides common test fixtures for:
- A controllable clock shared by every component
- An in-memory credential carrier (stands in for cookies)
- SQLite-backed account and 2FA profile stores
- A fully wired LoginInterceptor
"""
import pytest
from typing import Dict, Optional

import pyotp

from orthrus.config import TwoFactorConfig
from orthrus.database.engine import create_db_engine
from orthrus.database.auth_db import AuthDB, hash_password
from orthrus.database.profile_db import SecurityProfileDB
from orthrus.store.ephemeral import EphemeralStore
from orthrus.auth.carrier import CredentialCarrier
from orthrus.auth.hashing import BcryptHasher
from orthrus.auth.lockout import LockoutTracker
from orthrus.auth.models import RequestContext, TwoFactorMethod
from orthrus.auth.notifications import LoggingNotifier
from orthrus.api.deps import build_interceptor


START_TIME = 1_700_000_000.0


# ============================================
# Time and Transport Fixtures
# ============================================

class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DictCarrier(CredentialCarrier):
    """
    Carrier that keeps credentials in a dict, like a browser cookie jar.

    issued keeps the keyword arguments of every set() call so tests can
    assert on the security flags.
    """

    def __init__(self, jar: Optional[Dict[str, str]] = None):
        self.jar = dict(jar or {})
        self.issued = {}

    def get(self, name):
        return self.jar.get(name)

    def set(self, name, value, max_age, secure=True, httponly=True, samesite="lax"):
        self.jar[name] = value
        self.issued[name] = {
            "value": value,
            "max_age": max_age,
            "secure": secure,
            "httponly": httponly,
            "samesite": samesite,
        }

    def clear(self, name):
        self.jar.pop(name, None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def carrier():
    return DictCarrier()


@pytest.fixture
def ctx(carrier):
    """Secure request context sharing one cookie jar across calls."""
    return RequestContext(carrier=carrier, is_secure=True, ip_address="203.0.113.7", user_agent="pytest")


# ============================================
# Storage Fixtures
# ============================================

@pytest.fixture
def config():
    """Fast bcrypt and default policy (2FA optional)."""
    return TwoFactorConfig({"hash_rounds": 4})


@pytest.fixture
def db_engine(tmp_path):
    return create_db_engine(f"sqlite:///{tmp_path}/orthrus_test.db")


@pytest.fixture
def accounts(db_engine, clock):
    db = AuthDB(engine=db_engine, clock=clock)
    db.init_schema()
    return db


@pytest.fixture
def profiles(db_engine, clock, accounts):
    db = SecurityProfileDB(engine=db_engine, clock=clock)
    db.init_schema()
    return db


@pytest.fixture
def store(clock):
    return EphemeralStore(clock=clock)


@pytest.fixture
def hasher(config):
    return BcryptHasher(config.hash_rounds)


@pytest.fixture
def lockout(store, config):
    return LockoutTracker(store, config)


@pytest.fixture
def notifier():
    return LoggingNotifier(keep=True)


@pytest.fixture
def interceptor(store, profiles, accounts, config, notifier, clock):
    return build_interceptor(store, profiles, accounts, config, notifier=notifier, clock=clock)


# ============================================
# User Fixtures
# ============================================

@pytest.fixture
def make_user(accounts):
    """Factory creating a user and returning its dict."""
    counter = {"n": 0}

    def _make(email: Optional[str] = None, role: str = "user", password: str = "correct horse"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user_id = accounts.create_user(
            email=email,
            password_hash=hash_password(password, rounds=4),
            display_name=f"User {counter['n']}",
            role=role,
        )
        return accounts.get_user_by_id(user_id)

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def totp_user(make_user, profiles):
    """User with an authenticator configured; the secret is under "totp_secret"."""
    created = make_user()
    secret = pyotp.random_base32()
    profiles.enable(created["user_id"], TwoFactorMethod.TOTP, secret)
    created["totp_secret"] = secret
    return created


@pytest.fixture
def email_user(make_user, profiles):
    created = make_user()
    profiles.enable(created["user_id"], TwoFactorMethod.EMAIL)
    return created


def last_emailed_code(notifier: LoggingNotifier) -> str:
    """Extract the numeric code from the most recent verification e-mail."""
    for message in reversed(notifier.outbox):
        for line in message["text"].splitlines():
            if line.startswith("Your verification code is:"):
                return line.split(":", 1)[1].strip()
    raise AssertionError("No verification e-mail was sent")


@pytest.fixture
def emailed_code(notifier):
    """Callable returning the code from the most recent verification e-mail."""
    return lambda: last_emailed_code(notifier)
