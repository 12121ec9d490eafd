"""
Tests for security features.

Covers:
- Security headers middleware
- Logout session invalidation
- Auth rate limiting
- Account eligibility and session handling in AuthDB
"""
import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from orthrus.api.main import app
from orthrus.api.deps import (
    AuthRateLimiter,
    check_login_rate_limit,
    get_auth_rate_limiter,
    get_current_user,
    get_db,
    get_interceptor,
)
from orthrus.auth.interceptor import CHALLENGE_COOKIE
from orthrus.database.auth_db import hash_password, verify_password
from orthrus.store.ephemeral import EphemeralStore


# No-op rate limit dependency for tests
async def no_rate_limit():
    """No-op rate limit check for tests."""
    pass


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def mock_db():
    """Create a mock AuthDB instance."""
    mock = MagicMock()
    mock.validate_session.return_value = {
        "user_id": "test-user-id",
        "email": "test@example.com",
        "display_name": None,
        "role": "user",
    }
    mock.check_eligibility.return_value = None
    return mock


@pytest.fixture
def authenticated_user():
    """Return a mock authenticated user dict."""
    return {
        "user_id": "test-user-id",
        "email": "test@example.com",
        "role": "user",
        "_session_token": "test-token-123",
    }


@pytest.fixture
def client_with_mocks(mock_db, authenticated_user):
    """Create test client with mocked dependencies."""
    mock_interceptor = MagicMock()

    # Override dependencies
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_current_user] = lambda: authenticated_user
    app.dependency_overrides[get_interceptor] = lambda: mock_interceptor

    client = TestClient(app, base_url="https://testserver")
    yield client, mock_db, mock_interceptor

    # Clean up overrides
    app.dependency_overrides.clear()


# ============================================
# Security Headers Tests
# ============================================

class TestSecurityHeaders:
    """Test security headers middleware."""

    def test_security_headers_present(self):
        """Test that all security headers are present in response."""
        client = TestClient(app)
        response = client.get("/health/live")

        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("Referrer-Policy") == "strict-origin-when-cross-origin"
        assert response.headers.get("Cache-Control") == "no-store"
        assert "default-src 'none'" in response.headers.get("Content-Security-Policy", "")

    def test_process_time_header(self):
        """Test that X-Process-Time-Ms header is present."""
        client = TestClient(app)
        response = client.get("/health/live")

        assert "X-Process-Time-Ms" in response.headers
        assert float(response.headers["X-Process-Time-Ms"]) >= 0

    def test_request_id_is_echoed(self):
        client = TestClient(app)
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


# ============================================
# Session Invalidation Tests
# ============================================

class TestLogoutInvalidation:
    """Test logout properly invalidates sessions."""

    def test_logout_invalidates_session(self, client_with_mocks):
        """Test that logout calls invalidate_session."""
        client, mock_db, mock_interceptor = client_with_mocks

        response = client.post(
            "/auth/logout",
            headers={"Authorization": "Bearer test-token-123"}
        )

        assert response.status_code == 204
        mock_db.invalidate_session.assert_called_once_with("test-token-123")
        mock_interceptor.clear_challenge.assert_not_called()

    def test_logout_clears_pending_challenge(self, client_with_mocks):
        """A half-finished 2FA login is abandoned on logout."""
        client, mock_db, mock_interceptor = client_with_mocks
        client.cookies.set(CHALLENGE_COOKIE, "pending-token")

        response = client.post(
            "/auth/logout",
            headers={"Authorization": "Bearer test-token-123"}
        )

        assert response.status_code == 204
        assert mock_interceptor.clear_challenge.call_args[0][0] == "pending-token"

    def test_logout_all(self, client_with_mocks):
        client, mock_db, _ = client_with_mocks
        mock_db.invalidate_all_sessions.return_value = 3

        response = client.post("/auth/logout/all", headers={"Authorization": "Bearer test-token-123"})

        assert response.status_code == 204
        mock_db.invalidate_all_sessions.assert_called_once_with("test-user-id")


# ============================================
# Login Tests
# ============================================

class TestLoginRejection:
    """Password step failures."""

    def test_unknown_user(self, client_with_mocks):
        client, mock_db, mock_interceptor = client_with_mocks
        mock_db.get_user_by_email.return_value = None
        app.dependency_overrides[check_login_rate_limit] = no_rate_limit

        response = client.post(
            "/auth/login",
            json={"email": "nonexistent@example.com", "password": "any_password"}
        )

        assert response.status_code == 401
        mock_interceptor.intercept_login_after_credentials.assert_not_called()

    def test_pending_approval_is_blocked(self, client_with_mocks):
        client, mock_db, mock_interceptor = client_with_mocks
        mock_db.get_user_by_email.return_value = {
            "user_id": "test-id",
            "email": "test@example.com",
            "password_hash": hash_password("correct_password", rounds=4),
        }
        mock_db.check_eligibility.return_value = "pending_approval"
        app.dependency_overrides[check_login_rate_limit] = no_rate_limit

        response = client.post(
            "/auth/login",
            json={"email": "test@example.com", "password": "correct_password"}
        )

        assert response.status_code == 403
        assert response.json()["code"] == "pending_approval"
        assert response.json()["error"] == "Login blocked"
        mock_interceptor.intercept_login_after_credentials.assert_not_called()


# ============================================
# Auth Rate Limiting Tests
# ============================================

class TestAuthRateLimiting:
    """Test IP-based rate limiting for auth endpoints."""

    def test_rate_limiter_initialization(self):
        """Test AuthRateLimiter initializes correctly."""
        limiter = AuthRateLimiter(EphemeralStore())
        assert limiter.register_limit == 5
        assert limiter.login_limit == 10

    def test_register_limit_check(self):
        """Test register rate limit checking."""
        limiter = AuthRateLimiter(EphemeralStore())

        # First 5 requests should be allowed
        for i in range(5):
            allowed, remaining = limiter.check_register_limit("192.168.1.1")
            if allowed:
                limiter.record_register("192.168.1.1")

        # 6th request should be denied
        allowed, remaining = limiter.check_register_limit("192.168.1.1")
        assert not allowed
        assert remaining == 0

    def test_login_limit_window(self, clock):
        """Login counters expire with their 15 minute window."""
        limiter = AuthRateLimiter(EphemeralStore(clock=clock))

        for _ in range(10):
            limiter.record_login("192.168.1.1")
        assert not limiter.check_login_limit("192.168.1.1")[0]

        clock.advance(900)
        assert limiter.check_login_limit("192.168.1.1") == (True, 10)

    def test_different_ips_have_separate_limits(self):
        """Test that different IPs have separate rate limits."""
        limiter = AuthRateLimiter(EphemeralStore())

        # Exhaust limit for IP 1
        for _ in range(5):
            limiter.record_register("192.168.1.1")

        # IP 1 should be blocked
        allowed1, _ = limiter.check_register_limit("192.168.1.1")
        assert not allowed1

        # IP 2 should still be allowed
        allowed2, _ = limiter.check_register_limit("192.168.1.2")
        assert allowed2

    def test_login_endpoint_returns_429(self, mock_db):
        limiter = AuthRateLimiter(EphemeralStore())
        for _ in range(10):
            limiter.record_login("testclient")

        app.dependency_overrides[get_db] = lambda: mock_db
        app.dependency_overrides[get_auth_rate_limiter] = lambda: limiter
        try:
            client = TestClient(app)
            response = client.post(
                "/auth/login",
                json={"email": "test@example.com", "password": "any_password"}
            )

            assert response.status_code == 429
            assert response.headers["Retry-After"] == "900"
            mock_db.get_user_by_email.assert_not_called()
        finally:
            app.dependency_overrides.clear()


# ============================================
# Account Store Tests
# ============================================

class TestAccountStore:
    """AuthDB against SQLite."""

    def test_password_hashing(self):
        hashed = hash_password("secret-password", rounds=4)
        assert verify_password("secret-password", hashed)
        assert not verify_password("wrong", hashed)

    def test_duplicate_email(self, accounts, user):
        with pytest.raises(ValueError):
            accounts.create_user(user["email"].upper(), hash_password("x", rounds=4))

    @pytest.mark.parametrize("flags,reason", [
        ({"is_active": False}, "user_disabled"),
        ({"email_verified": False}, "email_unverified"),
        ({"approved": False}, "pending_approval"),
    ])
    def test_eligibility(self, accounts, user, flags, reason):
        assert accounts.check_eligibility(user["user_id"]) is None
        accounts.set_user_flags(user["user_id"], **flags)
        assert accounts.check_eligibility(user["user_id"]) == reason

    def test_account_expiry(self, accounts, user, clock):
        accounts.set_user_flags(user["user_id"], expires_at=clock() + 60)
        assert accounts.check_eligibility(user["user_id"]) is None
        clock.advance(60)
        assert accounts.check_eligibility(user["user_id"]) == "account_expired"

    def test_unknown_flag_rejected(self, accounts, user):
        with pytest.raises(ValueError):
            accounts.set_user_flags(user["user_id"], password_hash="x")

    def test_session_lifecycle(self, accounts, user, clock):
        token = accounts.create_session(user["user_id"], expires_hours=1)
        assert accounts.validate_session(token)["email"] == user["email"]

        clock.advance(3600)
        assert accounts.validate_session(token) is None

    def test_deactivate_ends_sessions(self, accounts, user):
        token = accounts.create_session(user["user_id"])
        accounts.deactivate_user(user["user_id"])
        assert accounts.validate_session(token) is None

    def test_security_events(self, accounts, user):
        accounts.record_security_event("2fa_failed", user["user_id"], {"method": "totp"}, ip_address="203.0.113.7")
        events = accounts.get_security_events(user["user_id"])

        assert events[0]["event_type"] == "2fa_failed"
        assert events[0]["details"] == {"method": "totp"}
