"""
Database Manager for Accounts, Sessions and Security Events.

This module provides connection management and operations for:
- User accounts (registration, lookup, lifecycle flags)
- Login eligibility (disabled / expired / unverified / pending approval)
- Session management
- Persistent security event log

SECURITY NOTE: 2FA secrets, backup codes and trusted devices live in
SecurityProfileDB (profile_db.py), not here.
"""
import time
import uuid
import json
import secrets
import logging
from typing import Callable, Optional, Dict, List
from contextlib import contextmanager

import bcrypt
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import (
    REASON_DISABLED,
    REASON_EXPIRED,
    REASON_PENDING_APPROVAL,
    REASON_UNVERIFIED,
    StorageFailure,
)
from .engine import create_db_engine

logger = logging.getLogger(__name__)

_USER_COLUMNS = """
    user_id, email, password_hash, display_name, role, is_active,
    email_verified, approved, expires_at, last_login, created_at
"""


def _user_from_row(row) -> Dict:
    return {
        "user_id": row[0],
        "email": row[1],
        "password_hash": row[2],
        "display_name": row[3],
        "role": row[4],
        "is_active": bool(row[5]),
        "email_verified": bool(row[6]),
        "approved": bool(row[7]),
        "expires_at": row[8],
        "last_login": row[9],
        "created_at": row[10],
    }


class AuthDB:
    """
    Connection manager for accounts, sessions and security events.

    Example usage:
        auth_db = AuthDB()

        # Create user
        user_id = auth_db.create_user("user@example.com", hash_password("secret"))

        # Re-check eligibility right before establishing a session
        reason = auth_db.check_eligibility(user_id)
        if reason is None:
            token = auth_db.create_session(user_id)
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        engine: Optional[Engine] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses environment variables if not provided.
            engine: Existing engine to share (takes precedence over the URL).
            clock: Time source for timestamps.
        """
        self.engine = engine if engine is not None else create_db_engine(connection_string)
        self.Session = sessionmaker(bind=self.engine)
        self.clock = clock

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Account store error: {e}")
            raise StorageFailure() from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==========================================
    # User Management
    # ==========================================

    def create_user(
        self,
        email: str,
        password_hash: str,
        display_name: Optional[str] = None,
        role: str = "user",
        email_verified: bool = True,
        approved: bool = True,
        expires_at: Optional[float] = None,
    ) -> str:
        """
        Create a new user account.

        Args:
            email: User's email address.
            password_hash: Bcrypt-hashed password.
            display_name: Name used in notifications.
            role: "user", "admin" or "owner".
            email_verified: Whether the address is confirmed.
            approved: Whether an administrator approved the account.
            expires_at: Optional account expiry (UNIX timestamp).

        Returns:
            UUID of created user.

        Raises:
            ValueError: If email already exists.
        """
        user_id = str(uuid.uuid4())
        now = self.clock()
        email = email.lower().strip()

        with self.get_session() as session:
            result = session.execute(
                text("SELECT user_id FROM users WHERE email = :email"),
                {"email": email}
            ).fetchone()

            if result:
                raise ValueError(f"User with email '{email}' already exists")

            session.execute(
                text("""
                    INSERT INTO users (
                        user_id, email, password_hash, display_name, role,
                        is_active, email_verified, approved, expires_at,
                        created_at, updated_at
                    ) VALUES (
                        :user_id, :email, :password_hash, :display_name, :role,
                        TRUE, :email_verified, :approved, :expires_at,
                        :now, :now
                    )
                """),
                {
                    "user_id": user_id,
                    "email": email,
                    "password_hash": password_hash,
                    "display_name": display_name,
                    "role": role,
                    "email_verified": email_verified,
                    "approved": approved,
                    "expires_at": expires_at,
                    "now": now,
                }
            )

        logger.info(f"Created user: {email} (id={user_id})")
        return user_id

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        """
        Get user by email address.

        Returns:
            User dict or None if not found.
        """
        with self.get_session() as session:
            result = session.execute(
                text(f"SELECT {_USER_COLUMNS} FROM users WHERE email = :email"),
                {"email": email.lower().strip()}
            ).fetchone()

            return _user_from_row(result) if result else None

    def get_user_by_id(self, user_id: str) -> Optional[Dict]:
        with self.get_session() as session:
            result = session.execute(
                text(f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = :user_id"),
                {"user_id": user_id}
            ).fetchone()

            return _user_from_row(result) if result else None

    def update_last_login(self, user_id: str) -> None:
        now = self.clock()
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE users
                    SET last_login = :now, updated_at = :now
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id, "now": now}
            )

    def set_user_flags(self, user_id: str, **flags) -> None:
        """
        Update account lifecycle flags.

        Args:
            **flags: Any of is_active, email_verified, approved, expires_at, role.
        """
        allowed = {"is_active", "email_verified", "approved", "expires_at", "role"}
        unknown = set(flags) - allowed
        if unknown:
            raise ValueError(f"Unknown user flags: {', '.join(sorted(unknown))}")
        if not flags:
            return

        assignments = ", ".join(f"{name} = :{name}" for name in flags)
        params = dict(flags, user_id=user_id, now=self.clock())

        with self.get_session() as session:
            session.execute(
                text(f"UPDATE users SET {assignments}, updated_at = :now WHERE user_id = :user_id"),
                params
            )

    def deactivate_user(self, user_id: str) -> None:
        """Disable an account and end all of its sessions."""
        self.set_user_flags(user_id, is_active=False)
        self.invalidate_all_sessions(user_id)
        logger.info(f"Deactivated user {user_id}")

    # ==========================================
    # Eligibility
    # ==========================================

    def check_eligibility(self, user_id: str) -> Optional[str]:
        """
        Check whether an account may log in right now.

        Returns:
            None if eligible, otherwise the blocking reason.
        """
        user = self.get_user_by_id(user_id)
        if user is None or not user["is_active"]:
            return REASON_DISABLED
        if user["expires_at"] is not None and user["expires_at"] <= self.clock():
            return REASON_EXPIRED
        if not user["email_verified"]:
            return REASON_UNVERIFIED
        if not user["approved"]:
            return REASON_PENDING_APPROVAL
        return None

    # ==========================================
    # Session Management
    # ==========================================

    def create_session(
        self,
        user_id: str,
        device_fingerprint: Optional[str] = None,
        expires_hours: int = 24
    ) -> str:
        """
        Create a new session for a user.

        Args:
            user_id: UUID of user.
            device_fingerprint: Optional device identifier.
            expires_hours: Session expiration in hours (default 24).

        Returns:
            Session token (secure random 64-char hex string).
        """
        session_token = secrets.token_hex(32)  # 64 char hex string
        now = self.clock()
        expires_at = now + expires_hours * 3600

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO sessions (
                        session_token, user_id, device_fingerprint,
                        created_at, expires_at, is_active
                    ) VALUES (
                        :session_token, :user_id, :device_fingerprint,
                        :created_at, :expires_at, TRUE
                    )
                """),
                {
                    "session_token": session_token,
                    "user_id": user_id,
                    "device_fingerprint": device_fingerprint,
                    "created_at": now,
                    "expires_at": expires_at
                }
            )

        logger.debug(f"Created session for user {user_id}")
        return session_token

    def validate_session(self, session_token: str) -> Optional[Dict]:
        """
        Validate a session token.

        Returns:
            User dict if valid, None if invalid/expired.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    SELECT u.user_id, u.email, u.display_name, u.role,
                           s.expires_at, s.device_fingerprint
                    FROM sessions s
                    JOIN users u ON s.user_id = u.user_id
                    WHERE s.session_token = :token
                      AND s.is_active = TRUE
                      AND s.expires_at > :now
                      AND u.is_active = TRUE
                """),
                {"token": session_token, "now": self.clock()}
            ).fetchone()

            if not result:
                return None

            return {
                "user_id": result[0],
                "email": result[1],
                "display_name": result[2],
                "role": result[3],
                "session_expires_at": result[4],
                "device_fingerprint": result[5]
            }

    def invalidate_session(self, session_token: str) -> None:
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE sessions
                    SET is_active = FALSE
                    WHERE session_token = :token
                """),
                {"token": session_token}
            )
        logger.debug("Invalidated session")

    def invalidate_all_sessions(self, user_id: str) -> int:
        """
        Invalidate every active session of a user.

        Returns:
            Number of sessions invalidated.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE sessions
                    SET is_active = FALSE
                    WHERE user_id = :user_id AND is_active = TRUE
                """),
                {"user_id": user_id}
            )
            return result.rowcount

    # ==========================================
    # Security Events
    # ==========================================

    def record_security_event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        details: Optional[Dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """
        Append an entry to the security event log.

        Returns:
            UUID of the event.
        """
        event_id = str(uuid.uuid4())

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO security_events (
                        event_id, user_id, event_type, details,
                        ip_address, user_agent, created_at
                    ) VALUES (
                        :event_id, :user_id, :event_type, :details,
                        :ip_address, :user_agent, :created_at
                    )
                """),
                {
                    "event_id": event_id,
                    "user_id": user_id,
                    "event_type": event_type,
                    "details": json.dumps(details or {}),
                    "ip_address": ip_address,
                    "user_agent": (user_agent or "")[:255] or None,
                    "created_at": self.clock(),
                }
            )

        return event_id

    def get_security_events(self, user_id: str, limit: int = 50) -> List[Dict]:
        """Most recent security events for a user, newest first."""
        with self.get_session() as session:
            rows = session.execute(
                text("""
                    SELECT event_id, event_type, details, ip_address, created_at
                    FROM security_events
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                    LIMIT :limit
                """),
                {"user_id": user_id, "limit": limit}
            ).fetchall()

        return [
            {
                "event_id": row[0],
                "event_type": row[1],
                "details": json.loads(row[2] or "{}"),
                "ip_address": row[3],
                "created_at": row[4],
            }
            for row in rows
        ]

    # ==========================================
    # Schema Initialization
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        with self.get_session() as session:
            # Users table
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR(64) PRIMARY KEY,
                    email VARCHAR(255) UNIQUE NOT NULL,
                    password_hash VARCHAR(255) NOT NULL,
                    display_name VARCHAR(255),
                    role VARCHAR(32) NOT NULL DEFAULT 'user',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    email_verified BOOLEAN NOT NULL DEFAULT TRUE,
                    approved BOOLEAN NOT NULL DEFAULT TRUE,
                    expires_at DOUBLE PRECISION,
                    last_login DOUBLE PRECISION,
                    created_at DOUBLE PRECISION NOT NULL,
                    updated_at DOUBLE PRECISION NOT NULL
                )
            """))

            # Sessions table
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_token VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(64) NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                    device_fingerprint VARCHAR(255),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at DOUBLE PRECISION NOT NULL,
                    expires_at DOUBLE PRECISION NOT NULL
                )
            """))

            # Security events table (audit log)
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS security_events (
                    event_id VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(64),
                    event_type VARCHAR(64) NOT NULL,
                    details TEXT,
                    ip_address VARCHAR(64),
                    user_agent VARCHAR(255),
                    created_at DOUBLE PRECISION NOT NULL
                )
            """))

            # Create indexes
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_security_events_user ON security_events(user_id, created_at)
            """))

        logger.info("Database schema initialized")


# ==========================================
# Password Hashing Utilities
# ==========================================

def hash_password(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.
        rounds: bcrypt cost factor.

    Returns:
        Bcrypt hash string.
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise.
    """
    return bcrypt.checkpw(
        password.encode('utf-8'),
        password_hash.encode('utf-8')
    )


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """
    Get singleton AuthDB instance.

    Returns:
        AuthDB instance.
    """
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
