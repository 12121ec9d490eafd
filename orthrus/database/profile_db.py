"""
2FA Profile Store.

Durable per-user two-factor configuration: method, TOTP secret, backup
code hashes, trusted devices and the grace-period anchor.

SECURITY NOTE: Only hashes of backup codes and device trust tokens are
stored here. The TOTP secret must be stored as-is (the server needs it to
compute codes), so this table must be treated like the password table.
"""
import json
import time
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..auth.models import BackupCode, TwoFactorMethod, UserSecurityProfile
from ..errors import StorageFailure
from .auth_db import get_auth_db
from .engine import create_db_engine

logger = logging.getLogger(__name__)

# Compare-and-swap retries for the trusted-device map
DEVICE_UPDATE_ATTEMPTS = 5


class SecurityProfileDB:
    """
    CRUD for UserSecurityProfile records.

    Example usage:
        profiles = SecurityProfileDB("sqlite:///orthrus.db")
        profiles.init_schema()

        profiles.enable(user_id, TwoFactorMethod.TOTP, secret)
        profile = profiles.get(user_id)
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
            clock: Time source for created/updated timestamps.
        """
        self.engine = engine if engine is not None else create_db_engine(connection_string)
        self.Session = sessionmaker(bind=self.engine)
        self.clock = clock

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Database errors are re-raised as StorageFailure and never retried here.
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Profile store error: {e}")
            raise StorageFailure() from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _ensure_row(self, session, user_id: str) -> None:
        now = self.clock()
        session.execute(
            text("""
                INSERT INTO user_2fa (
                    user_id, enabled, method, totp_secret, trusted_devices,
                    last_used_at, forced_at, created_at, updated_at
                ) VALUES (
                    :user_id, FALSE, 'none', NULL, '{}', NULL, NULL, :now, :now
                )
                ON CONFLICT (user_id) DO NOTHING
            """),
            {"user_id": user_id, "now": now}
        )

    # ==========================================
    # Reads
    # ==========================================

    def get(self, user_id: str) -> UserSecurityProfile:
        """
        Load a user's profile.

        Users who never enabled 2FA get an empty, disabled profile.
        """
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT enabled, method, totp_secret, trusted_devices,
                           last_used_at, forced_at
                    FROM user_2fa
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id}
            ).fetchone()

            code_rows = session.execute(
                text("""
                    SELECT code_index, code_hash, used_at
                    FROM user_2fa_backup_codes
                    WHERE user_id = :user_id
                    ORDER BY code_index
                """),
                {"user_id": user_id}
            ).fetchall()

        profile = UserSecurityProfile(user_id=user_id)
        if row:
            profile.enabled = bool(row[0])
            profile.method = TwoFactorMethod.parse(row[1])
            profile.totp_secret = row[2]
            profile.trusted_devices = {k: float(v) for k, v in json.loads(row[3] or "{}").items()}
            profile.last_used_at = row[4]
            profile.forced_at = row[5]

        profile.backup_codes = [BackupCode(index=r[0], hash=r[1]) for r in code_rows]
        profile.backup_codes_used = {r[0] for r in code_rows if r[2] is not None}
        return profile

    def count_enabled(self, method: Optional[TwoFactorMethod] = None) -> int:
        """Count users with 2FA enabled, optionally for a single method."""
        query = "SELECT COUNT(*) FROM user_2fa WHERE enabled = TRUE"
        params: Dict = {}
        if method is not None:
            query += " AND method = :method"
            params["method"] = method.value

        with self.get_session() as session:
            result = session.execute(text(query), params).fetchone()
            return int(result[0]) if result else 0

    # ==========================================
    # Enable / disable
    # ==========================================

    def enable(self, user_id: str, method: TwoFactorMethod, totp_secret: Optional[str] = None) -> None:
        """
        Enable 2FA with the given method.

        Replaces method and secret wholesale and clears the grace-period anchor.
        """
        with self.get_session() as session:
            self._ensure_row(session, user_id)
            session.execute(
                text("""
                    UPDATE user_2fa
                    SET enabled = TRUE, method = :method, totp_secret = :totp_secret,
                        forced_at = NULL, updated_at = :now
                    WHERE user_id = :user_id
                """),
                {
                    "user_id": user_id,
                    "method": method.value,
                    "totp_secret": totp_secret if method.includes_totp else None,
                    "now": self.clock(),
                }
            )
        logger.info(f"2FA enabled for user {user_id} (method={method.value})")

    def update_method(self, user_id: str, method: TwoFactorMethod, totp_secret: Optional[str]) -> None:
        """Switch the active method without touching backup codes or devices."""
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE user_2fa
                    SET method = :method, totp_secret = :totp_secret, updated_at = :now
                    WHERE user_id = :user_id
                """),
                {
                    "user_id": user_id,
                    "method": method.value,
                    "totp_secret": totp_secret,
                    "now": self.clock(),
                }
            )

    def disable(self, user_id: str) -> None:
        """Remove all 2FA data for the user."""
        with self.get_session() as session:
            session.execute(
                text("DELETE FROM user_2fa_backup_codes WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            session.execute(
                text("DELETE FROM user_2fa WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
        logger.info(f"2FA disabled for user {user_id}")

    # ==========================================
    # Backup codes
    # ==========================================

    def set_backup_codes(self, user_id: str, hashed_codes: List[str]) -> None:
        """Replace the user's backup codes in one transaction."""
        with self.get_session() as session:
            session.execute(
                text("DELETE FROM user_2fa_backup_codes WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            for index, code_hash in enumerate(hashed_codes):
                session.execute(
                    text("""
                        INSERT INTO user_2fa_backup_codes (user_id, code_index, code_hash, used_at)
                        VALUES (:user_id, :code_index, :code_hash, NULL)
                    """),
                    {"user_id": user_id, "code_index": index, "code_hash": code_hash}
                )

    def mark_backup_code_used(self, user_id: str, index: int) -> bool:
        """
        Consume a backup code.

        Returns:
            False if the code was already used (e.g. by a concurrent request).
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE user_2fa_backup_codes
                    SET used_at = :now
                    WHERE user_id = :user_id AND code_index = :code_index AND used_at IS NULL
                """),
                {"user_id": user_id, "code_index": index, "now": self.clock()}
            )
            return result.rowcount == 1

    # ==========================================
    # Trusted devices
    # ==========================================

    def _read_devices(self, session, user_id: str) -> Tuple[Dict[str, float], str]:
        """Current device map plus the stored JSON it came from."""
        row = session.execute(
            text("SELECT COALESCE(trusted_devices, '') FROM user_2fa WHERE user_id = :user_id"),
            {"user_id": user_id}
        ).fetchone()
        raw = row[0] if row else ""
        return json.loads(raw or "{}"), raw

    def _write_devices(
        self,
        session,
        user_id: str,
        devices: Dict[str, float],
        expected: Optional[str] = None,
    ) -> bool:
        """
        Store a device map.

        With `expected`, the write only happens if the stored JSON is still
        that value, so a concurrent change makes it return False.
        """
        query = """
            UPDATE user_2fa
            SET trusted_devices = :devices, updated_at = :now
            WHERE user_id = :user_id
        """
        params = {"user_id": user_id, "devices": json.dumps(devices), "now": self.clock()}
        if expected is not None:
            query += " AND COALESCE(trusted_devices, '') = :expected"
            params["expected"] = expected
        result = session.execute(text(query), params)
        return result.rowcount == 1

    def _update_devices(
        self,
        user_id: str,
        change: Callable[[Dict[str, float]], Tuple[Optional[Dict[str, float]], Any]],
        create: bool = False,
    ) -> Any:
        """
        Apply `change` to the device map with compare-and-swap.

        `change` returns (new map or None for no write, result). A write that
        lost a race is retried against the fresh map.
        """
        with self.get_session() as session:
            if create:
                self._ensure_row(session, user_id)
            for _ in range(DEVICE_UPDATE_ATTEMPTS):
                devices, raw = self._read_devices(session, user_id)
                updated, result = change(devices)
                if updated is None:
                    return result
                if self._write_devices(session, user_id, updated, expected=raw):
                    return result
            logger.error(f"Trusted device update for user {user_id} kept losing races")
            raise StorageFailure()

    def add_trusted_device(self, user_id: str, token_hash: str, expires_at: float) -> None:
        def change(devices):
            devices[token_hash] = expires_at
            return devices, None

        self._update_devices(user_id, change, create=True)

    def remove_trusted_device(self, user_id: str, token_hash: str) -> bool:
        def change(devices):
            if token_hash not in devices:
                return None, False
            del devices[token_hash]
            return devices, True

        return self._update_devices(user_id, change)

    def replace_trusted_device(
        self,
        user_id: str,
        old_hash: str,
        new_hash: str,
        expires_at: float,
    ) -> bool:
        """
        Swap one trusted-device entry for another.

        Returns:
            False if the old entry was already gone (another request rotated it).
        """
        def change(devices):
            if old_hash not in devices:
                return None, False
            del devices[old_hash]
            devices[new_hash] = expires_at
            return devices, True

        return self._update_devices(user_id, change)

    def prune_trusted_devices(self, user_id: str, now: float) -> int:
        """Drop expired entries. Returns the number removed."""
        def change(devices):
            live = {k: v for k, v in devices.items() if float(v) > now}
            removed = len(devices) - len(live)
            return (live if removed else None), removed

        return self._update_devices(user_id, change)

    def clear_trusted_devices(self, user_id: str) -> None:
        with self.get_session() as session:
            self._write_devices(session, user_id, {})

    # ==========================================
    # Timestamps
    # ==========================================

    def set_last_used(self, user_id: str, when: Optional[float] = None) -> None:
        with self.get_session() as session:
            session.execute(
                text("UPDATE user_2fa SET last_used_at = :when WHERE user_id = :user_id"),
                {"user_id": user_id, "when": when if when is not None else self.clock()}
            )

    def set_forced_at(self, user_id: str, forced_at: Optional[float]) -> None:
        with self.get_session() as session:
            self._ensure_row(session, user_id)
            session.execute(
                text("UPDATE user_2fa SET forced_at = :forced_at WHERE user_id = :user_id"),
                {"user_id": user_id, "forced_at": forced_at}
            )

    def anchor_forced_at(self, user_id: str, when: float) -> float:
        """
        Set forced_at only if it is not set yet.

        Returns:
            The anchor in effect after the call (the earlier one wins a race).
        """
        with self.get_session() as session:
            self._ensure_row(session, user_id)
            session.execute(
                text("""
                    UPDATE user_2fa SET forced_at = :when
                    WHERE user_id = :user_id AND forced_at IS NULL
                """),
                {"user_id": user_id, "when": when}
            )
            row = session.execute(
                text("SELECT forced_at FROM user_2fa WHERE user_id = :user_id"),
                {"user_id": user_id}
            ).fetchone()
            return float(row[0])

    # ==========================================
    # Schema
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize the 2FA tables.

        Safe to call multiple times.
        """
        with self.get_session() as session:
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS user_2fa (
                    user_id VARCHAR(64) PRIMARY KEY,
                    enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    method VARCHAR(10) NOT NULL DEFAULT 'none',
                    totp_secret VARCHAR(64),
                    trusted_devices TEXT NOT NULL DEFAULT '{}',
                    last_used_at DOUBLE PRECISION,
                    forced_at DOUBLE PRECISION,
                    created_at DOUBLE PRECISION NOT NULL,
                    updated_at DOUBLE PRECISION NOT NULL
                )
            """))

            session.execute(text("""
                CREATE TABLE IF NOT EXISTS user_2fa_backup_codes (
                    user_id VARCHAR(64) NOT NULL,
                    code_index INTEGER NOT NULL,
                    code_hash VARCHAR(255) NOT NULL,
                    used_at DOUBLE PRECISION,
                    PRIMARY KEY (user_id, code_index)
                )
            """))

            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_user_2fa_enabled ON user_2fa(enabled, method)
            """))

        logger.info("2FA profile schema initialized")


# Singleton instance
_profile_db_instance: Optional[SecurityProfileDB] = None


def get_profile_db() -> SecurityProfileDB:
    """Get singleton SecurityProfileDB instance, sharing the account database engine."""
    global _profile_db_instance
    if _profile_db_instance is None:
        _profile_db_instance = SecurityProfileDB(engine=get_auth_db().engine)
    return _profile_db_instance
